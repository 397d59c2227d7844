"""LLM-backed article summaries and multi-article content generation.

The hosted model is a black box: prompt in, text out. Any failure (missing
key, API error, empty or truncated output) surfaces as ``GenerationError`` so
callers can tell it apart from "nothing to generate".
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from openai import OpenAI, OpenAIError

from .config import get_settings
from .logging_config import get_logger
from .models import WireModel

logger = get_logger(__name__)

PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"

SUMMARY_PROMPTS: Dict[str, str] = {
    "summary": "summary.txt",
    "eli5": "eli5.txt",
    "impact": "impact.txt",
    "actions": "actions.txt",
}

# Content types offered by the UI; anything else falls back to the generic template.
CONTENT_PROMPTS: Dict[str, str] = {
    "Security Awareness Email": "awareness_email.txt",
    "Executive Summary": "executive_summary.txt",
    "Team Briefing": "team_briefing.txt",
    "Viva Engage Post": "viva_engage_post.txt",
    "Slide Bullets": "slide_bullets.txt",
}
GENERIC_CONTENT_PROMPT = "generic_content.txt"
DEFAULT_TONE = "Professional"

ENHANCE_PROMPTS: Dict[str, str] = {
    "enhance": "enhance_prompt.txt",
    "learn": "learn_prompt.txt",
}
ASSISTANT_PROMPTS: Dict[str, str] = {
    "analyze": "assistant_analyze.txt",
    "improve": "assistant_improve.txt",
    "explain": "assistant_explain.txt",
}
FIRST_STEP_GUIDANCE = (
    "Create an initial refined prompt based on this first input. "
    "Set a strong foundation that can be built upon in later steps."
)
NEXT_STEP_GUIDANCE = (
    "Build upon and integrate the previous steps. Combine the earlier refined "
    "prompts with this new input into an evolved, more comprehensive version "
    "that keeps every valuable element."
)


class GenerationError(RuntimeError):
    """The generative API could not produce usable text."""


class ArticleRef(WireModel):
    """Minimal article shape accepted by the generation endpoints."""

    title: str
    link: str = ""
    source: str = ""
    description: Optional[str] = None


class PromptStep(WireModel):
    """One earlier round of the iterative prompt builder."""

    input: str
    enhanced: str


# --- Helpers --------------------------------------------------------------

def build_client(api_key: Optional[str] = None) -> OpenAI:
    """Create an OpenAI client; separated for easier testing."""
    return OpenAI(api_key=api_key)


def _require_api_key(settings) -> str:
    if not settings.openai_api_key:
        raise GenerationError(
            "OPENAI_API_KEY is required. Set it in the environment or .env file."
        )
    return settings.openai_api_key


def default_client() -> OpenAI:
    return build_client(_require_api_key(get_settings()))


def _load_prompt_file(filename: str) -> str:
    return (PROMPTS_DIR / filename).read_text(encoding="utf-8")


def _response_text_or_raise(response: object, *, step: str) -> str:
    """Extract response text or raise a clear error when output is missing."""
    text = getattr(response, "output_text", None)
    if isinstance(text, str) and text.strip():
        return text.strip()

    status = getattr(response, "status", None)
    if status == "incomplete":
        details = getattr(response, "incomplete_details", None)
        reason = getattr(details, "reason", None) if details else None
        raise GenerationError(f"{step} response incomplete (reason={reason}).")

    err = getattr(response, "error", None)
    if err:
        raise GenerationError(f"{step} response error: {err}")

    raise GenerationError(f"{step} response missing output text.")


def _call_model(client: OpenAI, *, model: str, prompt: str, step: str) -> str:
    settings = get_settings()
    request_kwargs: Dict[str, Any] = {
        "model": model,
        "input": [{"role": "user", "content": prompt}],
        "temperature": settings.temperature,
    }
    if settings.max_tokens and settings.max_tokens > 0:
        request_kwargs["max_output_tokens"] = settings.max_tokens
    try:
        response = client.responses.create(**request_kwargs)
    except OpenAIError as exc:
        logger.error("generation_failed", step=step, model=model, error=str(exc))
        raise GenerationError(f"{step} request failed: {exc}") from exc
    return _response_text_or_raise(response, step=step)


def _description_line(description: Optional[str]) -> str:
    return f"Description: {description}" if description else ""


# --- Prompt builders ------------------------------------------------------

def build_summary_prompt(article: ArticleRef, kind: str = "summary") -> str:
    filename = SUMMARY_PROMPTS.get(kind, SUMMARY_PROMPTS["summary"])
    return _load_prompt_file(filename).format(
        title=article.title,
        source=article.source or "Unknown",
        description_line=_description_line(article.description),
    )


def format_article_list(articles: Sequence[ArticleRef]) -> str:
    blocks: List[str] = []
    for idx, article in enumerate(articles, start=1):
        lines = [
            f"{idx}. **{article.title}**",
            f"   Source: {article.source}",
            f"   Link: {article.link}",
        ]
        if article.description:
            lines.append(f"   {_description_line(article.description)}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def build_content_prompt(
    content_type: str,
    articles: Sequence[ArticleRef],
    focus_area: Optional[str] = None,
    tone: Optional[str] = None,
) -> str:
    filename = CONTENT_PROMPTS.get(content_type, GENERIC_CONTENT_PROMPT)
    return _load_prompt_file(filename).format(
        content_type=content_type,
        tone=(tone or DEFAULT_TONE).lower(),
        focus=f"\nFocus Area: {focus_area}" if focus_area else "",
        articles=format_article_list(articles),
    )


def _methodology_line(methodology: Optional[str], *, enhance: bool) -> str:
    if not methodology:
        return ""
    if enhance:
        return (
            f"\nThe user is using the {methodology} framework. "
            "Consider its principles when enhancing.\n"
        )
    return f"\nThe user is working with the {methodology} framework.\n"


def build_enhance_prompt(
    user_prompt: str,
    mode: str = "enhance",
    methodology: Optional[str] = None,
    previous_steps: Sequence[PromptStep] = (),
) -> str:
    if mode == "enhance":
        return _load_prompt_file(ENHANCE_PROMPTS["enhance"]).format(
            user_prompt=user_prompt,
            methodology_line=_methodology_line(methodology, enhance=True),
        )
    history = "".join(
        f"\nStep {idx}:\nUser Input: {step.input}\nRefined Output: {step.enhanced}\n"
        for idx, step in enumerate(previous_steps, start=1)
    )
    return _load_prompt_file(ENHANCE_PROMPTS["learn"]).format(
        user_prompt=user_prompt,
        methodology_line=_methodology_line(methodology, enhance=False),
        previous_steps=f"\nPrevious Learning Steps:\n{history}" if history else "",
        step=len(previous_steps) + 1,
        step_guidance=NEXT_STEP_GUIDANCE if previous_steps else FIRST_STEP_GUIDANCE,
    )


# --- Tool implementations -------------------------------------------------

def summarize_article(
    article: ArticleRef, kind: str = "summary", client: Optional[OpenAI] = None
) -> str:
    """Generate one summary field (summary, eli5, impact or actions) for an article."""
    if kind not in SUMMARY_PROMPTS:
        raise ValueError(f"type must be one of: {', '.join(SUMMARY_PROMPTS)}")
    settings = get_settings()
    client = client or default_client()
    return _call_model(
        client,
        model=settings.summary_model,
        prompt=build_summary_prompt(article, kind),
        step=f"Summary ({kind})",
    )


def generate_content(
    articles: Sequence[ArticleRef],
    content_type: str,
    *,
    focus_area: Optional[str] = None,
    tone: Optional[str] = None,
    client: Optional[OpenAI] = None,
) -> str:
    """Turn a selection of articles into one outward-facing piece of content."""
    if not articles:
        raise ValueError("No articles provided")
    settings = get_settings()
    client = client or default_client()
    return _call_model(
        client,
        model=settings.content_model,
        prompt=build_content_prompt(content_type, articles, focus_area, tone),
        step=f"Content ({content_type})",
    )


def enhance_prompt(
    user_prompt: str,
    mode: str = "enhance",
    *,
    methodology: Optional[str] = None,
    previous_steps: Sequence[PromptStep] = (),
    client: Optional[OpenAI] = None,
) -> str:
    """Rewrite a user's prompt in one shot ("enhance") or as the next iterative step ("learn")."""
    if not user_prompt or not user_prompt.strip():
        raise ValueError("User prompt is required")
    if mode not in ENHANCE_PROMPTS:
        raise ValueError('Invalid mode. Use "enhance" or "learn"')
    settings = get_settings()
    client = client or default_client()
    return _call_model(
        client,
        model=settings.prompt_model,
        prompt=build_enhance_prompt(user_prompt, mode, methodology, previous_steps),
        step=f"Prompt ({mode})",
    )


def assist_prompt(
    user_prompt: str, action: str, client: Optional[OpenAI] = None
) -> str:
    if not user_prompt or not user_prompt.strip():
        raise ValueError("Prompt is required")
    if action not in ASSISTANT_PROMPTS:
        raise ValueError(f"action must be one of: {', '.join(ASSISTANT_PROMPTS)}")
    settings = get_settings()
    client = client or default_client()
    prompt = _load_prompt_file(ASSISTANT_PROMPTS[action]).format(user_prompt=user_prompt)
    return _call_model(
        client, model=settings.prompt_model, prompt=prompt, step=f"Assistant ({action})"
    )

"""Caller identity passed explicitly into every user-owned store operation."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: str
    name: str


# Until real authentication exists every request acts as this user.
GUEST = Principal(user_id="guest-user", email="guest@astra.local", name="Guest User")


def get_principal() -> Principal:
    """FastAPI dependency resolving the current caller."""
    return GUEST

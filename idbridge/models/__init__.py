"""Database models."""

from idbridge.models.user import User

__all__ = [
    "User",
]

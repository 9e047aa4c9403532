"""Shared database models."""

from app.shared.models.base import BaseModel, SoftDeleteMixin, TimestampMixin
from app.shared.models.user import User

__all__ = [
    "BaseModel",
    "SoftDeleteMixin",
    "TimestampMixin",
    "User",
]

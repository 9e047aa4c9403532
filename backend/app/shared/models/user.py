"""
User record, reduced to what the banking module needs.

Identity and authentication live elsewhere; this table only maps a local
user to its aggregator identity.
"""

from sqlalchemy import Column, String
from sqlalchemy.orm import relationship

from app.shared.models.base import BaseModel


class User(BaseModel):
    """Application user."""

    __tablename__ = "users"

    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=True)

    # Stable identity at the aggregator (Bridge user uuid)
    bridge_user_uuid = Column(String(64), nullable=True, unique=True, index=True)

    bank_connections = relationship("BankConnection", back_populates="user")

"""
Ledger models: categories, canonical transactions and learned categorization patterns.
"""

from sqlalchemy import (
    Column, Integer, String, Numeric, Date, Boolean, Float, JSON, Text, ForeignKey,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship

from app.shared.models.base import BaseModel


class TransactionType:
    INCOME = "income"
    EXPENSE = "expense"


class TransactionStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Category(BaseModel):
    """
    Spending or income category.
    A category with no user_id is global and visible to every user.
    """
    __tablename__ = "categories"

    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    name = Column(String(100), nullable=False, index=True)
    type = Column(String(20), nullable=False, default=TransactionType.EXPENSE)  # income, expense

    __table_args__ = (
        UniqueConstraint("user_id", "name", "type", name="uq_category_user_name_type"),
    )

    def __repr__(self):
        return f"<Category {self.name} ({self.type})>"


class Transaction(BaseModel):
    """
    Canonical ledger transaction.
    Amounts are unsigned; direction is carried by ``type``.
    """
    __tablename__ = "transactions"

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True, index=True)

    type = Column(String(20), nullable=False)  # income, expense
    amount = Column(Numeric(14, 2), nullable=False)
    description = Column(Text, nullable=True)
    transaction_date = Column(Date, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=TransactionStatus.PENDING)

    # Provenance
    source = Column(String(50), nullable=True)
    auto_imported = Column(Boolean, default=False, nullable=False)
    auto_categorized = Column(Boolean, default=False, nullable=False)
    is_from_bridge = Column(Boolean, default=False, nullable=False)
    bank_connection_id = Column(Integer, ForeignKey("bank_connections.id", ondelete="SET NULL"), nullable=True)
    external_transaction_id = Column(String(100), nullable=True)

    # merchant_name, merchant_category, original_description
    transaction_metadata = Column("metadata", JSON, nullable=True)

    category = relationship("Category")

    __table_args__ = (
        UniqueConstraint("user_id", "external_transaction_id", name="uq_transaction_user_external_id"),
        Index("idx_transactions_user_date", "user_id", "transaction_date"),
    )

    def __repr__(self):
        return f"<Transaction {self.type} {self.amount} on {self.transaction_date}>"


class UserCategorizationPattern(BaseModel):
    """
    Merchant pattern learned from a user's manual category corrections.
    """
    __tablename__ = "user_categorization_patterns"

    INITIAL_CONFIDENCE = 0.5
    CONFIDENCE_STEP = 0.05
    MAX_CONFIDENCE = 0.95

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    category_id = Column(Integer, ForeignKey("categories.id", ondelete="CASCADE"), nullable=False)
    pattern = Column(String(100), nullable=False)
    match_count = Column(Integer, nullable=False, default=0)
    confidence = Column(Float, nullable=False, default=INITIAL_CONFIDENCE)

    category = relationship("Category")

    __table_args__ = (
        UniqueConstraint("user_id", "pattern", "category_id", name="uq_pattern_user_pattern_category"),
    )

    def reinforce(self) -> None:
        """Count one more confirming correction."""
        self.match_count = (self.match_count or 0) + 1
        self.confidence = min((self.confidence or self.INITIAL_CONFIDENCE) + self.CONFIDENCE_STEP, self.MAX_CONFIDENCE)

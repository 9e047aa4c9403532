"""
Banking database models: aggregator connections, their accounts and the raw
transaction records imported from them.
"""

from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, Date, Boolean, JSON, Text, Numeric, Float, ForeignKey,
    Enum, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship

from app.modules.banking.lifecycle import ConnectionStatus
from app.modules.ledger.models import Category, Transaction  # noqa: F401  relationship targets
from app.shared.models import User  # noqa: F401
from app.shared.models.base import BaseModel, SoftDeleteMixin


class ProcessingStatus:
    """Raw record processing states. Only ever moves forward."""
    IMPORTED = "imported"
    CATEGORIZED = "categorized"
    CONVERTED = "converted"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"

    ORDER = {IMPORTED: 0, CATEGORIZED: 1, CONVERTED: 2, IGNORED: 2}
    CONVERTIBLE = (IMPORTED, CATEGORIZED)


class BankConnection(BaseModel, SoftDeleteMixin):
    """
    Link between a user and one aggregator item (a login at one bank).
    """
    __tablename__ = "bank_connections"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(50), nullable=False, default="bridge")
    provider_connection_id = Column(String(100), nullable=False)  # Bridge item id

    bank_name = Column(String(255), nullable=True)
    bank_logo_url = Column(String(500), nullable=True)

    status = Column(
        Enum(ConnectionStatus, values_callable=lambda e: [m.value for m in e], native_enum=False, length=20),
        nullable=False,
        default=ConnectionStatus.PENDING,
        index=True,
    )
    is_active = Column(Boolean, default=True, nullable=False)

    # Sync bookkeeping
    last_sync_at = Column(DateTime, nullable=True)
    last_successful_sync_at = Column(DateTime, nullable=True)
    error_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    last_error_at = Column(DateTime, nullable=True)

    auto_sync_enabled = Column(Boolean, default=True, nullable=False)
    sync_frequency_hours = Column(Integer, default=6, nullable=False)

    provider_metadata = Column(JSON, nullable=True)

    user = relationship("User", back_populates="bank_connections")
    accounts = relationship("BankAccount", back_populates="connection", cascade="all, delete-orphan")
    transactions = relationship("BankTransaction", back_populates="connection")

    __table_args__ = (
        UniqueConstraint("user_id", "provider_connection_id", name="uq_bank_connection_user_item"),
    )

    def __repr__(self):
        return f"<BankConnection {self.id} item={self.provider_connection_id} status={self.status}>"


class BankAccount(BaseModel):
    """
    One account (checking, savings, card...) under a connection.
    Upserted on every sync, never deleted on its own.
    """
    __tablename__ = "bank_accounts"

    bank_connection_id = Column(Integer, ForeignKey("bank_connections.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id = Column(String(100), nullable=False)

    name = Column(String(255), nullable=False)
    type = Column(String(20), nullable=False, default="checking")  # checking, savings, credit, investment, loan
    balance = Column(Numeric(14, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="EUR")
    iban = Column(String(34), nullable=True)  # Masked: country code + last 4
    is_active = Column(Boolean, default=True, nullable=False)
    last_balance_update = Column(DateTime, nullable=True)
    provider_metadata = Column(JSON, nullable=True)

    connection = relationship("BankConnection", back_populates="accounts")

    __table_args__ = (
        UniqueConstraint("bank_connection_id", "external_id", name="uq_bank_account_connection_external"),
    )


class BankTransaction(BaseModel):
    """
    Raw transaction as imported from the aggregator, before conversion into a
    ledger transaction. Amount is signed: negative means money out.
    """
    __tablename__ = "bank_transactions"

    # Denormalized owner so dedup holds across connections of the same user
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    bank_connection_id = Column(Integer, ForeignKey("bank_connections.id", ondelete="SET NULL"), nullable=True, index=True)
    bank_account_id = Column(Integer, ForeignKey("bank_accounts.id", ondelete="SET NULL"), nullable=True)
    external_id = Column(String(100), nullable=False)

    amount = Column(Numeric(14, 2), nullable=False)
    description = Column(Text, nullable=True)
    merchant_name = Column(String(255), nullable=True)
    merchant_category = Column(String(100), nullable=True)
    transaction_date = Column(Date, nullable=False, index=True)
    value_date = Column(Date, nullable=True)
    account_balance_after = Column(Numeric(14, 2), nullable=True)
    raw_data = Column(JSON, nullable=True)

    processing_status = Column(String(20), nullable=False, default=ProcessingStatus.IMPORTED, index=True)
    suggested_category_id = Column(Integer, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)
    confidence_score = Column(Float, nullable=True)
    converted_transaction_id = Column(Integer, ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True)

    imported_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    categorized_at = Column(DateTime, nullable=True)

    connection = relationship("BankConnection", back_populates="transactions")
    account = relationship("BankAccount")
    suggested_category = relationship("Category")

    __table_args__ = (
        UniqueConstraint("user_id", "external_id", name="uq_bank_transaction_user_external"),
        Index("idx_bank_transactions_status", "user_id", "processing_status"),
    )

    @property
    def is_converted(self) -> bool:
        return self.converted_transaction_id is not None

    def advance_to(self, status: str) -> bool:
        """Move processing_status forward. Returns False (and changes nothing) on a backward move."""
        if self.processing_status == ProcessingStatus.DUPLICATE:
            return False
        if status == ProcessingStatus.DUPLICATE:
            self.processing_status = status
            return True
        current = ProcessingStatus.ORDER.get(self.processing_status, 0)
        target = ProcessingStatus.ORDER.get(status, 0)
        if target < current or (target == current and status != self.processing_status):
            return False
        self.processing_status = status
        return True

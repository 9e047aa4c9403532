"""
Ledger API routes: category suggestions and manual category corrections.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.auth import get_current_user
from app.core.database import get_db
from app.modules.ledger.categorization import TransactionCategorizationService
from app.modules.ledger.models import Category, Transaction, TransactionStatus

logger = logging.getLogger(__name__)

router = APIRouter()


class CategoryUpdate(BaseModel):
    """Request body for a manual category correction."""
    category_id: int


class SuggestionResponse(BaseModel):
    category_id: int
    category_name: str
    confidence: float
    reason: str


def _get_user_transaction(db: Session, transaction_id: int, user_id: int) -> Transaction:
    transaction = (
        db.query(Transaction)
        .filter(Transaction.id == transaction_id, Transaction.user_id == user_id)
        .first()
    )
    if transaction is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return transaction


@router.get("/transactions/{transaction_id}/suggestions", response_model=List[SuggestionResponse])
def category_suggestions(
    transaction_id: int,
    db: Session = Depends(get_db),
    current_user: int = Depends(get_current_user),
):
    """Up to three category suggestions for a transaction."""
    transaction = _get_user_transaction(db, transaction_id, current_user)
    return TransactionCategorizationService(db).get_suggestions(transaction)


@router.put("/transactions/{transaction_id}/category")
def set_category(
    transaction_id: int,
    update: CategoryUpdate,
    db: Session = Depends(get_db),
    current_user: int = Depends(get_current_user),
):
    """
    Set a transaction's category by hand.
    The choice is learned so similar transactions get it automatically.
    """
    transaction = _get_user_transaction(db, transaction_id, current_user)
    category = (
        db.query(Category)
        .filter(
            Category.id == update.category_id,
            or_(Category.user_id == current_user, Category.user_id.is_(None)),
        )
        .first()
    )
    if category is None:
        raise HTTPException(status_code=404, detail="Category not found")

    transaction.category_id = category.id
    transaction.auto_categorized = False
    if transaction.status == TransactionStatus.PENDING:
        transaction.status = TransactionStatus.COMPLETED

    pattern = TransactionCategorizationService(db).learn_from_correction(transaction)
    db.commit()

    return {
        "success": True,
        "transaction_id": transaction_id,
        "category_id": update.category_id,
        "learned_pattern": pattern.pattern if pattern is not None else None,
    }

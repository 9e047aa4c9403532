"""
Raw-import categorization heuristics.

Runs at import time on the aggregator payload, before any ledger
transaction exists: the aggregator's own category hint first, then a short
keyword list. Learned user patterns are applied later, at conversion.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.modules.banking.errors import CategorizationFailure
from app.modules.banking.models import BankTransaction, ProcessingStatus
from app.modules.ledger.models import Category

logger = logging.getLogger(__name__)

# Bridge category hint -> category name
CATEGORY_HINTS = {
    "food": "Alimentation",
    "shopping": "Shopping",
    "transport": "Transport",
    "bills": "Factures",
    "income": "Salaire",
}

# Evaluated in order, first keyword hit wins
KEYWORD_RULES: List[Tuple[str, List[str]]] = [
    ("Alimentation", ["carrefour", "lidl", "auchan", "restaurant", "mcdo", "resto"]),
    ("Transport", ["essence", "carburant", "sncf", "uber", "ratp", "parking"]),
    ("Shopping", ["amazon", "fnac", "decathlon", "zara", "h&m"]),
]


@dataclass
class CategorySuggestion:
    category_id: Optional[int]
    confidence: float
    method: Optional[str] = None  # hint, keywords


def confidence_score(data: Dict[str, Any]) -> float:
    """
    How much the payload tells us, between 0.5 and 1.0.

    0.5 base, +0.2 with a merchant name, +0.2 with a category hint,
    +0.1 when the description is longer than 10 characters.
    """
    confidence = 0.5
    if data.get("merchant_name"):
        confidence += 0.2
    if data.get("category"):
        confidence += 0.2
    description = data.get("description")
    if description and len(str(description)) > 10:
        confidence += 0.1
    return min(1.0, round(confidence, 2))


class CategorizationEngine:
    """Suggests a category for a raw aggregator transaction."""

    def __init__(self, db: Session):
        self.db = db

    def suggest(self, data: Dict[str, Any], user_id: int) -> CategorySuggestion:
        """
        Suggest a category for one aggregator payload.

        Raises:
            CategorizationFailure: the category lookup itself failed
        """
        try:
            category_id, method = self._match(data, user_id)
        except Exception as e:
            raise CategorizationFailure(f"Categorization failed for transaction {data.get('id')}: {e}") from e
        if category_id is None:
            method = None
        return CategorySuggestion(category_id=category_id, confidence=confidence_score(data), method=method)

    def _match(self, data: Dict[str, Any], user_id: int) -> Tuple[Optional[int], Optional[str]]:
        hint_name = CATEGORY_HINTS.get(data.get("category") or "")
        if hint_name:
            return self.find_category_id(hint_name, user_id), "hint"

        description = str(data.get("description") or data.get("clean_description") or "").lower()
        for category_name, keywords in KEYWORD_RULES:
            if any(keyword in description for keyword in keywords):
                return self.find_category_id(category_name, user_id), "keywords"

        return None, None

    def find_category_id(self, name: str, user_id: int) -> Optional[int]:
        """Category of that name owned by the user, else the global one."""
        category = (
            self.db.query(Category)
            .filter(Category.name == name, or_(Category.user_id == user_id, Category.user_id.is_(None)))
            .order_by(Category.user_id.is_(None))
            .first()
        )
        return category.id if category else None


def recategorize_uncategorized(
    db: Session,
    user_id: Optional[int] = None,
    limit: Optional[int] = None,
    dry_run: bool = False,
) -> Dict[str, int]:
    """
    Re-run the heuristics on raw records imported without a category.

    Useful after categories were added. Found categories move the record to
    ``categorized``.
    """
    query = db.query(BankTransaction).filter(
        BankTransaction.processing_status == ProcessingStatus.IMPORTED,
        BankTransaction.suggested_category_id.is_(None),
    )
    if user_id is not None:
        query = query.filter(BankTransaction.user_id == user_id)
    query = query.order_by(BankTransaction.transaction_date.desc(), BankTransaction.id.desc())
    if limit:
        query = query.limit(limit)

    engine = CategorizationEngine(db)
    stats = {"total": 0, "categorized": 0, "failed": 0}
    for record in query.all():
        stats["total"] += 1
        data = dict(record.raw_data or {})
        data.setdefault("description", record.description)
        data.setdefault("category", record.merchant_category)
        try:
            suggestion = engine.suggest(data, record.user_id)
        except CategorizationFailure as e:
            logger.warning(str(e))
            stats["failed"] += 1
            continue

        if suggestion.category_id is None:
            continue
        stats["categorized"] += 1
        if not dry_run:
            record.suggested_category_id = suggestion.category_id
            record.confidence_score = suggestion.confidence
            record.advance_to(ProcessingStatus.CATEGORIZED)
            record.categorized_at = datetime.utcnow()

    if not dry_run:
        db.commit()
    logger.info(f"Recategorized {stats['categorized']}/{stats['total']} raw record(s){' (dry run)' if dry_run else ''}")
    return stats

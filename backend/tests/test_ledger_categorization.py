"""
Tests for label normalization and the canonical categorization service.

Run with: pytest backend/tests/test_ledger_categorization.py -v
"""

from datetime import date
from decimal import Decimal
from unittest.mock import patch

import pytest

from app.modules.ledger.categorization import TransactionCategorizationService
from app.modules.ledger.models import Transaction, TransactionStatus, TransactionType, UserCategorizationPattern
from app.modules.ledger.normalizer import extract_merchant, is_recurring_label, normalize


NORMALIZE_SCENARIOS = [
    # (name, label, expected)
    ("card payment", "PAIEMENT PAR CARTE CB*1234 CARREFOUR 12/03/2025", "CARREFOUR"),
    ("iso date and time", "UBER TRIP 2025-03-12 08:15", "UBER TRIP"),
    ("sepa transfer", "VIR SEPA LOYER MARS", "LOYER MARS"),
    ("reference number", "PRLV SEPA EDF N°123456789", "EDF"),
    ("lowercase input", "netflix.com abonnement", "NETFLIX COM ABONNEMENT"),
    ("stopword inside a word survives", "PARKING SAINT LAZARE", "PARKING SAINT LAZARE"),
    ("empty", "", ""),
    ("none", None, ""),
]


class TestNormalizer:

    @pytest.mark.parametrize("name,label,expected", NORMALIZE_SCENARIOS)
    def test_normalize(self, name, label, expected):
        assert normalize(label) == expected, name

    def test_extract_merchant(self):
        assert extract_merchant("PAIEMENT PAR CARTE CB*1234 CARREFOUR 12/03/2025") == "CARREFOUR"

    def test_extract_merchant_stops_at_digits(self):
        assert extract_merchant("FNAC 75 PARIS") == "FNAC"

    def test_extract_merchant_too_short(self):
        assert extract_merchant("AB 1234") is None

    def test_recurring_label(self):
        assert is_recurring_label("PRLV SEPA SPOTIFY ABONNEMENT")
        assert not is_recurring_label("CARREFOUR")


def _transaction(db, user, description, amount="12.50", type_=TransactionType.EXPENSE, **kwargs):
    tx = Transaction(
        user_id=user.id,
        type=type_,
        amount=Decimal(amount),
        description=description,
        transaction_date=date(2026, 3, 1),
        **kwargs,
    )
    db.add(tx)
    db.flush()
    return tx


class TestCategorizationService:

    def test_keyword_match(self, db, user, categories):
        tx = _transaction(db, user, "PAIEMENT PAR CARTE CARREFOUR CITY")
        category = TransactionCategorizationService(db).categorize(tx)
        assert category.name == "Alimentation"

    def test_keyword_group_with_most_hits_wins(self, db, user, categories):
        tx = _transaction(db, user, "NETFLIX ABONNEMENT SNCF", amount="100")
        suggestions = TransactionCategorizationService(db).get_all_suggestions(tx)
        assert suggestions[0].category.name == "Abonnements"
        assert suggestions[0].method == "keywords"

    def test_category_type_must_match(self, db, user, categories):
        tx = _transaction(db, user, "REMBOURSEMENT CARREFOUR", type_=TransactionType.INCOME, amount="300")
        assert TransactionCategorizationService(db).categorize(tx) is None

    def test_amount_only_below_threshold(self, db, user, categories):
        tx = _transaction(db, user, "XYZW", amount="9.99")
        service = TransactionCategorizationService(db)

        suggestions = service.get_all_suggestions(tx)
        assert suggestions[0].method == "amount"
        assert service.categorize(tx) is None

    def test_threshold_is_configurable(self, db, user, categories):
        tx = _transaction(db, user, "XYZW", amount="9.99")
        category = TransactionCategorizationService(db, threshold=0.3).categorize(tx)
        assert category.name == "Abonnements"

    def test_history_match(self, db, user, categories):
        _transaction(db, user, "BOULANGER DUPONT", category_id=categories["Shopping"].id)
        tx = _transaction(db, user, "BOULANGER DUPONT", amount="300")

        suggestions = TransactionCategorizationService(db).get_all_suggestions(tx)

        assert suggestions[0].method == "history"
        assert suggestions[0].category.name == "Shopping"

    def test_existing_category_kept(self, db, user, categories):
        tx = _transaction(db, user, "UBER TRIP", category_id=categories["Shopping"].id)
        assert TransactionCategorizationService(db).categorize(tx).name == "Shopping"

    def test_suggestions_limited_and_labelled(self, db, user, categories):
        tx = _transaction(db, user, "UBER TRIP", amount="9.99")
        suggestions = TransactionCategorizationService(db).get_suggestions(tx, limit=1)
        assert suggestions == [{
            "category_id": categories["Transport"].id,
            "category_name": "Transport",
            "confidence": 0.80,
            "reason": "Keyword match",
        }]


class TestLearning:

    def test_correction_creates_pattern(self, db, user, categories):
        tx = _transaction(db, user, "CB*4821 BOULANGERIE MARTIN", category_id=categories["Shopping"].id)

        pattern = TransactionCategorizationService(db).learn_from_correction(tx)

        assert pattern.pattern == "BOULANGERIE MARTIN"
        assert pattern.match_count == 1
        assert pattern.confidence == pytest.approx(0.5)

    def test_repeated_correction_reinforces(self, db, user, categories):
        service = TransactionCategorizationService(db)
        tx = _transaction(db, user, "BOULANGERIE MARTIN", category_id=categories["Shopping"].id)
        for _ in range(3):
            service.learn_from_correction(tx)

        rows = db.query(UserCategorizationPattern).all()
        assert len(rows) == 1
        assert rows[0].match_count == 3
        assert rows[0].confidence == pytest.approx(0.6)

    def test_confidence_is_capped(self):
        pattern = UserCategorizationPattern(match_count=1, confidence=0.93)
        pattern.reinforce()
        pattern.reinforce()
        assert pattern.confidence == pytest.approx(0.95)

    def test_learned_pattern_overrides_keywords(self, db, user, categories):
        service = TransactionCategorizationService(db)
        # Populate the pattern cache before learning, the correction must invalidate it
        warmup = _transaction(db, user, "CARREFOUR CITY")
        assert service.categorize(warmup).name == "Alimentation"

        corrected = _transaction(db, user, "CARREFOUR CITY", category_id=categories["Shopping"].id)
        service.learn_from_correction(corrected)

        fresh = _transaction(db, user, "CARREFOUR CITY")
        suggestions = service.get_all_suggestions(fresh)
        assert [(s.category.name, s.method) for s in suggestions] == [("Shopping", "user_pattern")]

    def test_no_learning_without_category(self, db, user):
        tx = _transaction(db, user, "CARREFOUR")
        assert TransactionCategorizationService(db).learn_from_correction(tx) is None

    def test_quality_report(self, db, user, categories):
        _transaction(db, user, "A", category_id=categories["Shopping"].id)
        _transaction(db, user, "B")
        report = TransactionCategorizationService(db).analyze_quality(user.id)
        assert report["total_transactions"] == 2
        assert report["percentage"] == 50.0
        assert report["quality_score"] == "Average"


class TestBatchCategorization:

    def test_learned_pattern_categorizes_pending_transaction(self, db, user, categories):
        service = TransactionCategorizationService(db)
        pending = _transaction(db, user, "ATELIER DUPONT", amount="250.00")
        pending_id = pending.id

        assert service.categorize_uncategorized(user.id) == {"processed": 1, "categorized": 0, "failed": 0}

        corrected = _transaction(db, user, "ATELIER DUPONT", amount="250.00", category_id=categories["Shopping"].id)
        service.learn_from_correction(corrected)
        stats = service.categorize_uncategorized(user.id)

        assert stats == {"processed": 1, "categorized": 1, "failed": 0}
        tx = db.get(Transaction, pending_id)
        assert tx.category_id == categories["Shopping"].id
        assert tx.auto_categorized is True
        assert tx.status == TransactionStatus.COMPLETED

    def test_failing_row_does_not_block_batch(self, db, user, categories):
        service = TransactionCategorizationService(db)
        first = _transaction(db, user, "CARREFOUR CITY")
        second = _transaction(db, user, "UBER TRIP")
        first_id, second_id = first.id, second.id

        with patch.object(service, "categorize", side_effect=[RuntimeError("boom"), categories["Transport"]]):
            stats = service.categorize_uncategorized(user.id, batch_size=1)

        assert stats == {"processed": 2, "categorized": 1, "failed": 1}
        assert db.get(Transaction, first_id).category_id is None
        assert db.get(Transaction, second_id).category_id == categories["Transport"].id

    def test_limit_and_cancelled_rows(self, db, user, categories):
        _transaction(db, user, "UBER TRIP", status=TransactionStatus.CANCELLED)
        _transaction(db, user, "CARREFOUR CITY")
        _transaction(db, user, "RATP NAVIGO")

        stats = TransactionCategorizationService(db).categorize_uncategorized(user.id, batch_size=5, limit=1)

        assert stats == {"processed": 1, "categorized": 1, "failed": 0}
        cancelled = db.query(Transaction).filter(Transaction.status == TransactionStatus.CANCELLED).one()
        assert cancelled.category_id is None

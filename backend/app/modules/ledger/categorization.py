"""
Canonical transaction categorization.

Layers, evaluated in order:
1. Patterns learned from the user's own corrections (returned immediately).
2. Keyword table (category group with the most keyword hits).
3. User history (most recent categorized transaction with a shared word).
4. Typical amount ranges (fallback).

A suggestion is only applied when its score reaches
CATEGORIZATION_CONFIDENCE_THRESHOLD.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.cache import delete_cached, get_cached, set_cached
from app.core.config import settings
from app.core.database import insert_or_get
from app.modules.ledger.models import Category, Transaction, TransactionStatus, UserCategorizationPattern
from app.modules.ledger.normalizer import extract_merchant, normalize

logger = logging.getLogger(__name__)

USER_PATTERN_SCORE = 0.95
KEYWORD_SCORE = 0.80
HISTORY_SCORE = 0.60
AMOUNT_SCORE = 0.40

USER_PATTERNS_TTL = 3600  # seconds

KEYWORD_PATTERNS: Dict[str, List[str]] = {
    "alimentation": [
        "carrefour", "lidl", "auchan", "leclerc", "casino", "franprix",
        "monoprix", "intermarche", "super u", "cora", "geant",
        "supermarche", "courses", "epicerie", "marche",
        "restaurant", "resto", "pizza", "burger", "mcdo", "kfc",
        "subway", "boulangerie", "patisserie", "boucherie",
        "poissonnerie", "fromagerie", "traiteur", "kebab",
        "sushi", "indien", "chinois", "thai", "italien",
        "bistrot", "brasserie", "cafe", "bar", "bistro",
    ],
    "transport": [
        "sncf", "ratp", "uber", "taxi", "essence", "carburant",
        "peage", "parking", "station service", "total", "shell",
        "esso", "bp", "autoroute", "metro", "bus", "tramway",
        "train", "tgv", "ouigo", "blablacar", "flixbus",
        "velib", "lime", "trottinette", "scooter", "garage",
        "reparation auto", "controle technique", "lavage auto",
        "air france", "easyjet", "ryanair", "vol", "avion",
    ],
    "logement": [
        "loyer", "charges", "electricite", "edf", "engie", "gaz",
        "eau", "veolia", "suez", "chauffage", "copropriete",
        "syndic", "assurance habitation", "taxe habitation",
        "taxe fonciere", "agence immobiliere", "immobilier",
        "hypotheque", "pret immobilier", "credit immobilier",
    ],
    "abonnements": [
        "netflix", "spotify", "disney", "prime video", "amazon prime",
        "deezer", "apple music", "youtube premium", "twitch",
        "orange", "sfr", "bouygues", "free", "sosh", "red",
        "internet", "telephone", "mobile", "forfait", "box",
        "canal+", "beinsports", "salles de sport", "fitness",
        "basic fit", "keep cool", "gymlib", "abonnement",
    ],
    "sante": [
        "pharmacie", "medecin", "docteur", "dentiste", "ophtalmo",
        "kine", "osteopathe", "psychologue", "hopital",
        "clinique", "laboratoire", "analyses", "ordonnance",
        "medicaments", "lunettes", "optique", "audioprothese",
        "mutuelle", "assurance sante", "cpam", "securite sociale",
    ],
    "loisirs": [
        "steam", "playstation", "xbox", "nintendo", "jeux video",
        "cinema", "ugc", "gaumont", "pathe", "mk2", "theatre",
        "concert", "spectacle", "fnac", "cultura", "micromania",
        "livres", "librairie", "bd", "manga", "comics",
        "parc attraction", "disneyland", "asterix", "futuroscope",
        "zoo", "aquarium", "musee", "exposition", "bowling",
        "laser game", "escape game", "karting", "paintball",
    ],
    "vetements": [
        "zara", "h&m", "uniqlo", "kiabi", "c&a", "primark",
        "pull&bear", "bershka", "mango", "celio", "jules",
        "nike", "adidas", "decathlon", "intersport", "go sport",
        "chaussures", "vetements", "mode", "boutique",
        "galeries lafayette", "printemps", "sephora",
        "nocibe", "marionnaud", "parfumerie", "coiffeur",
        "salon de coiffure", "barbier", "estheticienne",
    ],
    "education": [
        "ecole", "universite", "campus", "scolarite", "inscription",
        "cantine", "fournitures scolaires", "livres scolaires",
        "cours particuliers", "soutien scolaire", "acadomia",
        "completude", "formation", "udemy", "coursera",
        "openclassrooms", "le wagon", "creche", "nounou",
        "baby sitting", "centre aere", "colonie",
    ],
    "services_financiers": [
        "banque", "frais bancaires", "commission", "cotisation",
        "carte bancaire", "assurance", "pret", "credit",
        "interets", "decouvert", "virement", "transfert",
        "paypal", "revolut", "n26", "boursorama", "fortuneo",
    ],
    "shopping": [
        "amazon", "ebay", "cdiscount", "rue du commerce",
        "rakuten", "aliexpress", "wish", "shein", "asos",
        "ikea", "conforama", "but", "maison du monde",
        "leroy merlin", "castorama", "bricolage", "jardinage",
        "action", "gifi", "bazar", "hema", "normal",
    ],
    "professionnel": [
        "urssaf", "rsi", "impots", "taxes", "comptable",
        "expert comptable", "avocat", "notaire", "huissier",
        "assurance pro", "mutuelle pro", "cotisation pro",
        "chambre commerce", "cci", "pole emploi",
    ],
    "animaux": [
        "veterinaire", "veto", "animaux", "croquettes",
        "animalerie", "jardiland", "botanic", "maxi zoo",
        "tom&co", "pension animaux", "toilettage", "chat",
        "chien", "vaccin animal",
    ],
    "cadeaux": [
        "cadeau", "anniversaire", "noel", "fete", "don",
        "association", "charite", "ong", "croix rouge",
        "restos du coeur", "unicef", "wwf", "greenpeace",
    ],
}

# Candidate category names per keyword group, first existing one wins
CATEGORY_MAPPING: Dict[str, List[str]] = {
    "alimentation": ["Alimentation", "Courses", "Restaurants"],
    "transport": ["Transport", "Carburant", "Transports"],
    "logement": ["Logement", "Charges", "Loyer"],
    "abonnements": ["Abonnements", "Telecom", "Internet"],
    "sante": ["Sante", "Medical", "Pharmacie"],
    "loisirs": ["Loisirs", "Divertissement", "Sport"],
    "vetements": ["Vetements", "Mode", "Beaute"],
    "education": ["Education", "Formation", "Enfants"],
    "services_financiers": ["Services financiers", "Banque"],
    "shopping": ["Shopping", "Achats", "Divers"],
    "professionnel": ["Professionnel", "Impots", "Taxes"],
    "animaux": ["Animaux", "Veterinaire"],
    "cadeaux": ["Cadeaux", "Dons"],
}

AMOUNT_RANGES: List[Tuple[str, float, float]] = [
    ("abonnements", 5, 50),
    ("transport", 1.9, 15),
    ("sante", 20, 100),
]

REASON_LABELS = {
    "user_pattern": "Your habits",
    "keywords": "Keyword match",
    "history": "Similar past transaction",
    "amount": "Typical amount",
}


@dataclass
class Suggestion:
    category: Category
    score: float
    method: str


class TransactionCategorizationService:
    """Suggests and applies categories for canonical transactions."""

    def __init__(self, db: Session, threshold: Optional[float] = None):
        self.db = db
        self.threshold = settings.CATEGORIZATION_CONFIDENCE_THRESHOLD if threshold is None else threshold

    def categorize(self, transaction: Transaction) -> Optional[Category]:
        """
        Return the category to apply to a transaction, or None.

        An already categorized transaction keeps its category. Otherwise the
        best suggestion is returned only if its score reaches the threshold.
        """
        if transaction.category_id:
            return transaction.category or self.db.get(Category, transaction.category_id)

        suggestions = self.get_all_suggestions(transaction)
        if not suggestions:
            return None

        best = suggestions[0]
        if best.score >= self.threshold:
            logger.debug(f"Categorized '{transaction.description}' as {best.category.name} via {best.method}")
            return best.category
        return None

    def get_all_suggestions(self, transaction: Transaction) -> List[Suggestion]:
        """All layer suggestions, best score first, one per distinct category."""
        user_pattern = self._match_by_user_patterns(transaction)
        if user_pattern is not None:
            return [Suggestion(user_pattern, USER_PATTERN_SCORE, "user_pattern")]

        suggestions: List[Suggestion] = []
        seen_ids = set()
        layers = [
            (self._match_by_keywords, KEYWORD_SCORE, "keywords"),
            (self._match_by_history, HISTORY_SCORE, "history"),
            (self._match_by_amount, AMOUNT_SCORE, "amount"),
        ]
        for matcher, score, method in layers:
            category = matcher(transaction)
            if category is not None and category.id not in seen_ids:
                seen_ids.add(category.id)
                suggestions.append(Suggestion(category, score, method))

        suggestions.sort(key=lambda s: s.score, reverse=True)
        return suggestions

    def get_suggestions(self, transaction: Transaction, limit: int = 3) -> List[dict]:
        """Top suggestions with a human readable reason, for the UI."""
        return [
            {
                "category_id": s.category.id,
                "category_name": s.category.name,
                "confidence": s.score,
                "reason": REASON_LABELS.get(s.method, "Algorithm"),
            }
            for s in self.get_all_suggestions(transaction)[:limit]
        ]

    # Layer 1: learned patterns

    def _user_patterns(self, user_id: int) -> List[Tuple[str, int]]:
        cache_key = f"user_patterns:{user_id}"
        cached = get_cached(cache_key)
        if cached is not None:
            return cached

        rows = (
            self.db.query(UserCategorizationPattern.pattern, UserCategorizationPattern.category_id)
            .filter(UserCategorizationPattern.user_id == user_id)
            .order_by(UserCategorizationPattern.confidence.desc())
            .all()
        )
        patterns = [(row.pattern, row.category_id) for row in rows]
        set_cached(cache_key, patterns, USER_PATTERNS_TTL)
        return patterns

    def _match_by_user_patterns(self, transaction: Transaction) -> Optional[Category]:
        merchant = extract_merchant(transaction.description)
        if not merchant:
            return None

        for pattern, category_id in self._user_patterns(transaction.user_id):
            if pattern in merchant:
                return self.db.get(Category, category_id)
        return None

    # Layer 2: keywords

    def _match_by_keywords(self, transaction: Transaction) -> Optional[Category]:
        text = normalize(transaction.description).lower()
        if not text:
            return None

        matched_group = None
        max_matches = 0
        for group, keywords in KEYWORD_PATTERNS.items():
            matches = sum(1 for keyword in keywords if keyword in text)
            if matches > max_matches:
                max_matches = matches
                matched_group = group

        if matched_group is None:
            return None
        return self.find_category_by_group(matched_group, transaction.type, transaction.user_id)

    # Layer 3: history

    def _match_by_history(self, transaction: Transaction) -> Optional[Category]:
        words = [w for w in (transaction.description or "").split(" ") if len(w) > 3]
        if not words:
            return None

        query = (
            self.db.query(Transaction)
            .filter(
                Transaction.user_id == transaction.user_id,
                Transaction.type == transaction.type,
                Transaction.category_id.isnot(None),
                or_(*[Transaction.description.like(f"%{word}%") for word in words]),
            )
        )
        if transaction.id is not None:
            query = query.filter(Transaction.id != transaction.id)

        similar = query.order_by(Transaction.created_at.desc(), Transaction.id.desc()).first()
        return similar.category if similar else None

    # Layer 4: amount

    def _match_by_amount(self, transaction: Transaction) -> Optional[Category]:
        amount = abs(float(transaction.amount or 0))
        for group, low, high in AMOUNT_RANGES:
            if low <= amount <= high:
                category = self.find_category_by_group(group, transaction.type, transaction.user_id)
                if category is not None:
                    return category
        return None

    def find_category_by_group(self, group: str, type_: str, user_id: Optional[int] = None) -> Optional[Category]:
        """First existing category named after a keyword group, user-owned before global."""
        for name in CATEGORY_MAPPING.get(group, []):
            query = self.db.query(Category).filter(Category.name == name, Category.type == type_)
            if user_id is not None:
                query = query.filter(or_(Category.user_id == user_id, Category.user_id.is_(None)))
            else:
                query = query.filter(Category.user_id.is_(None))
            category = query.order_by(Category.user_id.is_(None)).first()
            if category is not None:
                return category
        return None

    # Learning

    def learn_from_correction(self, transaction: Transaction) -> Optional[UserCategorizationPattern]:
        """
        Record the user's category choice for the transaction's merchant.

        A new pattern starts at the initial confidence; each further
        confirmation adds one step, up to the cap.
        """
        if not transaction.category_id:
            return None

        pattern = extract_merchant(transaction.description)
        if not pattern:
            return None

        row, created = insert_or_get(
            self.db,
            UserCategorizationPattern,
            {"user_id": transaction.user_id, "pattern": pattern, "category_id": transaction.category_id},
            {"match_count": 1, "confidence": UserCategorizationPattern.INITIAL_CONFIDENCE},
        )
        if not created:
            row.reinforce()
        self.db.flush()

        delete_cached(f"user_patterns:{transaction.user_id}")
        logger.info(f"Learned pattern '{pattern}' -> category {transaction.category_id} for user {transaction.user_id}")
        return row

    # Batch

    def categorize_uncategorized(
        self,
        user_id: int,
        batch_size: int = 100,
        limit: Optional[int] = None,
    ) -> Dict[str, int]:
        """
        Apply categories to the user's uncategorized ledger transactions.

        Rows are walked in id order, one chunk per commit. A row that fails is
        counted and left as it was.
        """
        stats = {"processed": 0, "categorized": 0, "failed": 0}
        last_id = 0
        batch_size = max(1, batch_size)

        while limit is None or stats["processed"] < limit:
            size = batch_size if limit is None else min(batch_size, limit - stats["processed"])
            chunk = (
                self.db.query(Transaction)
                .filter(
                    Transaction.user_id == user_id,
                    Transaction.category_id.is_(None),
                    Transaction.status != TransactionStatus.CANCELLED,
                    Transaction.id > last_id,
                )
                .order_by(Transaction.id)
                .limit(size)
                .all()
            )
            if not chunk:
                break

            for transaction in chunk:
                last_id = transaction.id
                stats["processed"] += 1
                try:
                    with self.db.begin_nested():
                        category = self.categorize(transaction)
                        if category is None:
                            continue
                        transaction.category_id = category.id
                        transaction.auto_categorized = True
                        if transaction.status == TransactionStatus.PENDING:
                            transaction.status = TransactionStatus.COMPLETED
                        self.db.flush()
                    stats["categorized"] += 1
                except Exception as e:
                    stats["failed"] += 1
                    logger.error(f"Failed to categorize transaction {last_id}: {e}", exc_info=True)
            self.db.commit()

        logger.info(
            f"Auto-categorization for user {user_id}: {stats['categorized']} of "
            f"{stats['processed']} categorized, {stats['failed']} failed"
        )
        return stats

    def analyze_quality(self, user_id: int) -> dict:
        """Share of the user's transactions that carry a category."""
        total = self.db.query(Transaction).filter(Transaction.user_id == user_id).count()
        categorized = (
            self.db.query(Transaction)
            .filter(Transaction.user_id == user_id, Transaction.category_id.isnot(None))
            .count()
        )
        percentage = round(categorized / total * 100, 2) if total else 0

        if percentage >= 90:
            quality = "Excellent"
        elif percentage >= 70:
            quality = "Good"
        elif percentage >= 50:
            quality = "Average"
        else:
            quality = "Poor"

        return {
            "total_transactions": total,
            "categorized": categorized,
            "uncategorized": total - categorized,
            "percentage": percentage,
            "quality_score": quality,
        }

"""
Bank label normalization.

Raw bank labels carry card numbers, dates, SEPA prefixes and other noise.
Normalizing them makes keyword matching and merchant extraction stable.
"""

import re
from typing import Optional

STOPWORDS = [
    "PAIEMENT", "PAR", "CARTE", "VIREMENT", "PRELEVEMENT",
    "SEPA", "ECHEANCE", "MENSUALITE", "ACHAT", "RETRAIT",
    "DEPOT", "ESPECES", "CHEQUE", "OPERATION", "FRAIS",
]

DATE_PATTERNS = [
    re.compile(r"\d{4}[/\-.]\d{2}[/\-.]\d{2}"),    # YYYY/MM/DD
    re.compile(r"\d{2}[/\-.]\d{2}[/\-.]\d{2,4}"),  # DD/MM/YYYY
    re.compile(r"\d{2}\s+(JAN|FEB|MAR|APR|MAY|JUN|JUL|AUG|SEP|OCT|NOV|DEC)\s+\d{2,4}", re.IGNORECASE),
]

TIME_PATTERN = re.compile(r"\d{2}:\d{2}(:\d{2})?")

BANK_REFERENCE_PATTERNS = [
    re.compile(r"CB\s*\*+\d+"),      # CB*1234
    re.compile(r"CARTE\s+X+\d{4}"),  # CARTE X1234
    re.compile(r"N°?\s*\d{6,}"),     # N°123456
    re.compile(r"REF\s*:\s*\d+"),    # REF: 123
    re.compile(r"VIR\s+SEPA"),
    re.compile(r"PRLV\s+SEPA"),
]

STOPWORD_PATTERN = re.compile(r"\b(" + "|".join(STOPWORDS) + r")\b")
SPECIAL_CHARS = re.compile(r"[^A-Z0-9\s&']")
WHITESPACE = re.compile(r"\s+")
MERCHANT_PATTERN = re.compile(r"^([A-Z\s]{3,30})")

RECURRING_KEYWORDS = ["MENSUALITE", "ABONNEMENT", "ECHEANCE", "SUBSCRIPTION", "RECURRING", "MONTHLY"]


def normalize(label: Optional[str]) -> str:
    """
    Normalize a raw bank label.

    Example:
        "PAIEMENT PAR CARTE CB*1234 CARREFOUR 12/03/2025" -> "CARREFOUR"
    """
    if not label:
        return ""

    text = label.upper()
    for pattern in DATE_PATTERNS:
        text = pattern.sub("", text)
    text = TIME_PATTERN.sub("", text)
    for pattern in BANK_REFERENCE_PATTERNS:
        text = pattern.sub("", text)
    text = STOPWORD_PATTERN.sub("", text)
    text = SPECIAL_CHARS.sub(" ", text)
    return WHITESPACE.sub(" ", text).strip()


def extract_merchant(label: Optional[str]) -> Optional[str]:
    """Return the leading merchant name of a label, or None when too short."""
    match = MERCHANT_PATTERN.match(normalize(label))
    if not match:
        return None
    merchant = match.group(1).strip()
    if len(merchant) < 3:
        return None
    return merchant


def is_recurring_label(label: Optional[str]) -> bool:
    upper = (label or "").upper()
    return any(keyword in upper for keyword in RECURRING_KEYWORDS)

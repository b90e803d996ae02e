# src/smartscan/postprocess.py
from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .models import OCRWord

logger = logging.getLogger("smartscan")

LABEL_PATTERNS = {
    "supplement_facts": re.compile(r"supplement\s*facts", re.I),
    "nutrition_facts": re.compile(r"nutrition\s*facts", re.I),
    "ingredients": re.compile(r"ingredients?", re.I),
    "serving_size": re.compile(r"serving\s*size", re.I),
    "daily_value": re.compile(r"daily\s*value|%\s*dv|dv\s*%", re.I),
    "vitamin_mineral": re.compile(r"vitamin|mineral|calcium|iron|zinc|magnesium", re.I),
    "amount_per_serving": re.compile(r"amount\s*per\s*serving", re.I),
}
DOSAGE_PATTERN = re.compile(r"\b\d+\s*(mg|mcg|iu|g|ml)\b", re.I)
PERCENTAGE_PATTERN = re.compile(r"\d+\s*%")

WARNING_KEYWORDS = (
    "warning", "caution", "note", "important", "keep out of reach", "consult",
    "not for use", "contains", "allergen", "may contain",
)

KNOWN_BRANDS = (
    "Pure Encapsulations", "Thorne", "Life Extension", "NOW Foods", "Nature Made",
    "Centrum", "Garden of Life", "Nordic Naturals", "New Chapter", "Rainbow Light",
    "Solgar", "Nature's Bounty", "Jarrow Formulas", "Doctor's Best", "Source Naturals",
    "Optimum Nutrition", "Dymatize", "BSN", "MuscleTech", "Cellucor",
)

_SERVING_PATTERNS = (
    re.compile(r"serving\s*size[:\s]*([^\n]+)", re.I),
    re.compile(r"(\d+\s*(?:capsule|tablet|softgel|gummies|gummy|scoop|pill)s?)", re.I),
    re.compile(r"take\s*(\d+[^(\n]*)", re.I),
)
_PRODUCT_HINT = re.compile(
    r"vitamin|mineral|supplement|complex|formula|extract|acid|protein|omega|coq10|probiotic", re.I)
_BRAND_LINE = re.compile(r"^[A-Za-z\s&'.®™]+$")

_CHAR_FIXES = (
    (re.compile("[\u2018\u2019\u2032\u02BC]"), "'"),
    (re.compile("[\u201C\u201D\u2033]"), '"'),
    (re.compile("[\u2010-\u2015\u2212]"), "-"),
    (re.compile("[\u00A0\u2007\u202F]"), " "),
)
_WORD_FIXES = (
    (re.compile(r"\bmq\b", re.I), "mg"),
    (re.compile(r"\bVitamn\b", re.I), "Vitamin"),
)


def clean_ocr_text(text: Optional[str]) -> str:
    """Normalize raw OCR text: NFKC, ASCII punctuation, collapsed whitespace, common misreads."""
    if not text:
        return ""
    result = unicodedata.normalize("NFKC", text)
    for pattern, repl in _CHAR_FIXES:
        result = pattern.sub(repl, result)
    result = re.sub(r"[ \t]+", " ", result)
    result = re.sub(r" *\n+", "\n", result)
    result = re.sub(r"\n+ *", "\n", result)
    for pattern, repl in _WORD_FIXES:
        result = pattern.sub(repl, result)
    return result.strip()


def has_label_keywords(text: str) -> bool:
    return any(p.search(text) for p in LABEL_PATTERNS.values())


def quality_score(text: str, confidence: float, words: Sequence[OCRWord] = ()) -> float:
    """
    Blend engine confidence with label-shaped content into a 0..1 score.
    Weights: confidence 0.4, mean word confidence 0.3, length 0.1,
    label keywords 0.15, dosage or percentage 0.05.
    """
    avg_word = sum(w.confidence for w in words) / len(words) if words else confidence
    score = confidence * 0.4 + avg_word * 0.3
    if len(text) > 50:
        score += 0.1
    if has_label_keywords(text):
        score += 0.15
    if DOSAGE_PATTERN.search(text) or PERCENTAGE_PATTERN.search(text):
        score += 0.05
    return round(min(1.0, score), 4)


def extract_warnings(text: str) -> List[str]:
    out = []
    for line in text.split("\n"):
        stripped = line.strip()
        if len(stripped) > 10 and any(k in stripped.lower() for k in WARNING_KEYWORDS):
            out.append(stripped)
    return out


def extract_serving_size(text: str) -> Optional[str]:
    for pattern in _SERVING_PATTERNS:
        m = pattern.search(text)
        if m and m.group(1).strip():
            return m.group(1).strip()
    return None


def extract_brand(text: str) -> Optional[str]:
    upper = text.upper()
    for brand in KNOWN_BRANDS:
        if brand.upper() in upper:
            return brand
    for line in text.split("\n")[:3]:
        cleaned = line.strip()
        if 2 < len(cleaned) < 30 and _BRAND_LINE.match(cleaned):
            return cleaned
    return None


def extract_product_name(text: str) -> Optional[str]:
    for line in text.split("\n")[:5]:
        cleaned = line.strip()
        if 5 <= len(cleaned) <= 60 and _PRODUCT_HINT.search(cleaned):
            return cleaned
    return None


@dataclass
class LabelFields:
    brand: Optional[str] = None
    product_name: Optional[str] = None
    serving_size: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


def extract_label_fields(text: str) -> LabelFields:
    return LabelFields(
        brand=extract_brand(text),
        product_name=extract_product_name(text),
        serving_size=extract_serving_size(text),
        warnings=extract_warnings(text),
    )

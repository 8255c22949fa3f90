"""Keyword signals for candidate generation.

Bridges product vocabulary ("stainless mug", "cotton tee") to schedule
chapters and headings: stopword-filtered tokens, material detection, and
product-type heading hints.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, Set

_STOPWORDS: Set[str] = {
    "a", "an", "the", "of", "for", "and", "or", "in", "to", "with", "on",
    "at", "by", "from", "as", "is", "are", "be", "that", "this", "it",
    "other", "not", "parts", "part", "accessories", "nesoi", "thereof",
    "elsewhere", "specified", "included", "whether", "also", "only",
    "having", "used", "such", "any", "all", "its", "their", "kind", "like",
    "similar", "made", "new", "set", "pack", "piece", "pcs",
}

_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")
_COMPOUNDS = {"t-shirt": "tshirt", "t shirt": "tshirt", "tee shirt": "tshirt", "tee": "tshirt"}


def _singular(word: str) -> str:
    if len(word) > 4 and word.endswith("ies"):
        return word[:-3] + "y"
    if len(word) > 4 and word.endswith("es") and word[:-2].endswith(("s", "x", "ch", "sh")):
        return word[:-2]
    if len(word) > 3 and word.endswith("s") and not word.endswith(("ss", "us")):
        return word[:-1]
    return word


def tokenize(text: str) -> List[str]:
    """Lowercase, fold compounds, split, singularize, drop stopwords."""
    lower = (text or "").lower()
    for phrase, replacement in _COMPOUNDS.items():
        lower = re.sub(rf"\b{re.escape(phrase)}s?\b", replacement, lower)
    tokens: List[str] = []
    for word in _TOKEN_SPLIT_RE.split(lower):
        if len(word) < 2 or word in _STOPWORDS:
            continue
        word = _singular(word)
        if word not in _STOPWORDS:
            tokens.append(word)
    return tokens


def token_set(text: str) -> Set[str]:
    return set(tokenize(text))


# ---------------------------------------------------------------------------
# Materials
# ---------------------------------------------------------------------------
MATERIAL_CHAPTERS: Dict[str, List[str]] = {
    "plastic": ["39"],
    "silicone": ["39"],
    "rubber": ["40"],
    "leather": ["41", "42"],
    "wood": ["44"],
    "bamboo": ["46"],
    "paper": ["48"],
    "cotton": ["52", "61", "62"],
    "wool": ["51", "61", "62"],
    "silk": ["50", "61", "62"],
    "polyester": ["54", "61", "62"],
    "nylon": ["54", "61", "62"],
    "ceramic": ["69"],
    "porcelain": ["69"],
    "glass": ["70"],
    "steel": ["72", "73"],
    "iron": ["72", "73"],
    "copper": ["74"],
    "aluminum": ["76"],
}

_MATERIAL_ALIASES: Dict[str, str] = {
    "plastics": "plastic",
    "polypropylene": "plastic",
    "polyethylene": "plastic",
    "pvc": "plastic",
    "acrylic": "plastic",
    "melamine": "plastic",
    "wooden": "wood",
    "teak": "wood",
    "oak": "wood",
    "pine": "wood",
    "cardboard": "paper",
    "stainless": "steel",
    "aluminium": "aluminum",
    "stoneware": "ceramic",
    "earthenware": "ceramic",
    "terracotta": "ceramic",
    "brass": "copper",
    "bronze": "copper",
    "spandex": "polyester",
    "rayon": "polyester",
}

# Chapter → the material a chapter is defined by (used for question options).
CHAPTER_MATERIALS: Dict[str, str] = {
    "39": "plastic",
    "40": "rubber",
    "44": "wood",
    "52": "cotton",
    "61": "textile (knitted)",
    "62": "textile (woven)",
    "69": "ceramic",
    "70": "glass",
    "72": "steel",
    "73": "steel",
    "74": "copper",
    "76": "aluminum",
}


def canonical_material(word: Optional[str]) -> Optional[str]:
    if not word:
        return None
    for token in tokenize(word):
        token = _MATERIAL_ALIASES.get(token, token)
        if token in MATERIAL_CHAPTERS:
            return token
    return None


def detect_material(text: str) -> Optional[str]:
    """First material mentioned in ``text`` (in reading order)."""
    for token in tokenize(text):
        token = _MATERIAL_ALIASES.get(token, token)
        if token in MATERIAL_CHAPTERS:
            return token
    return None


def material_chapters(material: Optional[str]) -> Set[str]:
    canonical = canonical_material(material)
    return set(MATERIAL_CHAPTERS.get(canonical, [])) if canonical else set()


# ---------------------------------------------------------------------------
# Product-type hints → headings
# ---------------------------------------------------------------------------
PRODUCT_TYPE_HINTS: Dict[str, List[str]] = {
    "tshirt": ["6109"],
    "singlet": ["6109"],
    "shirt": ["6105", "6109", "6205"],
    "sweater": ["6110"],
    "pullover": ["6110"],
    "sweatshirt": ["6110"],
    "hoodie": ["6110"],
    "mug": ["3924", "6911", "6912", "7323"],
    "cup": ["3924", "6911", "6912", "7323"],
    "plate": ["3924", "6911", "6912", "7323"],
    "bowl": ["3924", "6911", "6912", "7323"],
    "tableware": ["3924", "6911", "6912", "7323", "7615"],
    "kitchenware": ["3924", "6911", "6912", "7323", "7615"],
    "pot": ["3924", "6912", "7323", "7615"],
    "pan": ["7323", "7615"],
    "cookware": ["7323", "7615"],
    "container": ["3923", "3924"],
    "box": ["3923"],
    "bottle": ["3923", "7010"],
    "chair": ["9401"],
    "seat": ["9401"],
    "sofa": ["9401"],
    "desk": ["9403"],
    "table": ["9403"],
    "cabinet": ["9403"],
    "furniture": ["9401", "9403"],
    "smartphone": ["8517"],
    "phone": ["8517"],
    "cable": ["8544"],
    "processor": ["8542"],
    "microcontroller": ["8542"],
    "chip": ["8542"],
    "bolt": ["7318"],
    "screw": ["7318"],
    "watch": ["9102"],
    "milk": ["0402"],
}

# ---------------------------------------------------------------------------
# Chapter-level vocabulary
# ---------------------------------------------------------------------------
CHAPTER_VOCABULARY: Dict[str, Set[str]] = {
    "04": {"milk", "cream", "dairy", "powder", "butter", "cheese", "yogurt"},
    "39": {"plastic", "polymer", "resin", "polyethylene", "polypropylene", "pvc",
           "acrylic", "melamine", "molded", "container", "bottle", "lid", "film"},
    "40": {"rubber", "silicone", "gasket", "seal", "tire", "latex", "hose"},
    "44": {"wood", "wooden", "lumber", "plywood", "timber", "bamboo"},
    "61": {"knit", "knitted", "crocheted", "tshirt", "shirt", "sweater", "pullover",
           "sweatshirt", "hoodie", "jersey", "garment", "apparel", "clothing", "cotton"},
    "62": {"woven", "shirt", "trouser", "jacket", "suit", "blazer", "coat", "garment",
           "apparel", "clothing", "dress", "skirt", "blouse"},
    "69": {"ceramic", "porcelain", "stoneware", "earthenware", "mug",
           "tableware", "kitchenware", "tile", "glazed"},
    "72": {"steel", "iron", "alloy", "flat", "rolled", "plate", "coil", "sheet", "ingot",
           "billet", "bar", "rod"},
    "73": {"steel", "stainless", "iron", "bolt", "screw", "nut", "washer", "rivet",
           "fastener", "cookware", "kitchenware", "pot", "pan", "pipe", "tube"},
    "76": {"aluminum", "aluminium", "foil", "extrusion", "cookware", "pan", "pot"},
    "85": {"electronic", "electrical", "circuit", "cable", "wire", "connector", "phone",
           "smartphone", "cellular", "processor", "semiconductor", "chip", "usb",
           "charger", "battery"},
    "91": {"watch", "wristwatch", "clock", "quartz", "strap", "movement"},
    "94": {"furniture", "chair", "seat", "table", "desk", "sofa", "bed", "cabinet",
           "upholstered", "office", "bedroom", "shelf", "mattress"},
}


def hinted_headings(tokens: Iterable[str]) -> Set[str]:
    headings: Set[str] = set()
    for token in tokens:
        headings.update(PRODUCT_TYPE_HINTS.get(token, ()))
    return headings


def vocabulary_chapters(tokens: Iterable[str]) -> Set[str]:
    wanted = set(tokens)
    return {chapter for chapter, vocab in CHAPTER_VOCABULARY.items() if vocab & wanted}


# Chapters classified by function rather than material; a material hint
# neither helps nor hurts codes in them.
MATERIAL_NEUTRAL_CHAPTERS: Set[str] = {"84", "85", "90", "91", "94", "95"}

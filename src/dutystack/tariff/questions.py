"""Targeted clarifying questions for low-confidence classifications.

Questions come from the scoring factors that separate the top candidates
most, so the user is only asked about what would actually change the
ranking.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple

from dutystack.tariff.hierarchy import CodeHierarchyStore
from dutystack.tariff.keywords import CHAPTER_MATERIALS, token_set
from dutystack.tariff.other_codes import FACT_DIMENSIONS, FACT_MATERIAL, FACT_UNIT_VALUE, FactThreshold

if TYPE_CHECKING:
    from dutystack.tariff.ranker import ClassificationCandidate

# Factors never worth asking about.
_SILENT_FACTORS = {"specificity"}

HOUSEHOLD_WORDS = {"household", "home", "domestic", "bedroom", "kitchen"}
COMMERCIAL_WORDS = {"hotel", "restaurant", "office", "commercial", "institutional", "industrial"}
USE_SPLIT_FACTOR = "intended_use"


@dataclass(frozen=True)
class ClarifyingQuestion:
    factor: str
    question: str
    why_needed: str
    options: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "factor": self.factor,
            "question": self.question,
            "why_needed": self.why_needed,
            "options": list(self.options),
        }


def use_class(text: str) -> Optional[str]:
    tokens = token_set(text)
    if tokens & COMMERCIAL_WORDS:
        return "commercial"
    if tokens & HOUSEHOLD_WORDS:
        return "household"
    return None


def factor_spreads(
    candidates: Sequence["ClassificationCandidate"],
    hierarchy: CodeHierarchyStore,
    *,
    intended_use_known: bool,
) -> List[Tuple[str, float]]:
    """``(factor, max - min)`` across candidates, largest spread first."""
    names = sorted({name for candidate in candidates for name in candidate.scoring_factors})
    spreads: Dict[str, float] = {}
    for name in names:
        if name in _SILENT_FACTORS:
            continue
        values = [candidate.scoring_factors.get(name, 0.0) for candidate in candidates]
        spread = round(max(values) - min(values), 6)
        if spread > 0:
            spreads[name] = spread

    if not intended_use_known and USE_SPLIT_FACTOR not in spreads:
        classes = {use_class(hierarchy.path_text(candidate.code)) for candidate in candidates}
        if "household" in classes and "commercial" in classes:
            spreads[USE_SPLIT_FACTOR] = 0.05

    return sorted(spreads.items(), key=lambda item: (-item[1], item[0]))


def _candidate_label(candidate: "ClassificationCandidate") -> str:
    return f"{candidate.display_code}: {candidate.description[:80]}"


def _question_for(
    factor: str,
    candidates: Sequence["ClassificationCandidate"],
    hierarchy: CodeHierarchyStore,
) -> Optional[ClarifyingQuestion]:
    codes = ", ".join(candidate.display_code for candidate in candidates)
    if factor == "material_match":
        materials = sorted({CHAPTER_MATERIALS.get(c.code[:2], "other material") for c in candidates})
        return ClarifyingQuestion(
            factor=factor,
            question="What is the primary material of the product (by weight or value)?",
            why_needed=f"Candidates {codes} are defined by different materials.",
            options=tuple(materials),
        )
    if factor in ("heading_hint", "chapter_match"):
        headings: List[str] = []
        for candidate in candidates:
            heading = candidate.code[:4]
            if heading in hierarchy:
                label = f"{heading}: {hierarchy.lookup(heading).description[:80]}"
                if label not in headings:
                    headings.append(label)
        return ClarifyingQuestion(
            factor=factor,
            question="Which of these best describes what the product is?",
            why_needed=f"Candidates {codes} sit under different headings.",
            options=tuple(headings),
        )
    if factor == USE_SPLIT_FACTOR:
        return ClarifyingQuestion(
            factor=factor,
            question="Is the product intended for household use or for commercial/institutional use?",
            why_needed=f"Candidates {codes} differ on intended use.",
            options=("household", "commercial / institutional"),
        )
    if factor == "other_penalty":
        options: List[str] = []
        for candidate in candidates:
            for code in candidate.other_exclusions:
                label = f"{code}: {hierarchy.lookup(code).description[:80]}"
                if label not in options:
                    options.append(label)
        options.append("None of these")
        return ClarifyingQuestion(
            factor=factor,
            question="Does the product match any of these more specific descriptions?",
            why_needed="A residual 'other' code only applies once the specific provisions are ruled out.",
            options=tuple(options),
        )
    if factor in ("keyword_overlap", "oracle_support"):
        return ClarifyingQuestion(
            factor=factor,
            question="Which description is closest to the product?",
            why_needed=f"The description matches {codes} to different degrees.",
            options=tuple(_candidate_label(candidate) for candidate in candidates),
        )
    return None


def generate_clarifying_questions(
    candidates: Sequence["ClassificationCandidate"],
    hierarchy: CodeHierarchyStore,
    *,
    max_questions: int = 3,
    intended_use_known: bool = False,
    top_n: int = 3,
) -> List[ClarifyingQuestion]:
    """Deterministic questions for the factors that split the top candidates."""
    if max_questions <= 0:
        return []
    top = list(candidates[:top_n])
    questions: List[ClarifyingQuestion] = []
    if len(top) > 1:
        for factor, _spread in factor_spreads(top, hierarchy, intended_use_known=intended_use_known):
            question = _question_for(factor, top, hierarchy)
            if question is None or any(q.question == question.question for q in questions):
                continue
            questions.append(question)
            if len(questions) >= max_questions:
                break
    if not questions:
        questions.append(
            ClarifyingQuestion(
                factor="detail",
                question="Please describe the product's material, function and intended use in more detail.",
                why_needed="The description does not single out one classification.",
            )
        )
    return questions[:max_questions]


_FACT_QUESTIONS = {
    FACT_UNIT_VALUE: "What is the unit value of the product (in USD, per the unit named in the tariff text)?",
    FACT_DIMENSIONS: "What are the product's maximum dimensions?",
    FACT_MATERIAL: "What is the product's material composition by weight?",
}


def fact_questions(thresholds: Sequence[FactThreshold]) -> List[ClarifyingQuestion]:
    """One question per unknown fact an 'other' code's exclusions depend on."""
    by_fact: Dict[str, List[FactThreshold]] = {}
    for threshold in thresholds:
        by_fact.setdefault(threshold.fact, []).append(threshold)
    questions: List[ClarifyingQuestion] = []
    for fact in sorted(by_fact):
        items = by_fact[fact]
        details = sorted({f"{item.sibling_code} ({item.detail})" for item in items})
        questions.append(
            ClarifyingQuestion(
                factor=fact,
                question=_FACT_QUESTIONS.get(fact, f"Please provide {fact}."),
                why_needed="Needed to rule out: " + "; ".join(details),
                options=tuple(sorted({item.detail for item in items})),
            )
        )
    return questions

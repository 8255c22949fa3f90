"""Classification ranker.

Generates candidate codes for a free-text product description from two
sources, keyword overlap against the schedule restricted to plausible
chapters and (optionally) an external inference oracle, then scores every
candidate with named factors so callers can show *why* a code ranked
where it did.

Tie-break for equal confidence: longer (more specific) code first, then
the lexicographically smaller code.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Set, Tuple

from dutystack.errors import (
    ORACLE_ERROR,
    ORACLE_TIMEOUT,
    CodeNotFound,
    InvalidCodeFormat,
    InvalidInput,
    OracleTimeout,
)
from dutystack.observability import log_event
from dutystack.tariff.hierarchy import CodeHierarchyStore, HtsNode, format_code, normalize_code
from dutystack.tariff.keywords import (
    MATERIAL_NEUTRAL_CHAPTERS,
    canonical_material,
    detect_material,
    hinted_headings,
    material_chapters,
    token_set,
    tokenize,
    vocabulary_chapters,
)
from dutystack.tariff.oracle import ClassificationHints, InferenceOracle, NullOracle, OracleSuggestion
from dutystack.tariff.other_codes import (
    FACT_DIMENSIONS,
    FACT_MATERIAL,
    FACT_UNIT_VALUE,
    FactThreshold,
    is_other_description,
    other_exclusions,
    unresolved_facts,
)
from dutystack.tariff.questions import (
    ClarifyingQuestion,
    use_class,
    fact_questions,
    generate_clarifying_questions,
)
from dutystack.tariff.stacking import EffectiveTariffResult

logger = logging.getLogger(__name__)

FACTOR_NAMES: Tuple[str, ...] = (
    "keyword_overlap",
    "heading_hint",
    "chapter_match",
    "material_match",
    "oracle_support",
    "intended_use",
    "specificity",
    "other_penalty",
)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ClassificationCandidate:
    code: str
    description: str
    confidence: float
    scoring_factors: Mapping[str, float]
    is_other: bool = False
    other_exclusions: Tuple[str, ...] = ()
    conditional_facts: Tuple[str, ...] = ()
    rationale: str = ""
    sources: Tuple[str, ...] = ()
    duty: Optional[EffectiveTariffResult] = None

    @property
    def display_code(self) -> str:
        return format_code(self.code)

    def with_duty(self, duty: Optional[EffectiveTariffResult]) -> "ClassificationCandidate":
        return ClassificationCandidate(
            code=self.code,
            description=self.description,
            confidence=self.confidence,
            scoring_factors=self.scoring_factors,
            is_other=self.is_other,
            other_exclusions=self.other_exclusions,
            conditional_facts=self.conditional_facts,
            rationale=self.rationale,
            sources=self.sources,
            duty=duty,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "display_code": self.display_code,
            "description": self.description,
            "confidence": self.confidence,
            "scoring_factors": dict(self.scoring_factors),
            "is_other": self.is_other,
            "other_exclusions": list(self.other_exclusions),
            "conditional_facts": list(self.conditional_facts),
            "rationale": self.rationale,
            "sources": list(self.sources),
            "duty": self.duty.to_dict() if self.duty else None,
        }


@dataclass(frozen=True)
class ConditionalClassification:
    """The primary code holds only if the listed facts rule out its exclusions."""

    code: str
    depends_on: Tuple[str, ...]
    exclusions: Tuple[str, ...]
    questions: Tuple[ClarifyingQuestion, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "depends_on": list(self.depends_on),
            "exclusions": list(self.exclusions),
            "questions": [q.to_dict() for q in self.questions],
        }


@dataclass(frozen=True)
class CandidatePool:
    candidates: Tuple[ClassificationCandidate, ...]
    detected_material: Optional[str]
    plausible_chapters: Tuple[str, ...]
    flags: Tuple[str, ...] = ()
    oracle_used: bool = False
    pending_facts: Mapping[str, Tuple[FactThreshold, ...]] = field(default_factory=dict)


@dataclass(frozen=True)
class ClassificationResult:
    description: str
    primary: Optional[ClassificationCandidate]
    alternatives: Tuple[ClassificationCandidate, ...]
    needs_clarification: bool
    questions: Tuple[ClarifyingQuestion, ...]
    conditional: Optional[ConditionalClassification]
    detected_material: Optional[str]
    flags: Tuple[str, ...]
    timing_ms: float
    hints: ClassificationHints = field(default_factory=ClassificationHints)

    @property
    def ranked(self) -> Tuple[ClassificationCandidate, ...]:
        return ((self.primary,) if self.primary else ()) + self.alternatives

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "primary": self.primary.to_dict() if self.primary else None,
            "alternatives": [c.to_dict() for c in self.alternatives],
            "needs_clarification": self.needs_clarification,
            "questions": [q.to_dict() for q in self.questions],
            "conditional_classification": self.conditional.to_dict() if self.conditional else None,
            "detected_material": self.detected_material,
            "flags": list(self.flags),
            "timing_ms": self.timing_ms,
        }


def rank_key(candidate: ClassificationCandidate) -> Tuple[float, int, str]:
    return (-candidate.confidence, -len(candidate.code), candidate.code)


# ---------------------------------------------------------------------------
# Ranker
# ---------------------------------------------------------------------------
class ClassificationRanker:
    def __init__(
        self,
        hierarchy: CodeHierarchyStore,
        oracle: Optional[InferenceOracle] = None,
        *,
        confidence_threshold: float = 0.40,
        max_questions: int = 3,
        oracle_timeout: float = 2.0,
        pool_limit: int = 40,
        max_alternatives: int = 4,
    ) -> None:
        self.hierarchy = hierarchy
        self.oracle: InferenceOracle = oracle or NullOracle()
        self.confidence_threshold = confidence_threshold
        self.max_questions = max_questions
        self.oracle_timeout = oracle_timeout
        self.pool_limit = pool_limit
        self.max_alternatives = max_alternatives
        self._executor: Optional[ThreadPoolExecutor] = None

    # -- oracle ------------------------------------------------------------

    def _oracle_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="oracle")
        return self._executor

    def _call_oracle(self, description: str, hints: ClassificationHints) -> Sequence[OracleSuggestion]:
        future: Future = self._oracle_executor().submit(self.oracle.infer, description, hints)
        try:
            return list(future.result(timeout=self.oracle_timeout))
        except FuturesTimeout as exc:
            future.cancel()
            raise OracleTimeout(
                f"Inference oracle {self.oracle.name!r} exceeded {self.oracle_timeout:.2f}s"
            ) from exc

    def _consult_oracle(
        self, description: str, hints: ClassificationHints
    ) -> Tuple[List[OracleSuggestion], List[str]]:
        if isinstance(self.oracle, NullOracle):
            return [], []
        try:
            return self._call_oracle(description, hints), []
        except OracleTimeout as exc:
            log_event("oracle.timeout", level=logging.WARNING, oracle=self.oracle.name, reason=exc.message)
            return [], [ORACLE_TIMEOUT]
        except Exception as exc:  # any oracle failure degrades to keyword-only ranking
            log_event("oracle.error", level=logging.WARNING, oracle=self.oracle.name, reason=str(exc))
            logger.exception("Inference oracle %s failed", self.oracle.name)
            return [], [ORACLE_ERROR]

    def _oracle_codes(self, suggestions: Sequence[OracleSuggestion]) -> Dict[str, Tuple[int, str]]:
        """Map suggested codes onto leaves: ``code → (rank, rationale)``."""
        mapped: Dict[str, Tuple[int, str]] = {}
        for rank, suggestion in enumerate(suggestions):
            try:
                node = self.hierarchy.lookup(suggestion.code)
            except (InvalidCodeFormat, CodeNotFound) as exc:
                logger.info("Dropping oracle suggestion %r: %s", suggestion.code, exc)
                continue
            targets = [node] if not self.hierarchy.has_children(node.code) else [
                leaf for leaf in self.hierarchy.leaves([node.chapter]) if leaf.code.startswith(node.code)
            ]
            for leaf in targets:
                if leaf.code not in mapped or rank < mapped[leaf.code][0]:
                    mapped[leaf.code] = (rank, suggestion.rationale)
        return mapped

    # -- candidates ----------------------------------------------------------

    def generate_candidates(
        self,
        description: str,
        hints: Optional[ClassificationHints] = None,
        *,
        limit: Optional[int] = None,
        include_siblings: bool = False,
    ) -> CandidatePool:
        """All plausible candidates, scored and ranked, without confidence filtering.

        ``include_siblings`` widens the pool with the leaf siblings of every
        candidate, for callers that prefer breadth over precision.
        """
        if not description or not description.strip():
            raise InvalidInput("description must not be empty")
        hints = hints or ClassificationHints()

        material = canonical_material(hints.material) or detect_material(description)
        query_tokens = set(tokenize(description))
        if material:
            query_tokens.add(material)
        if not query_tokens:
            # Only stopwords ("Other", "parts of"): nothing to score against.
            logger.info("Description %r has no classifiable terms", description)
            return CandidatePool(candidates=(), detected_material=None, plausible_chapters=())

        mat_chapters = material_chapters(material)
        head_hints = hinted_headings(query_tokens)
        vocab_chapters = vocabulary_chapters(query_tokens)
        available = set(self.hierarchy.chapters())
        plausible = (mat_chapters | {h[:2] for h in head_hints} | vocab_chapters) & available
        if not plausible:
            plausible = available

        keyword_hits: List[Tuple[int, str]] = []
        for leaf in self.hierarchy.leaves(sorted(plausible)):
            overlap = query_tokens & token_set(self.hierarchy.path_text(leaf.code))
            if overlap or leaf.heading in head_hints:
                keyword_hits.append((len(overlap), leaf.code))
        keyword_hits.sort(key=lambda item: (-item[0], item[1]))
        keyword_codes = [code for _, code in keyword_hits[: self.pool_limit]]

        suggestions, flags = self._consult_oracle(description, hints)
        oracle_codes = self._oracle_codes(suggestions)

        known_facts: Set[str] = set()
        if hints.unit_value is not None:
            known_facts.add(FACT_UNIT_VALUE)
        if material:
            known_facts.add(FACT_MATERIAL)
        if hints.dimensions_known:
            known_facts.add(FACT_DIMENSIONS)

        context = _ScoringContext(
            tokens=frozenset(query_tokens),
            material=material,
            material_chapters=frozenset(mat_chapters),
            hinted_headings=frozenset(head_hints),
            vocabulary_chapters=frozenset(vocab_chapters),
            intended_use=use_class(hints.intended_use or ""),
            oracle=oracle_codes,
            known_facts=frozenset(known_facts),
        )

        candidates: List[ClassificationCandidate] = []
        pending: Dict[str, Tuple[FactThreshold, ...]] = {}
        codes = set(keyword_codes) | set(oracle_codes)
        if include_siblings:
            for code in sorted(codes):
                codes.update(s.code for s in self.hierarchy.siblings(code) if not self.hierarchy.has_children(s.code))

        for code in sorted(codes):
            candidate, thresholds = self._score(self.hierarchy.lookup(code), context, keyword_codes)
            candidates.append(candidate)
            if thresholds:
                pending[code] = tuple(thresholds)
        candidates.sort(key=rank_key)
        if limit is not None:
            candidates = candidates[:limit]

        return CandidatePool(
            candidates=tuple(candidates),
            detected_material=material,
            plausible_chapters=tuple(sorted(plausible)),
            flags=tuple(flags),
            oracle_used=bool(oracle_codes),
            pending_facts=pending,
        )

    def _score(
        self,
        node: HtsNode,
        ctx: "_ScoringContext",
        keyword_codes: Sequence[str],
    ) -> Tuple[ClassificationCandidate, List[FactThreshold]]:
        path_tokens = token_set(self.hierarchy.path_text(node.code))
        matched = sorted(ctx.tokens & path_tokens)
        factors: Dict[str, float] = {name: 0.0 for name in FACTOR_NAMES}
        reasons: List[str] = []

        factors["keyword_overlap"] = 0.40 * len(matched) / len(ctx.tokens)
        if matched:
            reasons.append(f"matched terms: {', '.join(matched)}")
        if node.heading in ctx.hinted_headings:
            factors["heading_hint"] = 0.15
            reasons.append(f"product type points to heading {node.heading}")
        if node.chapter in ctx.vocabulary_chapters:
            factors["chapter_match"] = 0.10
        if ctx.material and node.chapter not in MATERIAL_NEUTRAL_CHAPTERS:
            if node.chapter in ctx.material_chapters:
                factors["material_match"] = 0.15
                reasons.append(f"material '{ctx.material}' fits chapter {node.chapter}")
            else:
                factors["material_match"] = -0.10
                reasons.append(f"material '{ctx.material}' conflicts with chapter {node.chapter}")
        if node.code in ctx.oracle:
            rank, rationale = ctx.oracle[node.code]
            factors["oracle_support"] = max(0.05, 0.15 - 0.03 * rank)
            reasons.append(f"suggested by inference (rank {rank + 1})" + (f": {rationale}" if rationale else ""))
        if ctx.intended_use and use_class(self.hierarchy.path_text(node.code)) == ctx.intended_use:
            factors["intended_use"] = 0.05
        factors["specificity"] = 0.05 * len(node.code) / 10

        is_other = is_other_description(node.description)
        exclusions: Tuple[str, ...] = ()
        thresholds: List[FactThreshold] = []
        if is_other:
            siblings = self.hierarchy.siblings(node.code)
            exclusions = other_exclusions(node, siblings)
            if exclusions:
                factors["other_penalty"] = -0.05
                reasons.append(f"residual 'other' code; excludes {', '.join(exclusions)}")
                thresholds = unresolved_facts(siblings, exclusions, known_facts=sorted(ctx.known_facts))

        factors = {name: round(value, 4) for name, value in factors.items()}
        confidence = round(min(1.0, max(0.0, sum(factors.values()))), 4)
        sources = tuple(
            source
            for source, present in (("keyword", node.code in keyword_codes), ("oracle", node.code in ctx.oracle))
            if present
        ) or ("sibling",)
        candidate = ClassificationCandidate(
            code=node.code,
            description=node.description,
            confidence=confidence,
            scoring_factors=factors,
            is_other=is_other,
            other_exclusions=exclusions,
            conditional_facts=tuple(sorted({t.fact for t in thresholds})),
            rationale="; ".join(reasons),
            sources=sources,
        )
        return candidate, thresholds

    # -- classification ------------------------------------------------------

    def classify(self, description: str, hints: Optional[ClassificationHints] = None) -> ClassificationResult:
        started = time.perf_counter()
        hints = hints or ClassificationHints()
        pool = self.generate_candidates(description, hints)
        ranked = pool.candidates

        primary = ranked[0] if ranked else None
        alternatives = tuple(ranked[1 : 1 + self.max_alternatives])
        needs_clarification = primary is None or primary.confidence < self.confidence_threshold

        questions: Tuple[ClarifyingQuestion, ...] = ()
        if needs_clarification:
            questions = tuple(
                generate_clarifying_questions(
                    ranked,
                    self.hierarchy,
                    max_questions=self.max_questions,
                    intended_use_known=bool(hints.intended_use),
                )
            )

        conditional = None
        if primary is not None and primary.conditional_facts:
            conditional = ConditionalClassification(
                code=primary.code,
                depends_on=primary.conditional_facts,
                exclusions=primary.other_exclusions,
                questions=tuple(fact_questions(pool.pending_facts.get(primary.code, ()))),
            )

        timing_ms = round((time.perf_counter() - started) * 1000.0, 2)
        log_event(
            "classify.complete",
            primary=primary.code if primary else None,
            confidence=primary.confidence if primary else 0.0,
            candidates=len(ranked),
            needs_clarification=needs_clarification,
            flags=list(pool.flags),
        )
        return ClassificationResult(
            description=description,
            primary=primary,
            alternatives=alternatives,
            needs_clarification=needs_clarification,
            questions=questions,
            conditional=conditional,
            detected_material=pool.detected_material,
            flags=pool.flags,
            timing_ms=timing_ms,
            hints=hints,
        )

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        close = getattr(self.oracle, "close", None)
        if callable(close):
            close()


@dataclass(frozen=True)
class _ScoringContext:
    tokens: FrozenSet[str]
    material: Optional[str]
    material_chapters: FrozenSet[str]
    hinted_headings: FrozenSet[str]
    vocabulary_chapters: FrozenSet[str]
    intended_use: Optional[str]
    oracle: Mapping[str, Tuple[int, str]]
    known_facts: FrozenSet[str]

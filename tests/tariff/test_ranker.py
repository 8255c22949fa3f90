from __future__ import annotations

import time

import pytest

from dutystack.errors import ORACLE_ERROR, ORACLE_TIMEOUT, InvalidInput
from dutystack.tariff.oracle import ClassificationHints, OracleSuggestion, StaticOracle
from dutystack.tariff.ranker import FACTOR_NAMES, ClassificationCandidate, ClassificationRanker, rank_key


@pytest.fixture()
def ranker(hierarchy):
    ranker = ClassificationRanker(hierarchy)
    yield ranker
    ranker.close()


class SlowOracle:
    name = "slow"

    def infer(self, description, hints):
        time.sleep(1.0)
        return [OracleSuggestion("69120048", "too late")]


class BrokenOracle:
    name = "broken"

    def infer(self, description, hints):
        raise ConnectionError("inference backend refused connection")


def _ranking(result):
    return [(c.code, c.confidence) for c in result.ranked]


def test_cotton_tshirt(ranker):
    result = ranker.classify("Cotton t-shirt")

    assert result.primary.code == "6109100010"
    assert result.primary.confidence == pytest.approx(0.85)
    assert not result.needs_clarification
    assert result.questions == ()
    assert result.detected_material == "cotton"
    assert set(result.primary.scoring_factors) == set(FACTOR_NAMES)
    assert result.primary.scoring_factors["heading_hint"] == pytest.approx(0.15)
    assert result.primary.display_code == "6109.10.00.10"


def test_ceramic_mug_scores_by_named_factors(ranker):
    result = ranker.classify("ceramic coffee mug")
    primary = result.primary

    assert primary.code == "69120044"
    assert primary.confidence == pytest.approx(0.7067)
    assert primary.scoring_factors["keyword_overlap"] == pytest.approx(0.2667)
    assert primary.scoring_factors["material_match"] == pytest.approx(0.15)
    assert primary.scoring_factors["specificity"] == pytest.approx(0.04)
    assert 1 <= len(result.alternatives) <= 4
    assert "matched terms: ceramic, mug" in primary.rationale


def test_material_conflict_is_penalized(ranker):
    pool = ranker.generate_candidates("ceramic coffee mug")
    steel = next(c for c in pool.candidates if c.code.startswith("7323"))
    assert steel.scoring_factors["material_match"] == pytest.approx(-0.10)


def test_ranked_list_sorted_and_bounded(ranker):
    pool = ranker.generate_candidates("ceramic coffee mug")
    confidences = [c.confidence for c in pool.candidates]
    assert confidences == sorted(confidences, reverse=True)
    assert all(0.0 <= c <= 1.0 for c in confidences)


def test_tie_break_prefers_longer_then_smaller_code():
    candidates = [
        ClassificationCandidate("69120048", "Other", 0.5, {}),
        ClassificationCandidate("6109100010", "T-shirts", 0.5, {}),
        ClassificationCandidate("69120044", "Mugs", 0.5, {}),
        ClassificationCandidate("61091000", "Of cotton", 0.9, {}),
    ]
    ordered = [c.code for c in sorted(candidates, key=rank_key)]
    assert ordered == ["61091000", "6109100010", "69120044", "69120048"]


def test_classification_is_deterministic(hierarchy):
    first = ClassificationRanker(hierarchy).classify("ceramic coffee mug", ClassificationHints(intended_use="home"))
    second = ClassificationRanker(hierarchy).classify("ceramic coffee mug", ClassificationHints(intended_use="home"))
    assert _ranking(first) == _ranking(second)
    assert [c.scoring_factors for c in first.ranked] == [c.scoring_factors for c in second.ranked]


def test_blank_description_rejected(ranker):
    with pytest.raises(InvalidInput):
        ranker.classify("   ")


def test_unknown_product_asks_for_detail(ranker):
    result = ranker.classify("widget")
    assert result.primary is None
    assert result.needs_clarification
    assert [q.factor for q in result.questions] == ["detail"]


@pytest.mark.parametrize("description", ["Other", "parts of the other", "n.e.s.o.i."])
def test_stopword_only_description_asks_for_detail(ranker, description):
    result = ranker.classify(description)
    assert result.primary is None
    assert result.alternatives == ()
    assert result.needs_clarification
    assert [q.factor for q in result.questions] == ["detail"]


def test_questions_follow_factor_spread(hierarchy):
    ranker = ClassificationRanker(hierarchy, confidence_threshold=0.9)
    result = ranker.classify("mug")

    assert result.primary.code == "69120044"
    assert result.needs_clarification
    assert [q.factor for q in result.questions] == ["keyword_overlap", "intended_use"]
    use_question = result.questions[1]
    assert use_question.options == ("household", "commercial / institutional")
    assert use_question.why_needed


def test_max_questions_caps_output(hierarchy):
    ranker = ClassificationRanker(hierarchy, confidence_threshold=0.9, max_questions=1)
    assert len(ranker.classify("mug").questions) == 1


# ---------------------------------------------------------------------------
# Residual "other" codes
# ---------------------------------------------------------------------------
def test_other_candidate_lists_exclusions_and_pending_facts(ranker):
    pool = ranker.generate_candidates("ceramic coffee mug")
    other = next(c for c in pool.candidates if c.code == "69120048")

    assert other.is_other
    assert other.other_exclusions == ("69120010", "69120044", "69120045")
    assert other.conditional_facts == ("unit_value",)
    assert other.scoring_factors["other_penalty"] == pytest.approx(-0.05)


def test_known_unit_value_resolves_other_condition(ranker):
    pool = ranker.generate_candidates("ceramic coffee mug", ClassificationHints(unit_value=4.0))
    other = next(c for c in pool.candidates if c.code == "69120048")
    assert other.conditional_facts == ()


def test_other_primary_carries_conditional_classification(hierarchy):
    oracle = StaticOracle({"plate": [OracleSuggestion("6912.00.48", "basket provision for ceramic plates")]})
    ranker = ClassificationRanker(hierarchy, oracle)
    try:
        result = ranker.classify("ceramic dessert plate")
    finally:
        ranker.close()

    assert result.primary.code == "69120048"
    assert result.primary.scoring_factors["oracle_support"] == pytest.approx(0.15)
    conditional = result.conditional
    assert conditional.code == "69120048"
    assert conditional.depends_on == ("unit_value",)
    assert conditional.exclusions == ("69120010", "69120044", "69120045")
    assert [q.factor for q in conditional.questions] == ["unit_value"]
    assert "69120045" in conditional.questions[0].why_needed


# ---------------------------------------------------------------------------
# Oracle degradation
# ---------------------------------------------------------------------------
def test_oracle_timeout_falls_back_to_keywords(hierarchy):
    baseline = ClassificationRanker(hierarchy).classify("ceramic coffee mug")
    slow = ClassificationRanker(hierarchy, SlowOracle(), oracle_timeout=0.05)
    try:
        started = time.perf_counter()
        result = slow.classify("ceramic coffee mug")
        elapsed = time.perf_counter() - started
    finally:
        slow.close()

    assert result.flags == (ORACLE_TIMEOUT,)
    assert _ranking(result) == _ranking(baseline)
    assert elapsed < 0.9


def test_oracle_error_falls_back_to_keywords(hierarchy):
    ranker = ClassificationRanker(hierarchy, BrokenOracle())
    try:
        result = ranker.classify("ceramic coffee mug")
    finally:
        ranker.close()
    assert result.flags == (ORACLE_ERROR,)
    assert result.primary.code == "69120044"


def test_oracle_codes_are_validated_and_expanded(hierarchy):
    oracle = StaticOracle(
        {
            "mug": [
                OracleSuggestion("ABC"),
                OracleSuggestion("9999999999"),
                OracleSuggestion("6912", "ceramic tableware heading"),
            ]
        }
    )
    ranker = ClassificationRanker(hierarchy, oracle)
    try:
        pool = ranker.generate_candidates("ceramic coffee mug")
    finally:
        ranker.close()

    assert pool.flags == ()
    assert pool.oracle_used
    by_code = {c.code: c for c in pool.candidates}
    assert "9999999999" not in by_code
    for code in ("69120010", "69120044", "69120045", "69120048"):
        assert by_code[code].scoring_factors["oracle_support"] == pytest.approx(0.09)
        assert "oracle" in by_code[code].sources

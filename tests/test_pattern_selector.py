"""
PatternSelector 테스트
"""

import pytest

from services.study_design.errors import InvalidDesignInputError
from services.study_design.pattern_selector import HALF_LIFE_PENALTY, HVD_PREFERENCE_BOOST, PatternSelector
from services.study_design.registry import build_registry


@pytest.fixture
def selector(registry):
    return PatternSelector(registry)


class TestPatternSelector:
    """PatternSelector.select"""

    def test_generic_default_is_standard_crossover(self, selector):
        selection = selector.select("generic", "pk_equivalence", {})
        assert selection.pattern_id == "PK_CROSSOVER_BE"
        assert selection.candidate_count == 2

    def test_hvd_ranks_replicate_above_standard(self, selector):
        """isHVD → replicate crossover boost"""
        selection = selector.select("generic", "pk_equivalence", {"isHVD": True})
        ranked = [s.pattern.id for s in selection.ranking]
        assert ranked == ["PK_CROSSOVER_BE_REPLICATE", "PK_CROSSOVER_BE"]
        assert selection.ranking[0].boost == HVD_PREFERENCE_BOOST
        assert "HVD preference boost" in selection.reason

    def test_long_half_life_penalizes_standard_crossover(self, selector):
        selection = selector.select("generic", "pk_equivalence", {"halfLife": 36})
        assert selection.pattern_id == "PK_CROSSOVER_BE_REPLICATE"
        standard = next(s for s in selection.ranking if s.pattern.id == "PK_CROSSOVER_BE")
        assert standard.penalty == HALF_LIFE_PENALTY

    def test_half_life_below_threshold_has_no_penalty(self, selector):
        selection = selector.select("generic", "pk_equivalence", {"halfLife": 12})
        assert selection.pattern_id == "PK_CROSSOVER_BE"

    def test_unknown_half_life_has_no_penalty(self, selector):
        selection = selector.select("generic", "pk_equivalence", {"isNTI": True})
        assert all(s.penalty == 0 for s in selection.ranking)

    def test_innovator_pk_safety_prefers_sad(self, selector):
        assert selector.select("innovator", "pk_safety").pattern_id == "SAD"

    def test_no_candidates(self, selector):
        selection = selector.select("biosimilar", "dose_selection", {})
        assert selection.pattern is None
        assert selection.candidate_count == 0
        assert selection.ranking == ()

    def test_tie_broken_by_specificity_then_id(self, raw_config):
        for pattern in raw_config["patterns"]:
            if pattern["id"] in ("SAD", "MAD"):
                pattern["priority"] = 10
                pattern["specificity_score"] = 80
        selector = PatternSelector(build_registry(raw_config))
        assert [s.pattern.id for s in selector.rank("innovator", "pk_safety")] == ["MAD", "SAD"]

        mad = next(p for p in raw_config["patterns"] if p["id"] == "MAD")
        mad["specificity_score"] = 70
        selector = PatternSelector(build_registry(raw_config))
        assert selector.select("innovator", "pk_safety").pattern_id == "SAD"

    def test_invalid_objective_raises(self, selector):
        with pytest.raises(InvalidDesignInputError):
            selector.select("generic", "bioequivalence", {})

    def test_selection_is_deterministic(self, selector):
        first = selector.select("innovator", "dose_selection", {"isHVD": True})
        second = selector.select("innovator", "dose_selection", {"isHVD": True})
        assert first == second

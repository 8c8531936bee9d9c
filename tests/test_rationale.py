"""
RationaleComposer / DecisionTraceRecorder / ConfidenceScorer 테스트
"""

import pytest

from services.study_design.guardrails import GuardrailEvaluator
from services.study_design.fallback import FallbackResolver
from services.study_design.models import HUMAN_DECISION_REQUIRED, DrugCharacteristics, Formulation
from services.study_design.rationale import (
    MANUAL_REVIEW_IMPLICATION,
    RationaleComposer,
    warning_from_fallback,
    warning_from_guardrail,
)
from services.study_design.trace import (
    STEP_GUARDRAILS,
    STEP_OBJECTIVE,
    STEP_PATHWAY,
    STEP_VERSIONS,
    ConfidenceScorer,
    DecisionTraceRecorder,
)


@pytest.fixture
def composer():
    return RationaleComposer()


class TestRationaleComposer:
    """RationaleComposer.build"""

    def test_three_layers_and_assumptions(self, composer, registry):
        pattern = registry.get_pattern("SAD")
        rationale = composer.build(pattern, "innovator", "pk_safety", {})
        text = rationale.render()
        assert text.startswith(f"WHAT: {pattern.rationale.what} WHY: ")
        assert f"REG: {pattern.rationale.reg}" in text
        assert "Assumptions: " in text
        assert rationale.assumptions == pattern.rationale.assumptions
        assert rationale.notes == ()

    def test_generic_hvd_and_nti_notes(self, composer, registry):
        rationale = composer.build(
            registry.get_pattern("PK_CROSSOVER_BE_REPLICATE"),
            "generic",
            "pk_equivalence",
            {"isHVD": True, "isNTI": True},
        )
        assert len(rationale.notes) == 2
        assert "highly variable" in rationale.notes[0]
        assert "narrow therapeutic index" in rationale.notes[1]

    def test_hvd_note_only_on_generic(self, composer, registry):
        rationale = composer.build(registry.get_pattern("SAD"), "innovator", "pk_safety", {"isHVD": True})
        assert rationale.notes == ()

    def test_long_half_life_and_food_effect_notes(self, composer, registry):
        rationale = composer.build(
            registry.get_pattern("PK_CROSSOVER_BE"),
            "generic",
            "pk_equivalence",
            {"halfLife": 36, "hasFoodEffect": True},
        )
        assert any("36h" in note for note in rationale.notes)
        assert any("food effect" in note for note in rationale.notes)

    def test_indication_note_for_confirmatory(self, composer, registry):
        rationale = composer.build(
            registry.get_pattern("CONFIRMATORY_RCT_SUPERIORITY"),
            "innovator",
            "confirmatory_efficacy",
            {},
            indication="Hypertension",
        )
        assert rationale.notes == ("Endpoints selected are appropriate for Hypertension.",)

    def test_indication_ignored_for_pk_objectives(self, composer, registry):
        rationale = composer.build(registry.get_pattern("SAD"), "innovator", "pk_safety", {}, indication="Oncology")
        assert rationale.notes == ()

    def test_fallback_note_rendered_last(self, composer, registry):
        rationale = composer.build(
            registry.get_pattern("SAD"), "innovator", "pk_safety", {}, fallback_note="Initial pattern was adjusted."
        )
        assert rationale.render().endswith("Note: Initial pattern was adjusted.")
        assert rationale.to_dict()["fallback_note"] == "Initial pattern was adjusted."

    def test_no_pattern_message(self, composer):
        rationale = composer.build(None, "biosimilar", "dose_selection", {})
        assert rationale.human_decision_required
        assert rationale.render() == (
            "HUMAN_DECISION_REQUIRED: No valid design pattern could be selected for biosimilar pathway "
            "with dose_selection objective. Manual review is needed."
        )
        assert rationale.to_dict()["what"] is None

    def test_structured_fields_survive_to_dict(self, composer, registry):
        data = composer.build(registry.get_pattern("SAD"), "innovator", "pk_safety", {}).to_dict()
        assert set(data) == {"what", "why", "regulatory", "assumptions", "notes", "fallback_note"}


class TestStructuredWarnings:
    """guardrail / fallback → StructuredWarning"""

    def test_soft_warning_from_guardrail(self, registry):
        report = GuardrailEvaluator(registry).check(
            registry.get_pattern("OBSERVATIONAL_REGISTRY"), "post_marketing", "long_term_safety", {}
        )
        warning = warning_from_guardrail(report.matches[0])
        assert warning.severity == "SOFT"
        assert warning.rule_id == "GR-102"
        assert warning.implication == "Sample size assumptions need refinement"

    def test_hard_warning_from_blocking_rule(self, registry):
        report = GuardrailEvaluator(registry).check(None, "generic", "confirmatory_efficacy", {})
        warning = warning_from_guardrail(report.first_blocking)
        assert warning.severity == "HARD"
        assert warning.rule_id == "GR-003"

    def test_human_decision_warning(self, registry):
        resolution = FallbackResolver(registry).resolve("hybrid", "pk_equivalence", {}, None)
        warning = warning_from_fallback(resolution)
        assert warning.severity == "HARD"
        assert warning.rule_id == HUMAN_DECISION_REQUIRED
        assert warning.implication == MANUAL_REVIEW_IMPLICATION

    def test_accepted_fallback_warning_is_soft(self, registry):
        resolution = FallbackResolver(registry).resolve("innovator", "pk_safety", {}, "PK_CROSSOVER_BE", ["SAD"])
        warning = warning_from_fallback(resolution)
        assert warning.severity == "SOFT"
        assert warning.rule_id is None

    def test_accepted_fallback_warning_carries_blocking_rule(self, registry):
        blocking = GuardrailEvaluator(registry).check(None, "biosimilar", "dose_selection", {}).first_blocking
        resolution = FallbackResolver(registry).resolve("innovator", "pk_safety", {}, None, ["SAD"])
        warning = warning_from_fallback(resolution, blocking)
        assert warning.severity == "SOFT"
        assert warning.rule_id == "GR-004"


class TestDecisionTraceRecorder:
    """DecisionTraceRecorder"""

    def test_records_in_order(self):
        trace = DecisionTraceRecorder()
        trace.record(STEP_VERSIONS, "Load config snapshot", "engine=2.3")
        trace.record(STEP_PATHWAY, "productType=generic", "generic")
        assert trace.steps == [STEP_VERSIONS, STEP_PATHWAY]
        assert trace.to_list()[1] == {"step": STEP_PATHWAY, "action": "productType=generic", "result": "generic"}

    def test_out_of_order_step_rejected(self):
        trace = DecisionTraceRecorder()
        trace.record(STEP_GUARDRAILS, "check", "passed")
        with pytest.raises(ValueError):
            trace.record(STEP_OBJECTIVE, "classify", "pk_safety")

    def test_unknown_step_rejected(self):
        with pytest.raises(ValueError):
            DecisionTraceRecorder().record("7. extra", "a", "b")

    def test_drug_entry_is_redacted(self):
        trace = DecisionTraceRecorder()
        entry = trace.record_drug_characteristics(
            "OME***",
            DrugCharacteristics.from_mapping({"isHVD": True, "halfLife": 1.5}),
            Formulation.coerce({"dosageForm": "capsule", "route": "oral"}),
        )
        assert entry.action == "compound=OME***, formulation=capsule/oral"
        assert entry.result == "isHVD=True, isNTI=False, halfLife=1.5h, foodEffect=False"


class TestConfidenceScorer:
    """ConfidenceScorer.score"""

    @pytest.mark.parametrize(
        "pattern, fallback, drug, warnings, expected",
        [
            ("SAD", False, {}, 0, 95),
            (None, False, {}, 0, 0),
            ("SAD", True, {}, 0, 80),
            ("SAD", False, {"isHVD": True}, 0, 90),
            ("SAD", False, {"isHVD": True, "isNTI": True}, 0, 85),
            ("SAD", False, {}, 2, 95),
            ("SAD", False, {}, 3, 85),
            ("SAD", True, {"isHVD": True, "isNTI": True}, 3, 60),
            (None, True, {"isHVD": True}, 5, 0),
        ],
    )
    def test_score(self, pattern, fallback, drug, warnings, expected):
        assert ConfidenceScorer().score(pattern, fallback, drug, warnings) == expected

    def test_non_increasing_in_warning_count(self):
        scorer = ConfidenceScorer()
        scores = [scorer.score("SAD", False, {}, n) for n in range(6)]
        assert scores == sorted(scores, reverse=True)

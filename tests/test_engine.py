"""
DesignEngine end-to-end 테스트

- 대표 시나리오 (generic BE, biosimilar dose 차단, hybrid fallback)
- 결정론 (같은 입력 → byte 단위로 같은 trace)
- fallback → confidence 감소
- snapshot 교체 (reload)
"""

import json
import threading

import pytest

from services.study_design import engine as engine_module
from services.study_design.engine import DesignEngine
from services.study_design.errors import ConfigValidationError, InvalidDesignInputError
from services.study_design.models import HUMAN_DECISION_REQUIRED
from services.study_design.registry import build_registry
from services.study_design.trace import STEP_FALLBACK, STEP_ORDER


class TestScenarios:
    """대표 시나리오"""

    def test_generic_phase_1_be_study(self, engine):
        output = engine.generate_study_design("generic", "omeprazole", {}, "Phase 1 BE study")
        assert output.regulatory_pathway == "generic"
        assert output.primary_objective == "pk_equivalence"
        assert output.design_pattern in ("PK_CROSSOVER_BE", "PK_CROSSOVER_BE_REPLICATE")
        assert output.confidence > 0
        assert output.status == "pattern_selected"
        assert output.phase_label == "BE Study"

    def test_biosimilar_dose_selection_blocked(self, engine):
        output = engine.generate_study_design("biosimilar", "adalimumab", {}, "Phase 2 dose")
        assert output.regulatory_pathway == "biosimilar"
        assert output.primary_objective == "dose_selection"
        assert output.design_pattern is None
        assert output.confidence == 0
        assert output.status == "human_decision_required"
        assert any(HUMAN_DECISION_REQUIRED in w.message for w in output.warnings)
        assert [w.rule_id for w in output.warnings] == [HUMAN_DECISION_REQUIRED]
        guardrail_entry = next(e for e in output.decision_trace if e.step == "3.5. evaluate_guardrails")
        assert "GR-004" in guardrail_entry.result

    def test_human_decision_output_shape(self, engine):
        data = engine.generate_study_design("biosimilar", "adalimumab", {}, "Phase 2 dose").to_dict()
        assert data["design_summary"] is None
        assert data["population"] is None
        assert data["phase_label"] is None
        assert data["protocol"] is None
        assert data["regulatory_basis"] == []
        assert data["regulatory_rationale"].startswith(f"{HUMAN_DECISION_REQUIRED}:")

    def test_hvd_selects_replicate(self, engine):
        output = engine.generate_study_design(
            "generic", "clopidogrel", None, "BE study", drug_characteristics={"isHVD": True}
        )
        assert output.design_pattern == "PK_CROSSOVER_BE_REPLICATE"
        assert output.confidence == 90
        assert "highly variable" in output.regulatory_rationale

    def test_hybrid_without_patterns_goes_to_human(self, engine):
        output = engine.generate_study_design("hybrid", "XR-505", None, "505(b)(2) bridging")
        assert output.design_pattern is None
        steps = [e.step for e in output.decision_trace]
        assert STEP_FALLBACK in steps

    def test_hybrid_confirmatory_uses_fallback_order(self, engine):
        output = engine.generate_study_design("hybrid", "XR-505", None, "Phase 3 pivotal")
        assert output.design_pattern == "CONFIRMATORY_RCT_SUPERIORITY"
        assert output.phase_label == "Phase 3"
        assert output.confidence == 80
        assert output.warnings[0].severity == "SOFT"

    def test_post_marketing_registry(self, engine):
        output = engine.generate_study_design("innovator", "ABC-123", None, "Phase 4 registry")
        assert output.regulatory_pathway == "post_marketing"
        assert output.design_pattern == "OBSERVATIONAL_REGISTRY"
        assert [w.rule_id for w in output.warnings] == ["GR-102"]

    def test_population_and_summary(self, engine):
        output = engine.generate_study_design("generic", "omeprazole", None, "Phase 1 BE study")
        data = output.to_dict()
        assert data["population"]["type"] == "healthy_volunteers"
        assert data["population"]["sample_size_range"] == {"min": 24, "max": 48, "recommended": 36}
        assert data["design_summary"]["structure"] == "crossover"
        assert data["design_summary"]["typical_n"] == "24-48 subjects"
        assert data["regulatory_basis"][0].startswith("FDA Guidance: Bioequivalence Studies")
        assert data["config_hash"] == engine.config_hash

    def test_patients_population_midpoint(self, engine):
        output = engine.generate_study_design("biosimilar", "trastuzumab", None, "Phase 3 equivalence")
        population = output.population
        assert population.type == "patients"
        assert population.sample_size_range.recommended == 550

    def test_unknown_product_type(self, engine):
        with pytest.raises(InvalidDesignInputError):
            engine.generate_study_design("device", "stent")

    def test_innovator_regulatory_basis_is_pattern_reg(self, engine):
        output = engine.generate_study_design("innovator", "ABC-123", None, "First-in-human")
        assert output.regulatory_basis == (output.rationale.regulatory,)

    def test_missing_compound_name(self, engine):
        output = engine.generate_study_design("innovator", None, None, "First-in-human")
        assert output.design_pattern == "SAD"
        assert output.decision_trace[3].action.startswith("compound=***")

    def test_non_numeric_half_life(self, engine):
        with pytest.raises(InvalidDesignInputError) as exc_info:
            engine.generate_study_design("generic", "omeprazole", drug_characteristics={"halfLife": "long"})
        assert exc_info.value.field == "drug_characteristics.half_life"

    def test_negative_half_life(self, engine):
        with pytest.raises(InvalidDesignInputError):
            engine.generate_study_design("generic", "omeprazole", drug_characteristics={"half_life": -1})


class TestProtocolDetails:
    """선택된 pattern의 protocol 상세"""

    def test_generic_be_protocol(self, engine):
        output = engine.generate_study_design(
            "generic", "omeprazole", None, "Phase 1 BE study", drug_characteristics={"halfLife": 1.5}
        )
        protocol = output.to_dict()["protocol"]
        assert protocol["periods"] == 2
        assert protocol["sequences"] == 2
        assert protocol["washout_days"] == 7
        assert protocol["acceptance_criteria"]["criterion"] == "Average Bioequivalence"
        assert protocol["endpoints"]["primary"] == ["AUC0-t", "AUC0-inf", "Cmax"]
        assert protocol["sampling"]["timepoints_hours"][1] == 0.25
        assert protocol["comparator"]["type"] == "reference_drug"
        assert protocol["conditions"] == {"fasting": True, "fed": False, "fed_description": None}

    def test_hvd_replicate_protocol(self, engine):
        output = engine.generate_study_design(
            "generic", "clopidogrel", None, "BE study", drug_characteristics={"isHVD": True, "halfLife": 48}
        )
        assert output.protocol.periods == 4
        assert output.protocol.washout_days == 10
        assert output.protocol.acceptance_criteria.criterion == "Reference-Scaled Average Bioequivalence"

    def test_nti_generic_population_adjusted(self, engine):
        output = engine.generate_study_design("generic", "warfarin", None, "BE study", drug_characteristics={"isNTI": True})
        sample_size = output.population.sample_size_range
        assert (sample_size.min, sample_size.max, sample_size.recommended) == (36, 48, 42)
        assert "NTI" in output.population.rationale
        assert "90.00-111.11%" in output.protocol.acceptance_criteria.margin

    def test_biosimilar_clinical_equivalence(self, engine):
        output = engine.generate_study_design("biosimilar", "trastuzumab", None, "Phase 3 equivalence")
        protocol = output.protocol
        assert protocol.comparator.type == "reference_biologic"
        assert protocol.duration.follow_up_days == 56
        assert "±15%" in protocol.acceptance_criteria.margin
        assert protocol.sampling.timepoints_hours == ()

    def test_human_decision_has_no_protocol(self, engine):
        output = engine.generate_study_design("biosimilar", "adalimumab", {}, "Phase 2 dose")
        assert output.protocol is None
        assert output.to_dict()["protocol"] is None


class TestTrace:
    """decision trace"""

    def test_trace_order(self, engine):
        output = engine.generate_study_design("generic", "omeprazole", None, "Phase 1 BE study")
        steps = [e.step for e in output.decision_trace]
        assert steps == [s for s in STEP_ORDER if s != STEP_FALLBACK]

    def test_trace_starts_with_versions_and_hash(self, engine):
        output = engine.generate_study_design("generic", "omeprazole")
        assert engine.config_hash in output.decision_trace[0].result

    def test_compound_is_redacted(self, engine):
        output = engine.generate_study_design("generic", "omeprazole", {"dosage_form": "capsule"})
        drug_entry = output.decision_trace[3]
        assert drug_entry.action.startswith("compound=OME***")
        assert "omeprazole" not in json.dumps(output.to_dict()["decision_trace"])

    def test_identical_inputs_give_identical_traces(self, engine):
        kwargs = dict(stage_hint="Phase 3 pivotal", indication="Heart failure", drug_characteristics={"isNTI": True})
        first = engine.generate_study_design("innovator", "ABC-123", **kwargs).to_dict()
        second = engine.generate_study_design("innovator", "ABC-123", **kwargs).to_dict()
        assert json.dumps(first["decision_trace"], sort_keys=True) == json.dumps(
            second["decision_trace"], sort_keys=True
        )
        assert json.dumps(first, sort_keys=True) == json.dumps(second, sort_keys=True)


class TestFallbackConfidence:
    """fallback이 일어나면 confidence가 엄격히 낮아짐"""

    def test_forced_fallback_lowers_confidence(self, raw_config, engine):
        baseline = engine.generate_study_design("generic", "omeprazole", None, "Phase 1 BE study")

        raw_config["guardrails"].append(
            {
                "id": "GR-090",
                "version": "1.0",
                "severity": "HARD_STOP",
                "action": "FALLBACK",
                "match": {"pattern_id": ["PK_CROSSOVER_BE"]},
                "message": "Standard crossover disabled for this test.",
                "trace_note": "Forced fallback.",
                "fallback_hint": {"strategy": "use_fallback_order_for_pathway_objective"},
            }
        )
        forced = DesignEngine(build_registry(raw_config)).generate_study_design(
            "generic", "omeprazole", None, "Phase 1 BE study"
        )
        assert forced.design_pattern == "PK_CROSSOVER_BE_REPLICATE"
        assert forced.confidence < baseline.confidence
        assert forced.rationale.fallback_note.startswith("Initial pattern was adjusted due to guardrail:")

    def test_blocked_replicate_counts_fallback_once(self, raw_config):
        """차단 규칙은 fallback warning 1건으로만 계산: 95 - 15 (fallback) - 5 (HVD) = 75"""
        raw_config["guardrails"].append(
            {
                "id": "GR-090",
                "version": "1.0",
                "severity": "HARD_STOP",
                "action": "FALLBACK",
                "match": {"pattern_id": ["PK_CROSSOVER_BE_REPLICATE"]},
                "message": "Replicate crossover disabled for this test.",
                "trace_note": "Forced fallback.",
                "fallback_hint": {"strategy": "use_fallback_order_for_pathway_objective"},
            }
        )
        output = DesignEngine(build_registry(raw_config)).generate_study_design(
            "generic", "clopidogrel", None, "BE study", {"isHVD": True}
        )
        assert output.design_pattern == "PK_CROSSOVER_BE"
        assert output.confidence == 75
        assert output.warnings[0].severity == "SOFT"
        assert output.warnings[0].rule_id == "GR-090"
        assert "GR-090" not in [w.rule_id for w in output.warnings[1:]]
        assert "Replicate crossover disabled" in output.rationale.fallback_note
        guardrail_entry = next(e for e in output.decision_trace if e.step == "3.5. evaluate_guardrails")
        assert "GR-090" in guardrail_entry.result


class TestSnapshot:
    """snapshot 교체"""

    def test_engine_rejects_invalid_registry(self, raw_config):
        raw_config["fallback_order"]["innovator:pk_safety"] = ["GHOST"]
        with pytest.raises(ConfigValidationError):
            DesignEngine(build_registry(raw_config))

    def test_reload_swaps_snapshot(self, raw_config, engine):
        old_hash = engine.config_hash
        raw_config["patterns"][0]["priority"] = 12
        engine.reload(build_registry(raw_config))
        assert engine.config_hash != old_hash
        output = engine.generate_study_design("innovator", "ABC-123", None, "First-in-human")
        assert output.design_pattern == "MAD"
        assert output.config_hash == engine.config_hash

    def test_failed_reload_keeps_old_snapshot(self, raw_config, engine):
        old_hash = engine.config_hash
        raw_config["guardrails"].append({"id": "GR-001"})
        with pytest.raises(ConfigValidationError):
            engine.reload(build_registry(raw_config))
        assert engine.config_hash == old_hash

    def test_concurrent_calls(self, engine):
        results = []

        def worker():
            results.append(engine.generate_study_design("generic", "omeprazole", None, "Phase 1 BE study").to_dict())

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(results) == 8
        assert all(r == results[0] for r in results)


class TestModuleFunctions:
    """번들 설정 기반 module-level API"""

    def test_validate_configs(self):
        report = engine_module.validate_configs()
        assert report["valid"] is True

    def test_generate_config_hash_is_stable(self):
        assert engine_module.generate_config_hash() == engine_module.generate_config_hash()

    def test_generate_study_design(self):
        output = engine_module.generate_study_design("generic", "omeprazole", None, "Phase 1 BE study")
        assert output.config_hash == engine_module.generate_config_hash()

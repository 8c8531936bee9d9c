"""
Study Design Engine (orchestrator)

START → PATHWAY_CLASSIFIED → OBJECTIVE_CLASSIFIED → PATTERN_SELECTED|NONE
      → GUARDRAILS_EVALUATED → [FALLBACK_LOOP] → PHASE_DERIVED
      → RATIONALE_COMPOSED → PROTOCOL_DERIVED
      → DONE(pattern) | DONE(human_decision_required)

- generate_study_design()는 순수 함수: 같은 입력 + 같은 snapshot → 같은 출력/trace
- 호출마다 snapshot 참조를 한 번만 읽음 (read path에 lock 없음)
- reload()는 검증된 새 registry로 snapshot을 통째로 교체
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Mapping

from .classifiers import ObjectiveClassifier, PathwayClassifier, derive_phase_label
from .config_loader import clear_cache
from .fallback import FallbackResolution, FallbackResolver
from .guardrails import GuardrailEvaluator, GuardrailReport
from .models import HUMAN_DECISION_REQUIRED, DesignPattern, DrugCharacteristics, Formulation, SampleSizeAdjustment
from .pattern_selector import PatternSelector
from .protocol import ProtocolBuilder, ProtocolDetails
from .rationale import (
    RationaleComposer,
    StructuredRationale,
    StructuredWarning,
    fallback_note_for,
    warning_from_fallback,
    warning_from_guardrail,
)
from .registry import ConfigRegistry, load_registry, load_validated_registry
from .trace import (
    STEP_FALLBACK,
    STEP_GUARDRAILS,
    STEP_OBJECTIVE,
    STEP_OUTPUT,
    STEP_PATHWAY,
    STEP_PHASE,
    STEP_RATIONALE,
    STEP_SELECT,
    STEP_VERSIONS,
    ConfidenceScorer,
    DecisionTraceRecorder,
)
from .utils import redact_identifier

logger = logging.getLogger(__name__)

Status = Literal["pattern_selected", "human_decision_required"]


# =============================================================================
# Output
# =============================================================================

@dataclass(frozen=True)
class SampleSizeRange:
    min: int
    max: int
    recommended: int


@dataclass(frozen=True)
class Population:
    type: Literal["healthy_volunteers", "patients"]
    description: str
    sample_size_range: SampleSizeRange
    rationale: str

    @classmethod
    def for_pattern(
        cls,
        pattern: DesignPattern,
        adjustment: SampleSizeAdjustment | None = None,
    ) -> "Population":
        n_range = pattern.typical_n_range
        healthy = n_range.unit == "subjects"
        note = f": {n_range.note}" if n_range.note else ""
        if adjustment is not None:
            sample_size_range = SampleSizeRange(adjustment.min, adjustment.max, adjustment.recommended)
            note += f" ({adjustment.note})" if adjustment.note else ""
        else:
            sample_size_range = SampleSizeRange(
                min=n_range.min,
                max=n_range.max,
                # half-up rounding of the midpoint
                recommended=(n_range.min + n_range.max + 1) // 2,
            )
        return cls(
            type="healthy_volunteers" if healthy else "patients",
            description=f"{'Healthy volunteers' if healthy else 'Patients'} meeting inclusion/exclusion criteria",
            sample_size_range=sample_size_range,
            rationale=f"Based on {pattern.id} design requirements{note}",
        )

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "description": self.description,
            "sample_size_range": {
                "min": self.sample_size_range.min,
                "max": self.sample_size_range.max,
                "recommended": self.sample_size_range.recommended,
            },
            "rationale": self.rationale,
        }


def design_summary_for(pattern: DesignPattern) -> dict:
    summary = pattern.summary
    return {
        "structure": summary.structure,
        "randomization": summary.randomization,
        "blinding": summary.blinding,
        "arms": summary.arms,
        "comparator": summary.comparator,
        "key_features": list(summary.key_features),
        "typical_n": pattern.typical_n_range.describe(),
    }


@dataclass(frozen=True)
class StudyDesignOutput:
    regulatory_pathway: str
    primary_objective: str
    design_pattern: str | None
    design_name: str | None
    design_summary: dict | None
    phase_label: str | None
    rationale: StructuredRationale
    warnings: tuple[StructuredWarning, ...]
    population: Population | None
    protocol: ProtocolDetails | None
    regulatory_basis: tuple[str, ...]
    confidence: int
    decision_trace: tuple
    config_hash: str

    @property
    def status(self) -> Status:
        return "pattern_selected" if self.design_pattern else "human_decision_required"

    @property
    def regulatory_rationale(self) -> str:
        return self.rationale.render()

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "regulatory_pathway": self.regulatory_pathway,
            "primary_objective": self.primary_objective,
            "design_pattern": self.design_pattern,
            "design_name": self.design_name,
            "design_summary": self.design_summary,
            "phase_label": self.phase_label,
            "regulatory_rationale": self.regulatory_rationale,
            "structured_rationale": self.rationale.to_dict(),
            "warnings": [w.to_dict() for w in self.warnings],
            "population": self.population.to_dict() if self.population else None,
            "protocol": self.protocol.to_dict() if self.protocol else None,
            "regulatory_basis": list(self.regulatory_basis),
            "confidence": self.confidence,
            "decision_trace": [e.to_dict() for e in self.decision_trace],
            "config_hash": self.config_hash,
        }


# =============================================================================
# Snapshot
# =============================================================================

@dataclass(frozen=True)
class EngineSnapshot:
    """registry + 그 registry에 묶인 stage 객체 (통째로 교체)"""
    registry: ConfigRegistry
    pathway_classifier: PathwayClassifier
    objective_classifier: ObjectiveClassifier
    selector: PatternSelector
    evaluator: GuardrailEvaluator
    resolver: FallbackResolver
    protocol_builder: ProtocolBuilder

    @classmethod
    def build(cls, registry: ConfigRegistry) -> "EngineSnapshot":
        registry.ensure_valid()
        evaluator = GuardrailEvaluator(registry)
        return cls(
            registry=registry,
            pathway_classifier=PathwayClassifier(registry.classification),
            objective_classifier=ObjectiveClassifier(registry.classification),
            selector=PatternSelector(registry),
            evaluator=evaluator,
            resolver=FallbackResolver(registry, evaluator),
            protocol_builder=ProtocolBuilder(registry.protocol),
        )


# =============================================================================
# Engine
# =============================================================================

class DesignEngine:
    def __init__(self, registry: ConfigRegistry):
        self._snapshot = EngineSnapshot.build(registry)
        self._reload_lock = threading.Lock()
        self._composer = RationaleComposer()
        self._scorer = ConfidenceScorer()

    @classmethod
    def from_config_dir(cls, config_dir: Path | None = None) -> "DesignEngine":
        return cls(load_validated_registry(config_dir))

    @property
    def registry(self) -> ConfigRegistry:
        return self._snapshot.registry

    @property
    def config_hash(self) -> str:
        return self._snapshot.registry.config_hash

    def validation_report(self) -> dict:
        return self._snapshot.registry.validation_report()

    def reload(self, registry: ConfigRegistry | None = None, config_dir: Path | None = None) -> ConfigRegistry:
        """
        새 snapshot으로 교체

        Raises:
            ConfigValidationError: 검증 실패 (기존 snapshot 유지)
        """
        with self._reload_lock:
            if registry is None:
                clear_cache()
                registry = load_validated_registry(config_dir)
            snapshot = EngineSnapshot.build(registry)
            previous = self._snapshot.registry.config_hash
            self._snapshot = snapshot
        logger.info(f"Study design config reloaded: {previous} -> {registry.config_hash}")
        return registry

    def generate_study_design(
        self,
        product_type: str,
        compound_name: str,
        formulation: Formulation | Mapping[str, Any] | None = None,
        stage_hint: str | None = None,
        indication: str | None = None,
        drug_characteristics: DrugCharacteristics | Mapping[str, Any] | None = None,
    ) -> StudyDesignOutput:
        snap = self._snapshot
        registry = snap.registry
        trace = DecisionTraceRecorder()

        trace.record(STEP_VERSIONS, "Load config snapshot", registry.version_string())

        # 1-2. classification
        pathway_result = snap.pathway_classifier.classify(product_type, compound_name, stage_hint)
        pathway = pathway_result.value
        trace.record(
            STEP_PATHWAY,
            f"productType={product_type}, stageHint={stage_hint or 'none'}",
            f"{pathway} ({pathway_result.reason})",
        )

        objective_result = snap.objective_classifier.classify(pathway, stage_hint)
        objective = objective_result.value
        trace.record(STEP_OBJECTIVE, f"pathway={pathway}", f"{objective} ({objective_result.reason})")

        drug = DrugCharacteristics.coerce(drug_characteristics)
        trace.record_drug_characteristics(redact_identifier(compound_name), drug, Formulation.coerce(formulation))

        # 3. selection
        selection = snap.selector.select(pathway, objective, drug)
        ranking = ", ".join(s.describe() for s in selection.ranking) or "none"
        trace.record(
            STEP_SELECT,
            f"Rank {selection.candidate_count} candidate(s) for {pathway}/{objective}",
            f"{selection.reason}; ranking: {ranking}",
        )

        # 3.5 guardrails
        report = snap.evaluator.check(selection.pattern, pathway, objective, drug)
        blocking = report.first_blocking
        trace.record(
            STEP_GUARDRAILS,
            f"Check {selection.pattern_id or 'no pattern'} against {len(registry.guardrails)} rule(s)",
            _describe_guardrails(report),
        )

        # 3.6 fallback
        pattern = selection.pattern
        resolution: FallbackResolution | None = None
        fallback_note = None
        if blocking is not None or pattern is None:
            hint = blocking.fallback_hint if blocking is not None else None
            specific = hint.candidate_patterns() if hint is not None else None
            resolution = snap.resolver.resolve(pathway, objective, drug, selection.pattern_id, specific)
            trace.record(
                STEP_FALLBACK,
                f"Walk {resolution.source}: {', '.join(resolution.chain) or 'empty'}",
                resolution.describe(),
            )
            pattern = resolution.pattern
            if blocking is not None:
                fallback_note = fallback_note_for(blocking)

        warnings = _collect_warnings(report, resolution)

        # 4. phase label
        phase_label = derive_phase_label(pattern, objective, registry.classification)
        trace.record(STEP_PHASE, f"pattern={pattern.id if pattern else 'null'}", phase_label or "null")

        # 5. rationale
        rationale = self._composer.build(pattern, pathway, objective, drug, indication, fallback_note)
        if rationale.human_decision_required:
            rationale_result = "human decision message"
        else:
            rationale_result = (
                f"{len(rationale.notes)} note(s), {len(rationale.assumptions)} assumption(s), "
                f"{len(rationale.render())} chars"
            )
        trace.record(STEP_RATIONALE, "Compose WHAT/WHY/REG rationale", rationale_result)

        # 5.5 protocol details
        protocol = None
        if pattern is not None:
            protocol = snap.protocol_builder.build(pattern, pathway, objective, drug, compound_name)

        # 6. output
        fallback_occurred = resolution is not None and pattern is not None
        confidence = self._scorer.score(pattern, fallback_occurred, drug, len(warnings))
        if pattern is not None:
            output_result = (
                f"pattern={pattern.id}, phase={phase_label}, confidence={confidence}%, "
                f"acceptance={protocol.acceptance_criteria.criterion}"
            )
            logger.debug(f"[engine] {pathway}/{objective} -> {pattern.id} (confidence={confidence})")
        else:
            output_result = f"{HUMAN_DECISION_REQUIRED} - no valid pattern"
            logger.info(f"[engine] {pathway}/{objective} -> {HUMAN_DECISION_REQUIRED}")
        trace.record(STEP_OUTPUT, "Final design selection", output_result)

        return StudyDesignOutput(
            regulatory_pathway=pathway,
            primary_objective=objective,
            design_pattern=pattern.id if pattern else None,
            design_name=pattern.title if pattern else None,
            design_summary=design_summary_for(pattern) if pattern else None,
            phase_label=phase_label,
            rationale=rationale,
            warnings=tuple(warnings),
            population=Population.for_pattern(pattern, protocol.sample_size_adjustment) if protocol else None,
            protocol=protocol,
            regulatory_basis=snap.protocol_builder.regulatory_basis(pattern, pathway) if pattern else (),
            confidence=confidence,
            decision_trace=trace.entries,
            config_hash=registry.config_hash,
        )


def _describe_guardrails(report: GuardrailReport) -> str:
    blocking = report.first_blocking
    if blocking is not None:
        return f"[{blocking.severity}] {blocking.rule_id}: {blocking.trace_note}"
    if report.implicit_pass:
        return "PASSED - no rule matched (implicit pass)"
    ids = ", ".join(r.rule_id for r in report.matches)
    return f"PASSED with {len(report.matches)} warning(s): {ids}"


def _collect_warnings(
    report: GuardrailReport,
    resolution: FallbackResolution | None,
) -> list[StructuredWarning]:
    """
    순서:
    1. fallback 결과 (human decision 또는 채택된 fallback)
    2. 최종 평가의 non-blocking 매칭 (fallback 채택 시 채택된 pattern 기준)

    차단한 규칙은 trace와 fallback_note에만 남김 (fallback warning 1건으로 계산)
    """
    warnings: list[StructuredWarning] = []
    if resolution is not None:
        warnings.append(warning_from_fallback(resolution, report.first_blocking))

    final_report = resolution.evaluation if resolution is not None and resolution.evaluation else report
    warnings.extend(warning_from_guardrail(r) for r in final_report.non_blocking)
    return warnings


# =============================================================================
# Module-level API (bundled config)
# =============================================================================

_default_engine: DesignEngine | None = None
_default_lock = threading.Lock()


def get_default_engine() -> DesignEngine:
    """번들 설정으로 만든 engine (최초 호출 시 생성, fail-hard)"""
    global _default_engine
    if _default_engine is None:
        with _default_lock:
            if _default_engine is None:
                _default_engine = DesignEngine.from_config_dir()
    return _default_engine


def reset_default_engine() -> None:
    """기본 engine 폐기 (테스트용)"""
    global _default_engine
    with _default_lock:
        _default_engine = None
    clear_cache()


def generate_study_design(
    product_type: str,
    compound_name: str,
    formulation: Formulation | Mapping[str, Any] | None = None,
    stage_hint: str | None = None,
    indication: str | None = None,
    drug_characteristics: DrugCharacteristics | Mapping[str, Any] | None = None,
) -> StudyDesignOutput:
    return get_default_engine().generate_study_design(
        product_type,
        compound_name,
        formulation=formulation,
        stage_hint=stage_hint,
        indication=indication,
        drug_characteristics=drug_characteristics,
    )


def validate_configs(config_dir: Path | None = None) -> dict:
    """
    설정 검증 (startup 시 1회)

    Returns:
        {"valid": bool, "errors": [{"type": "error"|"warning", "message": ..., "location": ...}]}
    """
    return load_registry(config_dir).validation_report()


def generate_config_hash() -> str:
    return get_default_engine().config_hash

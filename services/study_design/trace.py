"""
Decision trace + confidence

- DecisionTraceRecorder: 단계별 기록 (append-only, 고정 순서, 시각 정보 없음)
- ConfidenceScorer: 0-100 신뢰도
"""

from __future__ import annotations

from typing import Any, Mapping

from .models import DecisionTraceEntry, DrugCharacteristics, DesignPattern, Formulation

# =============================================================================
# Trace steps (fixed order)
# =============================================================================

STEP_VERSIONS = "0. versions"
STEP_PATHWAY = "1. classify_pathway"
STEP_OBJECTIVE = "2. classify_objective"
STEP_DRUG = "2.5. drug_characteristics"
STEP_SELECT = "3. select_pattern"
STEP_GUARDRAILS = "3.5. evaluate_guardrails"
STEP_FALLBACK = "3.6. resolve_fallback"
STEP_PHASE = "4. derive_phase_label"
STEP_RATIONALE = "5. compose_rationale"
STEP_OUTPUT = "6. output"

STEP_ORDER: tuple[str, ...] = (
    STEP_VERSIONS,
    STEP_PATHWAY,
    STEP_OBJECTIVE,
    STEP_DRUG,
    STEP_SELECT,
    STEP_GUARDRAILS,
    STEP_FALLBACK,
    STEP_PHASE,
    STEP_RATIONALE,
    STEP_OUTPUT,
)


class DecisionTraceRecorder:
    """호출마다 새로 생성 (공유하지 않음)"""

    def __init__(self):
        self._entries: list[DecisionTraceEntry] = []

    def record(self, step: str, action: str, result: str) -> DecisionTraceEntry:
        if step not in STEP_ORDER:
            raise ValueError(f"Unknown trace step: {step}")
        if self._entries and STEP_ORDER.index(step) <= STEP_ORDER.index(self._entries[-1].step):
            raise ValueError(f"Trace step out of order: {step} after {self._entries[-1].step}")
        entry = DecisionTraceEntry(step=step, action=action, result=result)
        self._entries.append(entry)
        return entry

    def record_drug_characteristics(
        self,
        redacted_compound: str,
        drug: DrugCharacteristics,
        formulation: Formulation,
    ) -> DecisionTraceEntry:
        return self.record(
            STEP_DRUG,
            f"compound={redacted_compound}, formulation={formulation.describe()}",
            drug.describe(),
        )

    @property
    def entries(self) -> tuple[DecisionTraceEntry, ...]:
        return tuple(self._entries)

    @property
    def steps(self) -> list[str]:
        return [e.step for e in self._entries]

    def to_list(self) -> list[dict]:
        return [e.to_dict() for e in self._entries]


# =============================================================================
# Confidence
# =============================================================================

BASE_CONFIDENCE = 95
FALLBACK_PENALTY = 15
DRUG_FLAG_PENALTY = 5
WARNING_PENALTY = 10
WARNING_THRESHOLD = 2


class ConfidenceScorer:
    """
    95 (pattern 있음) / 0 (없음)
      - fallback으로 pattern 결정: -15
      - isHVD, isNTI: 각 -5
      - warning 3건 이상: -10
    → [0, 100] clamp
    """

    def score(
        self,
        pattern: DesignPattern | str | None,
        fallback_occurred: bool,
        drug_chars: DrugCharacteristics | Mapping[str, Any] | None,
        warning_count: int,
    ) -> int:
        drug = DrugCharacteristics.coerce(drug_chars)
        confidence = BASE_CONFIDENCE if pattern else 0
        if pattern and fallback_occurred:
            confidence -= FALLBACK_PENALTY
        if drug.is_hvd:
            confidence -= DRUG_FLAG_PENALTY
        if drug.is_nti:
            confidence -= DRUG_FLAG_PENALTY
        if warning_count > WARNING_THRESHOLD:
            confidence -= WARNING_PENALTY
        return max(0, min(100, confidence))

"""
RationaleComposer

3-layer regulatory rationale (WHAT / WHY / REG) + 조건부 note + assumptions + fallback note.
구조화된 필드(StructuredRationale)를 끝까지 유지하고, 문자열은 render()로만 만든다.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Mapping

from .fallback import FallbackResolution
from .guardrails import GuardrailResult
from .models import HUMAN_DECISION_REQUIRED, DesignPattern, DrugCharacteristics, ensure_objective, ensure_pathway

LONG_HALF_LIFE_HOURS = 24.0
MANUAL_REVIEW_IMPLICATION = "Manual review required before proceeding"
INDICATION_OBJECTIVES = ("confirmatory_efficacy", "clinical_equivalence")


@dataclass(frozen=True)
class StructuredRationale:
    what: str | None
    why: str | None
    regulatory: str | None
    assumptions: tuple[str, ...] = ()
    notes: tuple[str, ...] = ()
    fallback_note: str | None = None
    human_decision_message: str | None = None

    @property
    def human_decision_required(self) -> bool:
        return self.human_decision_message is not None

    def render(self) -> str:
        if self.human_decision_message is not None:
            return self.human_decision_message
        layers = [f"WHAT: {self.what}", f"WHY: {self.why}", f"REG: {self.regulatory}"]
        layers.extend(self.notes)
        if self.assumptions:
            layers.append(f"Assumptions: {'; '.join(self.assumptions)}")
        if self.fallback_note:
            layers.append(f"Note: {self.fallback_note}")
        return " ".join(layers)

    def to_dict(self) -> dict:
        return {
            "what": self.what,
            "why": self.why,
            "regulatory": self.regulatory,
            "assumptions": list(self.assumptions),
            "notes": list(self.notes),
            "fallback_note": self.fallback_note,
        }


@dataclass(frozen=True)
class StructuredWarning:
    severity: Literal["HARD", "SOFT"]
    message: str
    implication: str | None = None
    rule_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "severity": self.severity,
            "message": self.message,
            "implication": self.implication,
            "rule_id": self.rule_id,
        }


def warning_from_guardrail(result: GuardrailResult) -> StructuredWarning:
    return StructuredWarning(
        severity="HARD" if result.severity == "HARD_STOP" else "SOFT",
        message=result.message,
        implication=result.implication,
        rule_id=result.rule_id,
    )


def warning_from_fallback(
    resolution: FallbackResolution,
    blocking: GuardrailResult | None = None,
) -> StructuredWarning:
    """human decision → HARD, 채택된 fallback → SOFT (차단 규칙 id를 함께 기록)"""
    if resolution.human_decision_required:
        return StructuredWarning(
            severity="HARD",
            message=resolution.warning,
            implication=MANUAL_REVIEW_IMPLICATION,
            rule_id=HUMAN_DECISION_REQUIRED,
        )
    return StructuredWarning(
        severity="SOFT",
        message=resolution.warning,
        implication="Design differs from the first-ranked pattern",
        rule_id=blocking.rule_id if blocking is not None else None,
    )


def fallback_note_for(result: GuardrailResult) -> str:
    return f"Initial pattern was adjusted due to guardrail: {result.message}"


class RationaleComposer:
    def build(
        self,
        pattern: DesignPattern | None,
        pathway: str,
        objective: str,
        drug_chars: DrugCharacteristics | Mapping[str, Any] | None = None,
        indication: str | None = None,
        fallback_note: str | None = None,
    ) -> StructuredRationale:
        ensure_pathway(pathway)
        ensure_objective(objective)

        if pattern is None:
            return StructuredRationale(
                what=None,
                why=None,
                regulatory=None,
                fallback_note=fallback_note,
                human_decision_message=(
                    f"{HUMAN_DECISION_REQUIRED}: No valid design pattern could be selected for "
                    f"{pathway} pathway with {objective} objective. Manual review is needed."
                ),
            )

        drug = DrugCharacteristics.coerce(drug_chars)
        return StructuredRationale(
            what=pattern.rationale.what,
            why=pattern.rationale.why,
            regulatory=pattern.rationale.reg,
            assumptions=pattern.rationale.assumptions,
            notes=tuple(self._notes(pathway, objective, drug, indication)),
            fallback_note=fallback_note,
        )

    @staticmethod
    def _notes(pathway: str, objective: str, drug: DrugCharacteristics, indication: str | None) -> list[str]:
        notes = []
        if pathway == "generic":
            if drug.is_hvd:
                notes.append("Reference-scaled approach applied for highly variable drug (CV >30%).")
            if drug.is_nti:
                notes.append("Tightened bioequivalence limits (90.00-111.11%) applied for narrow therapeutic index.")
        if drug.half_life is not None and drug.half_life >= LONG_HALF_LIFE_HOURS:
            notes.append(
                f"Long half-life ({drug.half_life:g}h) requires an extended washout or a parallel alternative."
            )
        if pathway == "generic" and drug.has_food_effect:
            notes.append("Fed-state bioequivalence assessment recommended due to food effect.")
        if indication and objective in INDICATION_OBJECTIVES:
            notes.append(f"Endpoints selected are appropriate for {indication}.")
        return notes

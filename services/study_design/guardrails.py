"""
GuardrailEvaluator

선택된 pattern을 regulatory guardrail 규칙으로 검증

핵심 원칙:
- 모든 규칙을 ID 순서로 평가하고 매칭된 결과를 전부 반환
- HARD_STOP + (FALLBACK | BLOCK) 만 선택을 차단
- 매칭 0건 → implicit pass 결과 1건 (명시적 규칙과 구분 가능)
- pattern이 None이면 combination-level 규칙만 매칭 가능
- 약물 flag 미지정 = False, half-life 미지정은 threshold를 만족하지 않음
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from .models import (
    DesignPattern,
    DrugCharacteristics,
    FallbackHint,
    GuardrailPredicate,
    GuardrailRule,
    ensure_objective,
    ensure_pathway,
)
from .registry import ConfigRegistry

logger = logging.getLogger(__name__)

IMPLICIT_PASS_ID = "IMPLICIT_PASS"


@dataclass(frozen=True)
class GuardrailResult:
    """규칙 1건의 매칭 결과"""
    rule_id: str
    severity: str
    action: str
    message: str
    trace_note: str
    implication: str | None = None
    fallback_hint: FallbackHint | None = None
    implicit: bool = False

    @property
    def blocks(self) -> bool:
        return self.severity == "HARD_STOP" and self.action in ("FALLBACK", "BLOCK")

    @classmethod
    def from_rule(cls, rule: GuardrailRule) -> "GuardrailResult":
        return cls(
            rule_id=rule.id,
            severity=rule.severity,
            action=rule.action,
            message=rule.message,
            trace_note=rule.trace_note,
            implication=rule.implication,
            fallback_hint=rule.fallback_hint,
        )


IMPLICIT_PASS = GuardrailResult(
    rule_id=IMPLICIT_PASS_ID,
    severity="SOFT_WARNING",
    action="WARN",
    message="No guardrail rule matched.",
    trace_note="Implicit pass: no rule matched.",
    implicit=True,
)


@dataclass(frozen=True)
class GuardrailReport:
    pattern_id: str | None
    results: tuple[GuardrailResult, ...]

    @property
    def implicit_pass(self) -> bool:
        return len(self.results) == 1 and self.results[0].implicit

    @property
    def matches(self) -> tuple[GuardrailResult, ...]:
        """명시적 규칙 매칭만 (implicit pass 제외)"""
        return tuple(r for r in self.results if not r.implicit)

    @property
    def blocking(self) -> tuple[GuardrailResult, ...]:
        return tuple(r for r in self.matches if r.blocks)

    @property
    def first_blocking(self) -> GuardrailResult | None:
        blocking = self.blocking
        return blocking[0] if blocking else None

    @property
    def is_blocked(self) -> bool:
        return bool(self.blocking)

    @property
    def non_blocking(self) -> tuple[GuardrailResult, ...]:
        return tuple(r for r in self.matches if not r.blocks)

    def describe(self) -> str:
        """trace용 요약"""
        if self.implicit_pass:
            return "passed (no rule matched)"
        parts = [f"{r.rule_id}:{r.severity}/{r.action}" for r in self.matches]
        status = "blocked" if self.is_blocked else "passed"
        return f"{status} [{', '.join(parts)}]"


def predicate_matches(
    predicate: GuardrailPredicate,
    pattern: DesignPattern | None,
    pathway: str,
    objective: str,
    drug: DrugCharacteristics,
) -> bool:
    """모든 present field가 만족되면 True (AND), list field는 OR"""
    if predicate.pathway is not None and pathway not in predicate.pathway:
        return False
    if predicate.objective is not None and objective not in predicate.objective:
        return False

    if predicate.drug_is_hvd is not None and bool(drug.is_hvd) != predicate.drug_is_hvd:
        return False
    if predicate.drug_is_nti is not None and bool(drug.is_nti) != predicate.drug_is_nti:
        return False
    if predicate.drug_half_life_hours_gte is not None:
        if drug.half_life is None or drug.half_life < predicate.drug_half_life_hours_gte:
            return False

    if pattern is None:
        return not predicate.is_pattern_level

    if predicate.pattern_id is not None and pattern.id not in predicate.pattern_id:
        return False
    if predicate.pattern_id_not is not None and pattern.id in predicate.pattern_id_not:
        return False
    if predicate.pattern_tags is not None and not set(predicate.pattern_tags) & set(pattern.tags):
        return False
    if predicate.structure is not None and pattern.summary.structure not in predicate.structure:
        return False
    if predicate.blinding is not None and pattern.summary.blinding not in predicate.blinding:
        return False
    if predicate.comparator is not None and pattern.summary.comparator not in predicate.comparator:
        return False
    if predicate.constraints is not None:
        for name, required in predicate.constraints:
            if pattern.constraints.flag(name) != required:
                return False
    if predicate.n_range_ratio_gt is not None and not pattern.typical_n_range.ratio > predicate.n_range_ratio_gt:
        return False
    return True


class GuardrailEvaluator:
    def __init__(self, registry: ConfigRegistry):
        self._registry = registry

    def check(
        self,
        pattern: DesignPattern | None,
        pathway: str,
        objective: str,
        drug_chars: DrugCharacteristics | Mapping[str, Any] | None = None,
    ) -> GuardrailReport:
        ensure_pathway(pathway)
        ensure_objective(objective)
        drug = DrugCharacteristics.coerce(drug_chars)

        results = [
            GuardrailResult.from_rule(rule)
            for rule in self._registry.guardrails
            if predicate_matches(rule.match, pattern, pathway, objective, drug)
        ]
        pattern_id = pattern.id if pattern else None
        if not results:
            logger.debug(f"[guardrails] {pattern_id} {pathway}/{objective}: implicit pass")
            return GuardrailReport(pattern_id=pattern_id, results=(IMPLICIT_PASS,))

        logger.debug(f"[guardrails] {pattern_id} {pathway}/{objective}: {[r.rule_id for r in results]}")
        return GuardrailReport(pattern_id=pattern_id, results=tuple(results))

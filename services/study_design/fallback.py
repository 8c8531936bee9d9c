"""
FallbackResolver

차단된 선택을 fallback 후보 목록으로 해소

- 후보 목록: blocking 규칙이 지정한 specific pattern 목록 (빈 목록도 그대로 사용)
  없으면 fallback_order[pathway:objective] (키 없으면 [HUMAN_DECISION_REQUIRED])
- tried 집합은 차단된 pattern id로 시작, 이미 시도한 id는 건너뜀
- HUMAN_DECISION_REQUIRED sentinel → 즉시 종료
- 후보마다 guardrail 재평가, blocking이 없으면 채택
- 목록 소진 → human decision
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal, Mapping

from .guardrails import GuardrailEvaluator, GuardrailReport
from .models import HUMAN_DECISION_REQUIRED, DesignPattern, DrugCharacteristics, fallback_key
from .registry import ConfigRegistry

logger = logging.getLogger(__name__)

FallbackSource = Literal["specific_patterns", "fallback_order"]


@dataclass(frozen=True)
class FallbackStep:
    pattern_id: str
    outcome: Literal["accepted", "blocked", "skipped", "sentinel", "unknown"]
    detail: str = ""

    def describe(self) -> str:
        return f"{self.pattern_id}:{self.outcome}" + (f"({self.detail})" if self.detail else "")


@dataclass(frozen=True)
class FallbackResolution:
    pathway: str
    objective: str
    pattern: DesignPattern | None
    source: FallbackSource
    chain: tuple[str, ...]
    tried: tuple[str, ...]
    steps: tuple[FallbackStep, ...]
    evaluation: GuardrailReport | None = None

    @property
    def pattern_id(self) -> str | None:
        return self.pattern.id if self.pattern else None

    @property
    def human_decision_required(self) -> bool:
        return self.pattern is None

    @property
    def step_count(self) -> int:
        return len(self.steps)

    @property
    def warning(self) -> str:
        """fallback 결과 메시지"""
        tried = ", ".join(self.tried) or "none"
        if self.pattern is None:
            return (
                f"[{HUMAN_DECISION_REQUIRED}] No valid fallback found for {self.pathway}/{self.objective}. "
                f"Tried: {tried}."
            )
        return f"Fallback to {self.pattern.id} (after trying: {tried})."

    def describe(self) -> str:
        walked = ", ".join(step.describe() for step in self.steps) or "empty chain"
        result = self.pattern_id or HUMAN_DECISION_REQUIRED
        return f"{result} via {self.source} [{walked}]"


class FallbackResolver:
    def __init__(self, registry: ConfigRegistry, evaluator: GuardrailEvaluator | None = None):
        self._registry = registry
        self._evaluator = evaluator or GuardrailEvaluator(registry)

    def resolve(
        self,
        pathway: str,
        objective: str,
        drug_chars: DrugCharacteristics | Mapping[str, Any] | None,
        blocked_pattern_id: str | None,
        specific_patterns: tuple[str, ...] | list[str] | None = None,
    ) -> FallbackResolution:
        drug = DrugCharacteristics.coerce(drug_chars)
        if specific_patterns is not None:
            chain = tuple(specific_patterns)
            source: FallbackSource = "specific_patterns"
        else:
            chain = self._registry.get_fallback_order(pathway, objective)
            source = "fallback_order"

        tried: list[str] = [blocked_pattern_id] if blocked_pattern_id else []
        steps: list[FallbackStep] = []

        for pattern_id in chain:
            if pattern_id == HUMAN_DECISION_REQUIRED:
                steps.append(FallbackStep(pattern_id, "sentinel"))
                break
            if pattern_id in tried:
                steps.append(FallbackStep(pattern_id, "skipped", "already tried"))
                continue
            tried.append(pattern_id)

            pattern = self._registry.get_pattern(pattern_id)
            if pattern is None:
                # validated registries never reach this
                steps.append(FallbackStep(pattern_id, "unknown"))
                continue

            report = self._evaluator.check(pattern, pathway, objective, drug)
            blocking = report.first_blocking
            if blocking is not None:
                steps.append(FallbackStep(pattern_id, "blocked", blocking.rule_id))
                continue

            steps.append(FallbackStep(pattern_id, "accepted"))
            logger.debug(f"[fallback] {fallback_key(pathway, objective)}: accepted {pattern_id}")
            return FallbackResolution(
                pathway=pathway,
                objective=objective,
                pattern=pattern,
                source=source,
                chain=chain,
                tried=tuple(tried),
                steps=tuple(steps),
                evaluation=report,
            )

        logger.debug(f"[fallback] {fallback_key(pathway, objective)}: human decision required")
        return FallbackResolution(
            pathway=pathway,
            objective=objective,
            pattern=None,
            source=source,
            chain=chain,
            tried=tuple(tried),
            steps=tuple(steps),
        )

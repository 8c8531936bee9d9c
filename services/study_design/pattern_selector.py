"""
PatternSelector

pathway + objective 둘 다 허용하는 pattern 중 score가 가장 낮은 것을 선택.

    score = priority + penalty - boost
      boost   = 10  (isHVD이고 pattern이 prefer_if.is_hvd)
      penalty = 20  (half-life >= pattern의 avoid_if.half_life_hours_gte)

정렬: score 오름차순 → specificity_score 내림차순 → id 오름차순
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from .models import DesignPattern, DrugCharacteristics, ensure_objective, ensure_pathway
from .registry import ConfigRegistry

HVD_PREFERENCE_BOOST = 10.0
HALF_LIFE_PENALTY = 20.0


@dataclass(frozen=True)
class ScoredPattern:
    pattern: DesignPattern
    score: float
    boost: float
    penalty: float

    def describe(self) -> str:
        text = f"{self.pattern.id}(score={self.score:g}"
        if self.boost:
            text += f", boost={self.boost:g}"
        if self.penalty:
            text += f", penalty={self.penalty:g}"
        return text + ")"


@dataclass(frozen=True)
class PatternSelection:
    pattern: DesignPattern | None
    candidate_count: int
    reason: str
    ranking: tuple[ScoredPattern, ...] = ()

    @property
    def pattern_id(self) -> str | None:
        return self.pattern.id if self.pattern else None


def score_pattern(pattern: DesignPattern, drug: DrugCharacteristics) -> ScoredPattern:
    boost = HVD_PREFERENCE_BOOST if (drug.is_hvd and pattern.drug_rules.prefer_hvd) else 0.0
    threshold = pattern.drug_rules.avoid_half_life_hours_gte
    penalty = 0.0
    if threshold is not None and drug.half_life is not None and drug.half_life >= threshold:
        penalty = HALF_LIFE_PENALTY
    return ScoredPattern(
        pattern=pattern,
        score=pattern.priority + penalty - boost,
        boost=boost,
        penalty=penalty,
    )


def _sort_key(scored: ScoredPattern) -> tuple:
    return (scored.score, -scored.pattern.specificity_score, scored.pattern.id)


class PatternSelector:
    def __init__(self, registry: ConfigRegistry):
        self._registry = registry

    def candidates(self, pathway: str, objective: str) -> list[DesignPattern]:
        return [p for p in self._registry.patterns.values() if p.allows(pathway, objective)]

    def rank(
        self,
        pathway: str,
        objective: str,
        drug_chars: DrugCharacteristics | Mapping[str, Any] | None = None,
    ) -> list[ScoredPattern]:
        ensure_pathway(pathway)
        ensure_objective(objective)
        drug = DrugCharacteristics.coerce(drug_chars)
        return sorted((score_pattern(p, drug) for p in self.candidates(pathway, objective)), key=_sort_key)

    def select(
        self,
        pathway: str,
        objective: str,
        drug_chars: DrugCharacteristics | Mapping[str, Any] | None = None,
    ) -> PatternSelection:
        ranking = self.rank(pathway, objective, drug_chars)
        if not ranking:
            return PatternSelection(
                pattern=None,
                candidate_count=0,
                reason=f"No patterns allowed for {pathway}/{objective}",
            )

        best = ranking[0]
        reason = f"Selected {best.pattern.id} (score={best.score:g}) from {len(ranking)} candidate(s)"
        if best.boost:
            reason += "; HVD preference boost applied"
        if best.penalty:
            reason += "; long half-life penalty applied"
        return PatternSelection(
            pattern=best.pattern,
            candidate_count=len(ranking),
            reason=reason,
            ranking=tuple(ranking),
        )

"""
ProtocolBuilder

선택된 design pattern → protocol 상세 항목
- acceptance criteria (ABE / NTI tightened / HVD reference-scaled / clinical equivalence)
- primary / secondary endpoints
- PK sampling schedule (반감기 구간별)
- crossover washout, period / sequence 수
- dosing regimen, fed / fasting 조건, comparator
- study duration, sample size 보정, pathway별 regulatory basis

모든 값은 registry.protocol 테이블에서 결정적으로 도출 (같은 입력 → 같은 출력)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping

from .models import (
    AcceptanceCriteria,
    ComparatorDescription,
    CrossoverLayout,
    DesignPattern,
    DrugCharacteristics,
    EndpointSet,
    ProtocolTables,
    SampleSizeAdjustment,
)

SINGLE_PERIOD = CrossoverLayout(periods=1, sequences=1)
NO_COMPARATOR = ComparatorDescription(type="none", description="")


@dataclass(frozen=True)
class SamplingSchedule:
    timepoints_hours: tuple[float, ...]
    half_life_hours: float
    half_life_assumed: bool
    rationale: str

    @property
    def total_samples(self) -> int:
        return len(self.timepoints_hours)

    def to_dict(self) -> dict:
        return {
            "timepoints_hours": list(self.timepoints_hours),
            "total_samples": self.total_samples,
            "half_life_hours": self.half_life_hours,
            "half_life_assumed": self.half_life_assumed,
            "rationale": self.rationale,
        }


@dataclass(frozen=True)
class StudyConditions:
    fasting: bool
    fed: bool
    fed_description: str | None = None

    def to_dict(self) -> dict:
        return {"fasting": self.fasting, "fed": self.fed, "fed_description": self.fed_description}


@dataclass(frozen=True)
class StudyDuration:
    screening_days: int
    treatment_days: int
    washout_days: int
    follow_up_days: int
    total_weeks: int

    def to_dict(self) -> dict:
        return {
            "screening_days": self.screening_days,
            "treatment_days": self.treatment_days,
            "washout_days": self.washout_days,
            "follow_up_days": self.follow_up_days,
            "total_weeks": self.total_weeks,
        }


@dataclass(frozen=True)
class ProtocolDetails:
    periods: int
    sequences: int
    washout_days: int
    dosing_regimen: str
    dosing_description: str
    conditions: StudyConditions
    comparator: ComparatorDescription
    sampling: SamplingSchedule
    endpoints: EndpointSet
    acceptance_criteria: AcceptanceCriteria
    duration: StudyDuration
    sample_size_adjustment: SampleSizeAdjustment | None = None

    def to_dict(self) -> dict:
        adjustment = self.sample_size_adjustment
        return {
            "periods": self.periods,
            "sequences": self.sequences,
            "washout_days": self.washout_days,
            "dosing": {"regimen": self.dosing_regimen, "description": self.dosing_description},
            "conditions": self.conditions.to_dict(),
            "comparator": {"type": self.comparator.type, "description": self.comparator.description},
            "sampling": self.sampling.to_dict(),
            "endpoints": self.endpoints.to_dict(),
            "acceptance_criteria": self.acceptance_criteria.to_dict(),
            "duration": self.duration.to_dict(),
            "sample_size_adjustment": (
                {
                    "min": adjustment.min,
                    "max": adjustment.max,
                    "recommended": adjustment.recommended,
                    "note": adjustment.note,
                }
                if adjustment is not None
                else None
            ),
        }


class ProtocolBuilder:
    def __init__(self, tables: ProtocolTables):
        self._tables = tables

    def build(
        self,
        pattern: DesignPattern,
        pathway: str,
        objective: str,
        drug_chars: DrugCharacteristics | Mapping[str, Any] | None = None,
        compound_name: str | None = None,
    ) -> ProtocolDetails:
        drug = DrugCharacteristics.coerce(drug_chars)
        layout = self.layout(pattern)
        washout = self.washout_days(pattern, drug)
        regimen = self.dosing_regimen(pattern)
        compound = (compound_name or "").strip() or "the study drug"
        return ProtocolDetails(
            periods=layout.periods,
            sequences=layout.sequences,
            washout_days=washout,
            dosing_regimen=regimen,
            dosing_description=f"{regimen.capitalize()} administration of {compound}",
            conditions=self.conditions(pathway, objective, drug),
            comparator=self.comparator(pattern, pathway),
            sampling=self.sampling(objective, drug),
            endpoints=self.endpoints(objective),
            acceptance_criteria=self.acceptance_criteria(objective, drug),
            duration=self.duration(pattern, pathway, washout),
            sample_size_adjustment=self.sample_size_adjustment(pathway, drug),
        )

    def acceptance_criteria(self, objective: str, drug: DrugCharacteristics) -> AcceptanceCriteria:
        for rule in self._tables.acceptance_rules:
            if rule.objective != objective:
                continue
            if rule.drug_flag is None or drug.has_flag(rule.drug_flag):
                return rule.criteria
        return self._tables.acceptance_default

    def endpoints(self, objective: str) -> EndpointSet:
        return dict(self._tables.endpoints_by_objective).get(objective, self._tables.endpoints_default)

    def half_life(self, drug: DrugCharacteristics) -> tuple[float, bool]:
        """(반감기, 기본값 사용 여부)"""
        if drug.half_life is None:
            return self._tables.sampling.default_half_life_hours, True
        return drug.half_life, False

    def sampling(self, objective: str, drug: DrugCharacteristics) -> SamplingSchedule:
        plan = self._tables.sampling
        half_life, assumed = self.half_life(drug)
        if objective not in plan.objectives:
            return SamplingSchedule((), half_life, assumed, plan.sparse_rationale)
        band = next(b for b in plan.bands if b.covers(half_life))
        return SamplingSchedule(band.timepoints, half_life, assumed, plan.rationale)

    def washout_days(self, pattern: DesignPattern, drug: DrugCharacteristics) -> int:
        """crossover: max(ceil(half_lives x t1/2 / 24h), min_days), 그 외 0"""
        if pattern.summary.structure != "crossover":
            return 0
        half_life, _ = self.half_life(drug)
        days = math.ceil(self._tables.washout_half_lives * half_life / 24)
        return max(days, self._tables.washout_min_days)

    def layout(self, pattern: DesignPattern) -> CrossoverLayout:
        if pattern.summary.structure != "crossover":
            return SINGLE_PERIOD
        return dict(self._tables.crossover_by_pattern).get(pattern.id, self._tables.crossover_default)

    def dosing_regimen(self, pattern: DesignPattern) -> str:
        if pattern.summary.structure == "crossover":
            return self._tables.crossover_dosing
        return self._tables.default_dosing

    def conditions(self, pathway: str, objective: str, drug: DrugCharacteristics) -> StudyConditions:
        tables = self._tables
        fed = pathway in tables.fed_pathways and drug.has_flag("food_effect")
        return StudyConditions(
            fasting=pathway in tables.fasting_pathways or objective in tables.fasting_objectives,
            fed=fed,
            fed_description=tables.fed_description if fed else None,
        )

    def comparator(self, pattern: DesignPattern, pathway: str) -> ComparatorDescription:
        for rule in self._tables.comparators:
            if rule.comparator == pattern.summary.comparator:
                return rule.for_pathway(pathway)
        return NO_COMPARATOR

    def duration(self, pattern: DesignPattern, pathway: str, washout_days: int) -> StudyDuration:
        tables = self._tables
        weeks = dict(tables.treatment_weeks)[pattern.typical_n_range.unit]
        return StudyDuration(
            screening_days=tables.screening_days,
            treatment_days=weeks * 7,
            washout_days=washout_days,
            follow_up_days=dict(tables.follow_up_days_by_pathway).get(pathway, tables.follow_up_days_default),
            total_weeks=weeks + tables.additional_weeks,
        )

    def sample_size_adjustment(self, pathway: str, drug: DrugCharacteristics) -> SampleSizeAdjustment | None:
        for adjustment in self._tables.sample_size_adjustments:
            if adjustment.pathway == pathway and drug.has_flag(adjustment.drug_flag):
                return adjustment
        return None

    def regulatory_basis(self, pattern: DesignPattern, pathway: str) -> tuple[str, ...]:
        """pathway별 guidance 목록, 없으면 pattern의 REG 문구"""
        return dict(self._tables.regulatory_basis).get(pathway) or (pattern.rationale.reg,)

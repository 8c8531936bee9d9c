"""
Study Design Engine - 타입 정의

Closed enumerations and immutable config records.
Config records are frozen dataclasses holding tuples, so a loaded snapshot
can be shared across concurrent calls without copying.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Mapping

from .errors import InvalidDesignInputError


# =============================================================================
# Closed enumerations
# =============================================================================

RegulatoryPathway = Literal["innovator", "generic", "biosimilar", "hybrid", "post_marketing"]
PrimaryObjective = Literal[
    "pk_safety",
    "pk_equivalence",
    "pk_similarity",
    "dose_selection",
    "confirmatory_efficacy",
    "clinical_equivalence",
    "long_term_safety",
    "effectiveness",
]
ProductType = Literal["generic", "innovator", "hybrid", "biosimilar"]
GuardrailSeverity = Literal["HARD_STOP", "SOFT_WARNING"]
GuardrailAction = Literal["FALLBACK", "WARN", "BLOCK"]

PATHWAYS: tuple[str, ...] = ("innovator", "generic", "biosimilar", "hybrid", "post_marketing")
OBJECTIVES: tuple[str, ...] = (
    "pk_safety",
    "pk_equivalence",
    "pk_similarity",
    "dose_selection",
    "confirmatory_efficacy",
    "clinical_equivalence",
    "long_term_safety",
    "effectiveness",
)
PRODUCT_TYPES: tuple[str, ...] = ("generic", "innovator", "hybrid", "biosimilar")
STRUCTURES: tuple[str, ...] = ("sequential_cohorts", "parallel", "crossover", "observational")
RANDOMIZATIONS: tuple[str, ...] = ("required", "optional", "none")
BLINDINGS: tuple[str, ...] = ("double_blind", "single_blind", "open_label", "none")
COMPARATORS: tuple[str, ...] = ("placebo", "active", "reference", "none", "placebo_or_active")
PATTERN_TAGS: tuple[str, ...] = (
    "standard_of_care",
    "regulatory_standard",
    "event_driven",
    "adaptive",
    "seamless",
    "be",
    "rwe",
    "biosimilar_only",
    "superiority",
)
N_UNITS: tuple[str, ...] = ("subjects", "patients")
SEVERITIES: tuple[str, ...] = ("HARD_STOP", "SOFT_WARNING")
ACTIONS: tuple[str, ...] = ("FALLBACK", "WARN", "BLOCK")
BLOCKING_ACTIONS: tuple[str, ...] = ("FALLBACK", "BLOCK")

STRATEGY_FALLBACK_ORDER = "use_fallback_order_for_pathway_objective"
STRATEGY_SPECIFIC = "use_specific_patterns"
FALLBACK_STRATEGIES: tuple[str, ...] = (STRATEGY_FALLBACK_ORDER, STRATEGY_SPECIFIC)

BOOLEAN_CONSTRAINTS: tuple[str, ...] = (
    "requires_interim",
    "supports_interim",
    "requires_event_driven",
    "allows_crossover",
    "allows_superiority",
    "requires_equivalence_or_ni",
)

ENGINE_VERSION = "2.3"
HUMAN_DECISION_REQUIRED = "HUMAN_DECISION_REQUIRED"


def ensure_member(field_name: str, value: Any, allowed: tuple[str, ...]) -> str:
    """Fail fast on a value outside a closed enumeration."""
    if not isinstance(value, str) or value not in allowed:
        raise InvalidDesignInputError(field_name, value, allowed)
    return value


def ensure_pathway(value: Any) -> str:
    return ensure_member("pathway", value, PATHWAYS)


def ensure_objective(value: Any) -> str:
    return ensure_member("objective", value, OBJECTIVES)


def fallback_key(pathway: str, objective: str) -> str:
    return f"{pathway}:{objective}"


# =============================================================================
# Design Pattern
# =============================================================================

@dataclass(frozen=True)
class TypicalNRange:
    min: int
    max: int
    unit: str
    note: str | None = None

    @property
    def ratio(self) -> float:
        """max / min spread (0 when min is not positive)"""
        if self.min <= 0:
            return 0.0
        return self.max / self.min

    def describe(self) -> str:
        text = f"{self.min}-{self.max} {self.unit}"
        return f"{text} ({self.note})" if self.note else text


@dataclass(frozen=True)
class DesignSummaryTemplate:
    structure: str
    randomization: str
    blinding: str
    arms: int | str  # int or "variable"
    comparator: str
    key_features: tuple[str, ...] = ()


@dataclass(frozen=True)
class PatternConstraints:
    requires_interim: bool = False
    supports_interim: bool = False
    requires_event_driven: bool = False
    allows_crossover: bool = False
    allows_superiority: bool = False
    requires_equivalence_or_ni: bool = False
    min_arms: int | None = None
    max_arms: int | None = None

    def flag(self, name: str) -> bool:
        return bool(getattr(self, name))


@dataclass(frozen=True)
class DrugCharacteristicRules:
    """drug_characteristics: prefer_if / avoid_if 조건"""
    prefer_hvd: bool = False
    avoid_half_life_hours_gte: float | None = None


@dataclass(frozen=True)
class RationaleTemplate:
    what: str
    why: str
    reg: str
    assumptions: tuple[str, ...] = ()


@dataclass(frozen=True)
class DesignPattern:
    """Canonical clinical-trial design pattern"""
    id: str
    version: str
    title: str
    allowed_pathways: tuple[str, ...]
    allowed_objectives: tuple[str, ...]
    summary: DesignSummaryTemplate
    typical_n_range: TypicalNRange
    constraints: PatternConstraints
    tags: tuple[str, ...]
    drug_rules: DrugCharacteristicRules
    rationale: RationaleTemplate
    priority: float
    specificity_score: float
    phase_label: str | None = None

    def allows(self, pathway: str, objective: str) -> bool:
        return pathway in self.allowed_pathways and objective in self.allowed_objectives


# =============================================================================
# Guardrails
# =============================================================================

@dataclass(frozen=True)
class GuardrailPredicate:
    """
    Guardrail match predicate

    None = wildcard. Tuple fields match when the evaluated value is one of
    the listed values; pattern_tags matches on any shared tag.
    """
    pathway: tuple[str, ...] | None = None
    objective: tuple[str, ...] | None = None
    pattern_id: tuple[str, ...] | None = None
    pattern_id_not: tuple[str, ...] | None = None
    pattern_tags: tuple[str, ...] | None = None
    structure: tuple[str, ...] | None = None
    blinding: tuple[str, ...] | None = None
    comparator: tuple[str, ...] | None = None
    constraints: tuple[tuple[str, bool], ...] | None = None
    n_range_ratio_gt: float | None = None
    drug_is_hvd: bool | None = None
    drug_is_nti: bool | None = None
    drug_half_life_hours_gte: float | None = None

    @property
    def is_pattern_level(self) -> bool:
        """True when any field needs a concrete pattern to evaluate."""
        return any(
            value is not None
            for value in (
                self.pattern_id,
                self.pattern_id_not,
                self.pattern_tags,
                self.structure,
                self.blinding,
                self.comparator,
                self.constraints,
                self.n_range_ratio_gt,
            )
        )

    @property
    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in self.__dataclass_fields__)


@dataclass(frozen=True)
class FallbackHint:
    strategy: str
    patterns: tuple[str, ...] = ()

    def candidate_patterns(self) -> tuple[str, ...] | None:
        """Explicit list for use_specific_patterns, None for the canonical order."""
        if self.strategy == STRATEGY_SPECIFIC:
            return self.patterns
        return None


@dataclass(frozen=True)
class GuardrailRule:
    id: str
    version: str
    severity: str
    action: str
    match: GuardrailPredicate
    message: str
    trace_note: str
    implication: str | None = None
    fallback_hint: FallbackHint | None = None

    @property
    def blocks(self) -> bool:
        return self.severity == "HARD_STOP" and self.action in BLOCKING_ACTIONS


# =============================================================================
# Classification tables
# =============================================================================

@dataclass(frozen=True)
class ObjectiveRule:
    keywords: tuple[str, ...]
    objective: str
    pathway_overrides: tuple[tuple[str, str], ...] = ()

    def objective_for(self, pathway: str) -> str:
        return dict(self.pathway_overrides).get(pathway, self.objective)


@dataclass(frozen=True)
class ClassificationTables:
    biosimilar_indicators: tuple[str, ...]
    post_marketing_keywords: tuple[str, ...]
    product_type_pathways: tuple[tuple[str, str], ...]
    objective_rules: tuple[ObjectiveRule, ...]
    default_objectives: tuple[tuple[str, str], ...]
    objective_phase_labels: tuple[tuple[str, str], ...]


@dataclass(frozen=True)
class ConfigVersions:
    engine: str
    patterns: str
    guardrails: str
    fallback: str
    classification: str
    protocol: str = "unversioned"

    def describe(self) -> str:
        return (
            f"engine={self.engine}, patterns={self.patterns}, guardrails={self.guardrails}, "
            f"fallback={self.fallback}, classification={self.classification}, protocol={self.protocol}"
        )


# =============================================================================
# Protocol tables
# =============================================================================

@dataclass(frozen=True)
class AcceptanceCriteria:
    criterion: str
    margin: str
    description: str = ""

    def to_dict(self) -> dict:
        return {"criterion": self.criterion, "margin": self.margin, "description": self.description}


@dataclass(frozen=True)
class AcceptanceRule:
    objective: str
    criteria: AcceptanceCriteria
    drug_flag: str | None = None


@dataclass(frozen=True)
class EndpointSet:
    primary: tuple[str, ...]
    secondary: tuple[str, ...]

    def to_dict(self) -> dict:
        return {"primary": list(self.primary), "secondary": list(self.secondary)}


@dataclass(frozen=True)
class SamplingBand:
    """max_half_life_hours=None → 상한 없음 (마지막 band)"""
    timepoints: tuple[float, ...]
    max_half_life_hours: float | None = None

    def covers(self, half_life: float) -> bool:
        return self.max_half_life_hours is None or half_life <= self.max_half_life_hours


@dataclass(frozen=True)
class SamplingPlan:
    objectives: tuple[str, ...]
    default_half_life_hours: float
    rationale: str
    sparse_rationale: str
    bands: tuple[SamplingBand, ...]


@dataclass(frozen=True)
class CrossoverLayout:
    periods: int
    sequences: int


@dataclass(frozen=True)
class ComparatorDescription:
    type: str
    description: str


@dataclass(frozen=True)
class ComparatorRule:
    comparator: str
    default: ComparatorDescription
    by_pathway: tuple[tuple[str, ComparatorDescription], ...] = ()

    def for_pathway(self, pathway: str) -> ComparatorDescription:
        return dict(self.by_pathway).get(pathway, self.default)


@dataclass(frozen=True)
class SampleSizeAdjustment:
    pathway: str
    drug_flag: str
    min: int
    max: int
    recommended: int
    note: str = ""


@dataclass(frozen=True)
class ProtocolTables:
    acceptance_default: AcceptanceCriteria
    acceptance_rules: tuple[AcceptanceRule, ...]
    endpoints_default: EndpointSet
    endpoints_by_objective: tuple[tuple[str, EndpointSet], ...]
    sampling: SamplingPlan
    washout_half_lives: float
    washout_min_days: int
    crossover_default: CrossoverLayout
    crossover_by_pattern: tuple[tuple[str, CrossoverLayout], ...]
    crossover_dosing: str
    default_dosing: str
    fasting_pathways: tuple[str, ...]
    fasting_objectives: tuple[str, ...]
    fed_pathways: tuple[str, ...]
    fed_description: str
    comparators: tuple[ComparatorRule, ...]
    screening_days: int
    treatment_weeks: tuple[tuple[str, int], ...]
    follow_up_days_default: int
    follow_up_days_by_pathway: tuple[tuple[str, int], ...]
    additional_weeks: int
    sample_size_adjustments: tuple[SampleSizeAdjustment, ...]
    regulatory_basis: tuple[tuple[str, tuple[str, ...]], ...]


# =============================================================================
# Input
# =============================================================================

DRUG_FLAG_FIELDS: dict[str, str] = {
    "nti": "is_nti",
    "hvd": "is_hvd",
    "food_effect": "has_food_effect",
}
DRUG_FLAGS: tuple[str, ...] = tuple(DRUG_FLAG_FIELDS)

_DRUG_KEY_ALIASES: dict[str, str] = {
    "halfLife": "half_life",
    "half_life_hours": "half_life",
    "isNTI": "is_nti",
    "isHVD": "is_hvd",
    "hasFoodEffect": "has_food_effect",
}


@dataclass(frozen=True)
class DrugCharacteristics:
    """약물 특성 입력 (모두 optional)"""
    half_life: float | None = None
    is_nti: bool | None = None
    is_hvd: bool | None = None
    has_food_effect: bool | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "DrugCharacteristics":
        """camelCase (halfLife, isHVD, ...) 또는 snake_case 키 모두 허용"""
        if not data:
            return cls()
        values: dict[str, Any] = {}
        for key, value in data.items():
            name = _DRUG_KEY_ALIASES.get(key, key)
            if name in cls.__dataclass_fields__ and value is not None:
                values[name] = value
        return cls(
            half_life=_as_half_life(values.get("half_life")),
            is_nti=_as_bool(values.get("is_nti")),
            is_hvd=_as_bool(values.get("is_hvd")),
            has_food_effect=_as_bool(values.get("has_food_effect")),
        )

    @classmethod
    def coerce(cls, value: "DrugCharacteristics | Mapping[str, Any] | None") -> "DrugCharacteristics":
        if isinstance(value, DrugCharacteristics):
            return value
        return cls.from_mapping(value)

    def has_flag(self, flag: str) -> bool:
        """drug_flag 이름 (nti / hvd / food_effect) → 값, 없으면 False"""
        return bool(getattr(self, DRUG_FLAG_FIELDS[flag]))

    def describe(self) -> str:
        half_life = f"{self.half_life:g}h" if self.half_life is not None else "unknown"
        return (
            f"isHVD={bool(self.is_hvd)}, isNTI={bool(self.is_nti)}, "
            f"halfLife={half_life}, foodEffect={bool(self.has_food_effect)}"
        )

    def to_dict(self) -> dict:
        return {
            "half_life": self.half_life,
            "is_nti": self.is_nti,
            "is_hvd": self.is_hvd,
            "has_food_effect": self.has_food_effect,
        }


def _as_half_life(value: Any) -> float | None:
    if value is None:
        return None
    try:
        hours = float(value)
    except (TypeError, ValueError):
        hours = None
    if isinstance(value, bool) or hours is None or hours != hours or hours < 0:
        raise InvalidDesignInputError("drug_characteristics.half_life", value, ("a non-negative number of hours",))
    return hours


def _as_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y")
    return bool(value)


@dataclass(frozen=True)
class Formulation:
    dosage_form: str | None = None
    route: str | None = None
    strength: str | None = None

    @classmethod
    def coerce(cls, value: "Formulation | Mapping[str, Any] | None") -> "Formulation":
        if isinstance(value, Formulation):
            return value
        if not value:
            return cls()
        return cls(
            dosage_form=value.get("dosage_form") or value.get("dosageForm"),
            route=value.get("route"),
            strength=value.get("strength"),
        )

    def describe(self) -> str:
        parts = [p for p in (self.dosage_form, self.route, self.strength) if p]
        return "/".join(parts) if parts else "unspecified"


# =============================================================================
# Trace
# =============================================================================

@dataclass(frozen=True)
class DecisionTraceEntry:
    step: str
    action: str
    result: str

    def to_dict(self) -> dict:
        return {"step": self.step, "action": self.action, "result": self.result}

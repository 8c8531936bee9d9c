"""
ConfigRegistry - immutable catalog of design patterns, guardrail rules,
fallback orders, classification tables
and protocol detail tables.

Fail-hard contract:
  - build_registry() never raises on bad content; every problem becomes a
    ValidationIssue (severity error|warning, message, location)
  - load_validated_registry() / ConfigRegistry.ensure_valid() raise
    ConfigValidationError when any error-level issue exists, so an engine
    can only ever be built from a clean snapshot
  - config_hash pins every decision output to the exact ruleset
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Literal, Mapping

from .config_loader import load_raw_config
from .errors import ConfigValidationError
from .models import (
    ACTIONS,
    BLINDINGS,
    BOOLEAN_CONSTRAINTS,
    COMPARATORS,
    DRUG_FLAGS,
    ENGINE_VERSION,
    FALLBACK_STRATEGIES,
    HUMAN_DECISION_REQUIRED,
    N_UNITS,
    OBJECTIVES,
    PATHWAYS,
    PATTERN_TAGS,
    PRODUCT_TYPES,
    RANDOMIZATIONS,
    SEVERITIES,
    STRATEGY_SPECIFIC,
    STRUCTURES,
    AcceptanceCriteria,
    AcceptanceRule,
    ClassificationTables,
    ComparatorDescription,
    ComparatorRule,
    ConfigVersions,
    CrossoverLayout,
    DesignPattern,
    DesignSummaryTemplate,
    DrugCharacteristicRules,
    EndpointSet,
    FallbackHint,
    GuardrailPredicate,
    GuardrailRule,
    ObjectiveRule,
    PatternConstraints,
    ProtocolTables,
    RationaleTemplate,
    SampleSizeAdjustment,
    SamplingBand,
    SamplingPlan,
    TypicalNRange,
    fallback_key,
)
from .utils import canonical_json, sha256_text

logger = logging.getLogger(__name__)

CONFIG_HASH_LENGTH = 16

_LIST_PREDICATE_KEYS: dict[str, tuple[str, ...] | None] = {
    "pathway": PATHWAYS,
    "objective": OBJECTIVES,
    "pattern_id": None,  # checked against the registry
    "pattern_id_not": None,
    "pattern_tags": PATTERN_TAGS,
    "structure": STRUCTURES,
    "blinding": BLINDINGS,
    "comparator": COMPARATORS,
}
_NUMERIC_PREDICATE_KEYS = ("n_range_ratio_gt", "drug_half_life_hours_gte")
_BOOL_PREDICATE_KEYS = ("drug_is_hvd", "drug_is_nti")


@dataclass(frozen=True)
class ValidationIssue:
    """설정 검증 결과 항목"""
    severity: Literal["error", "warning"]
    message: str
    location: str

    def to_dict(self) -> dict:
        return {"type": self.severity, "message": self.message, "location": self.location}


class _Issues:
    """Ordered issue collector shared by the build and validation passes."""

    def __init__(self):
        self.items: list[ValidationIssue] = []

    def error(self, location: str, message: str) -> None:
        self.items.append(ValidationIssue("error", message, location))

    def warning(self, location: str, message: str) -> None:
        self.items.append(ValidationIssue("warning", message, location))


# =============================================================================
# Registry
# =============================================================================

class ConfigRegistry:
    """
    Read-only config snapshot.

    Every stage of the engine receives the registry by reference; nothing in
    it is mutated after construction. Hot reload builds a brand-new registry.
    """

    def __init__(
        self,
        *,
        versions: ConfigVersions,
        patterns: Mapping[str, DesignPattern],
        guardrails: tuple[GuardrailRule, ...],
        fallback_order: Mapping[str, tuple[str, ...]],
        classification: ClassificationTables,
        protocol: ProtocolTables,
        build_issues: tuple[ValidationIssue, ...] = (),
    ):
        self._versions = versions
        self._patterns = MappingProxyType(dict(sorted(patterns.items())))
        # evaluation order = rule id order, independent of file order
        self._guardrails = tuple(sorted(guardrails, key=lambda r: r.id))
        self._fallback_order = MappingProxyType(
            {key: tuple(ids) for key, ids in sorted(fallback_order.items())}
        )
        self._classification = classification
        self._protocol = protocol

        issues = _Issues()
        issues.items.extend(build_issues)
        self._check_patterns(issues)
        self._check_guardrails(issues)
        self._check_fallback_order(issues)
        self._check_classification(issues)
        self._check_protocol(issues)
        self._issues = tuple(issues.items)

        self._config_hash = sha256_text(canonical_json(self.to_canonical_dict()))[:CONFIG_HASH_LENGTH]

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def versions(self) -> ConfigVersions:
        return self._versions

    @property
    def patterns(self) -> Mapping[str, DesignPattern]:
        return self._patterns

    @property
    def guardrails(self) -> tuple[GuardrailRule, ...]:
        return self._guardrails

    @property
    def fallback_order(self) -> Mapping[str, tuple[str, ...]]:
        return self._fallback_order

    @property
    def classification(self) -> ClassificationTables:
        return self._classification

    @property
    def protocol(self) -> ProtocolTables:
        return self._protocol

    @property
    def config_hash(self) -> str:
        return self._config_hash

    def get_pattern(self, pattern_id: str) -> DesignPattern | None:
        return self._patterns.get(pattern_id)

    def get_fallback_order(self, pathway: str, objective: str) -> tuple[str, ...]:
        """Fallback chain for pathway:objective; a missing key means human decision."""
        return self._fallback_order.get(fallback_key(pathway, objective), (HUMAN_DECISION_REQUIRED,))

    def version_string(self) -> str:
        return f"{self._versions.describe()}, config_hash={self._config_hash}"

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self) -> list[ValidationIssue]:
        """All issues found while building and checking this snapshot."""
        return list(self._issues)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self._issues if i.severity == "error"]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self._issues if i.severity == "warning"]

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def validation_report(self) -> dict:
        """
        Returns:
            {"valid": bool, "errors": [{"type": "error"|"warning", "message": ..., "location": ...}]}
        """
        return {"valid": self.is_valid, "errors": [i.to_dict() for i in self._issues]}

    def ensure_valid(self) -> "ConfigRegistry":
        if not self.is_valid:
            raise ConfigValidationError(list(self._issues))
        return self

    def generate_config_hash(self) -> str:
        return self._config_hash

    def to_canonical_dict(self) -> dict:
        """Order-independent dict form of the snapshot (hash input)."""
        return {
            "versions": asdict(self._versions),
            "patterns": [asdict(p) for p in self._patterns.values()],
            "guardrails": [asdict(r) for r in self._guardrails],
            "fallback_order": {k: list(v) for k, v in self._fallback_order.items()},
            "classification": asdict(self._classification),
            "protocol": asdict(self._protocol),
        }

    # -------------------------------------------------------------------------
    # Semantic checks
    # -------------------------------------------------------------------------

    def _check_patterns(self, issues: _Issues) -> None:
        for pattern_id, pattern in self._patterns.items():
            loc = f"patterns[{pattern_id}]"
            if not pattern.allowed_pathways:
                issues.error(f"{loc}.allowed_pathways", "Pattern must allow at least one pathway")
            _check_members(issues, f"{loc}.allowed_pathways", pattern.allowed_pathways, PATHWAYS, "pathway")
            if not pattern.allowed_objectives:
                issues.error(f"{loc}.allowed_objectives", "Pattern must allow at least one objective")
            _check_members(issues, f"{loc}.allowed_objectives", pattern.allowed_objectives, OBJECTIVES, "objective")
            _check_members(issues, f"{loc}.tags", pattern.tags, PATTERN_TAGS, "tag")

            summary = pattern.summary
            _check_value(issues, f"{loc}.summary.structure", summary.structure, STRUCTURES, "structure")
            _check_value(issues, f"{loc}.summary.randomization", summary.randomization, RANDOMIZATIONS, "randomization")
            _check_value(issues, f"{loc}.summary.blinding", summary.blinding, BLINDINGS, "blinding")
            _check_value(issues, f"{loc}.summary.comparator", summary.comparator, COMPARATORS, "comparator")

            n_range = pattern.typical_n_range
            if n_range.min <= 0:
                issues.error(f"{loc}.typical_n_range.min", "typical_n_range.min must be positive")
            if n_range.max < n_range.min:
                issues.error(f"{loc}.typical_n_range.max", "typical_n_range.max must be >= min")
            _check_value(issues, f"{loc}.typical_n_range.unit", n_range.unit, N_UNITS, "unit")

            constraints = pattern.constraints
            if (
                constraints.min_arms is not None
                and constraints.max_arms is not None
                and constraints.min_arms > constraints.max_arms
            ):
                issues.error(f"{loc}.constraints.min_arms", "min_arms must be <= max_arms")

            for name in ("what", "why", "reg"):
                if not getattr(pattern.rationale, name).strip():
                    issues.error(f"{loc}.rationale.{name}", f"Rationale '{name}' must not be empty")

            threshold = pattern.drug_rules.avoid_half_life_hours_gte
            if threshold is not None and threshold <= 0:
                issues.error(
                    f"{loc}.drug_characteristics.avoid_if.half_life_hours_gte",
                    "Half-life threshold must be positive",
                )

    def _check_guardrails(self, issues: _Issues) -> None:
        for rule in self._guardrails:
            loc = f"guardrails[{rule.id}]"
            _check_value(issues, f"{loc}.severity", rule.severity, SEVERITIES, "severity")
            _check_value(issues, f"{loc}.action", rule.action, ACTIONS, "action")
            if not rule.message.strip():
                issues.error(f"{loc}.message", "Guardrail message must not be empty")
            if not rule.trace_note.strip():
                issues.error(f"{loc}.trace_note", "Guardrail trace_note must not be empty")

            match = rule.match
            for key, allowed in _LIST_PREDICATE_KEYS.items():
                values = getattr(match, key)
                if values is None:
                    continue
                if allowed is not None:
                    _check_members(issues, f"{loc}.match.{key}", values, allowed, key)
                else:
                    self._check_pattern_refs(issues, f"{loc}.match.{key}", values, allow_sentinel=False)
            if match.is_empty:
                issues.warning(f"{loc}.match", "Empty match predicate applies to every evaluation")

            if rule.severity == "SOFT_WARNING" and rule.action != "WARN":
                issues.warning(f"{loc}.action", f"SOFT_WARNING rule with action {rule.action} never blocks")
            if rule.severity == "HARD_STOP" and rule.action == "WARN":
                issues.warning(f"{loc}.action", "HARD_STOP rule with action WARN never blocks")

            hint = rule.fallback_hint
            if hint is None:
                continue
            _check_value(issues, f"{loc}.fallback_hint.strategy", hint.strategy, FALLBACK_STRATEGIES, "strategy")
            self._check_pattern_refs(issues, f"{loc}.fallback_hint.patterns", hint.patterns, allow_sentinel=True)
            if not rule.blocks:
                issues.warning(f"{loc}.fallback_hint", "fallback_hint on a non-blocking rule is never used")

    def _check_fallback_order(self, issues: _Issues) -> None:
        for key, ids in self._fallback_order.items():
            loc = f"fallback_order[{key}]"
            pathway, sep, objective = key.partition(":")
            if not sep or pathway not in PATHWAYS or objective not in OBJECTIVES:
                issues.error(loc, f"Invalid fallback key '{key}' (expected 'pathway:objective')")
                continue
            self._check_pattern_refs(issues, loc, ids, allow_sentinel=True)

            seen: set[str] = set()
            for index, pattern_id in enumerate(ids):
                if pattern_id in seen:
                    issues.warning(f"{loc}[{index}]", f"Duplicate fallback entry '{pattern_id}' is skipped")
                seen.add(pattern_id)
                pattern = self._patterns.get(pattern_id)
                if pattern is not None and not pattern.allows(pathway, objective):
                    issues.warning(
                        f"{loc}[{index}]",
                        f"Pattern '{pattern_id}' is not declared for {pathway}/{objective}",
                    )

    def _check_classification(self, issues: _Issues) -> None:
        tables = self._classification
        loc = "classification"

        product_types = dict(tables.product_type_pathways)
        for product_type in PRODUCT_TYPES:
            if product_type not in product_types:
                issues.error(f"{loc}.product_type_pathways", f"Missing pathway for product type '{product_type}'")
        for product_type, pathway in tables.product_type_pathways:
            if product_type not in PRODUCT_TYPES:
                issues.error(f"{loc}.product_type_pathways[{product_type}]", f"Unknown product type '{product_type}'")
            _check_value(issues, f"{loc}.product_type_pathways[{product_type}]", pathway, PATHWAYS, "pathway")

        for index, rule in enumerate(tables.objective_rules):
            rule_loc = f"{loc}.objective_rules[{index}]"
            if not rule.keywords:
                issues.error(f"{rule_loc}.keywords", "Objective rule needs at least one keyword")
            _check_value(issues, f"{rule_loc}.objective", rule.objective, OBJECTIVES, "objective")
            for pathway, objective in rule.pathway_overrides:
                _check_value(issues, f"{rule_loc}.pathway_overrides[{pathway}]", pathway, PATHWAYS, "pathway")
                _check_value(issues, f"{rule_loc}.pathway_overrides[{pathway}]", objective, OBJECTIVES, "objective")

        defaults = dict(tables.default_objectives)
        for pathway in PATHWAYS:
            if pathway not in defaults:
                issues.error(f"{loc}.default_objectives", f"Missing default objective for pathway '{pathway}'")
        for pathway, objective in tables.default_objectives:
            _check_value(issues, f"{loc}.default_objectives[{pathway}]", pathway, PATHWAYS, "pathway")
            _check_value(issues, f"{loc}.default_objectives[{pathway}]", objective, OBJECTIVES, "objective")

        labels = dict(tables.objective_phase_labels)
        for objective in labels:
            _check_value(issues, f"{loc}.objective_phase_labels[{objective}]", objective, OBJECTIVES, "objective")
        for objective in OBJECTIVES:
            if objective not in labels:
                issues.warning(
                    f"{loc}.objective_phase_labels",
                    f"No phase label for objective '{objective}' (falls back to 'Unassigned')",
                )

        if not tables.biosimilar_indicators:
            issues.warning(f"{loc}.biosimilar_indicators", "No biosimilar indicators configured")
        if not tables.post_marketing_keywords:
            issues.warning(f"{loc}.post_marketing_keywords", "No post-marketing keywords configured")

    def _check_protocol(self, issues: _Issues) -> None:
        tables = self._protocol
        loc = "protocol"

        if not tables.acceptance_default.criterion.strip():
            issues.error(f"{loc}.acceptance_criteria.default.criterion", "Default criterion must not be empty")
        for index, rule in enumerate(tables.acceptance_rules):
            rule_loc = f"{loc}.acceptance_criteria.rules[{index}]"
            _check_value(issues, f"{rule_loc}.objective", rule.objective, OBJECTIVES, "objective")
            if rule.drug_flag is not None:
                _check_value(issues, f"{rule_loc}.drug_flag", rule.drug_flag, DRUG_FLAGS, "drug flag")
            if not rule.criteria.criterion.strip() or not rule.criteria.margin.strip():
                issues.error(rule_loc, "Acceptance rule needs a criterion and a margin")

        if not tables.endpoints_default.primary:
            issues.error(f"{loc}.endpoints.default.primary", "Default endpoints need at least one primary endpoint")
        for objective, endpoints in tables.endpoints_by_objective:
            e_loc = f"{loc}.endpoints.by_objective[{objective}]"
            _check_value(issues, e_loc, objective, OBJECTIVES, "objective")
            if not endpoints.primary:
                issues.error(f"{e_loc}.primary", "At least one primary endpoint is required")

        sampling = tables.sampling
        _check_members(issues, f"{loc}.sampling.objectives", sampling.objectives, OBJECTIVES, "objective")
        if sampling.default_half_life_hours <= 0:
            issues.error(f"{loc}.sampling.default_half_life_hours", "Default half-life must be positive")
        if not sampling.bands:
            issues.error(f"{loc}.sampling.bands", "At least one sampling band is required")
        elif sampling.bands[-1].max_half_life_hours is not None:
            issues.error(f"{loc}.sampling.bands", "Last sampling band must have no max_half_life_hours")
        previous = None
        for index, band in enumerate(sampling.bands):
            band_loc = f"{loc}.sampling.bands[{index}]"
            if not band.timepoints:
                issues.error(f"{band_loc}.timepoints", "Sampling band needs at least one timepoint")
            if any(later <= earlier for earlier, later in zip(band.timepoints, band.timepoints[1:])):
                issues.error(f"{band_loc}.timepoints", "Timepoints must be in ascending order")
            if index < len(sampling.bands) - 1:
                if band.max_half_life_hours is None:
                    issues.error(f"{band_loc}.max_half_life_hours", "Only the last band may be unbounded")
                elif previous is not None and band.max_half_life_hours <= previous:
                    issues.error(f"{band_loc}.max_half_life_hours", "Band limits must be strictly ascending")
                previous = band.max_half_life_hours

        if tables.washout_half_lives <= 0:
            issues.error(f"{loc}.washout.half_lives", "half_lives must be positive")
        if tables.washout_min_days <= 0:
            issues.error(f"{loc}.washout.min_days", "min_days must be positive")

        layouts = [(f"{loc}.crossover_layouts.default", tables.crossover_default)]
        layouts.extend(
            (f"{loc}.crossover_layouts.by_pattern[{pattern_id}]", layout)
            for pattern_id, layout in tables.crossover_by_pattern
        )
        for l_loc, layout in layouts:
            if layout.periods < 2 or layout.sequences < 1:
                issues.error(l_loc, "Crossover layout needs periods >= 2 and sequences >= 1")
        for pattern_id, _ in tables.crossover_by_pattern:
            l_loc = f"{loc}.crossover_layouts.by_pattern[{pattern_id}]"
            pattern = self._patterns.get(pattern_id)
            if pattern is None:
                issues.error(l_loc, f"Unknown pattern id '{pattern_id}'")
            elif pattern.summary.structure != "crossover":
                issues.warning(l_loc, f"Pattern '{pattern_id}' is not a crossover design; layout is never used")

        if not tables.crossover_dosing.strip() or not tables.default_dosing.strip():
            issues.error(f"{loc}.dosing", "Both 'crossover' and 'default' dosing regimens are required")

        _check_members(issues, f"{loc}.conditions.fasting_pathways", tables.fasting_pathways, PATHWAYS, "pathway")
        _check_members(
            issues, f"{loc}.conditions.fasting_objectives", tables.fasting_objectives, OBJECTIVES, "objective"
        )
        _check_members(issues, f"{loc}.conditions.fed_pathways", tables.fed_pathways, PATHWAYS, "pathway")

        for rule in tables.comparators:
            c_loc = f"{loc}.comparators[{rule.comparator}]"
            _check_value(issues, c_loc, rule.comparator, COMPARATORS, "comparator")
            for pathway, _ in rule.by_pathway:
                _check_value(issues, f"{c_loc}.by_pathway[{pathway}]", pathway, PATHWAYS, "pathway")

        weeks = dict(tables.treatment_weeks)
        for unit in N_UNITS:
            if unit not in weeks:
                issues.error(f"{loc}.duration.treatment_weeks", f"Missing treatment weeks for unit '{unit}'")
        for unit, value in tables.treatment_weeks:
            _check_value(issues, f"{loc}.duration.treatment_weeks[{unit}]", unit, N_UNITS, "unit")
            if value <= 0:
                issues.error(f"{loc}.duration.treatment_weeks[{unit}]", "Treatment weeks must be positive")
        for pathway, _ in tables.follow_up_days_by_pathway:
            _check_value(issues, f"{loc}.duration.follow_up_days.by_pathway[{pathway}]", pathway, PATHWAYS, "pathway")

        for index, adjustment in enumerate(tables.sample_size_adjustments):
            a_loc = f"{loc}.sample_size_adjustments[{index}]"
            _check_value(issues, f"{a_loc}.pathway", adjustment.pathway, PATHWAYS, "pathway")
            _check_value(issues, f"{a_loc}.drug_flag", adjustment.drug_flag, DRUG_FLAGS, "drug flag")
            if not 0 < adjustment.min <= adjustment.recommended <= adjustment.max:
                issues.error(a_loc, "Sample size adjustment needs 0 < min <= recommended <= max")

        for pathway, refs in tables.regulatory_basis:
            r_loc = f"{loc}.regulatory_basis[{pathway}]"
            _check_value(issues, r_loc, pathway, PATHWAYS, "pathway")
            if not refs:
                issues.warning(r_loc, "Empty guidance list falls back to the pattern's REG text")

    def _check_pattern_refs(
        self,
        issues: _Issues,
        location: str,
        pattern_ids: tuple[str, ...],
        allow_sentinel: bool,
    ) -> None:
        for index, pattern_id in enumerate(pattern_ids):
            if allow_sentinel and pattern_id == HUMAN_DECISION_REQUIRED:
                continue
            if pattern_id not in self._patterns:
                issues.error(f"{location}[{index}]", f"Unknown pattern id '{pattern_id}'")


def _check_value(issues: _Issues, location: str, value: Any, allowed: tuple[str, ...], label: str) -> None:
    if value not in allowed:
        issues.error(location, f"Invalid {label} '{value}' (allowed: {', '.join(allowed)})")


def _check_members(
    issues: _Issues,
    location: str,
    values: tuple[str, ...],
    allowed: tuple[str, ...],
    label: str,
) -> None:
    for index, value in enumerate(values):
        _check_value(issues, f"{location}[{index}]", value, allowed, label)


# =============================================================================
# Build (raw YAML dict -> immutable records)
# =============================================================================

def build_registry(raw: Mapping[str, Any]) -> ConfigRegistry:
    """
    raw config dict → ConfigRegistry

    Structural problems (wrong types, missing ids, duplicates, unknown keys)
    are recorded as issues instead of raised.
    """
    issues = _Issues()
    versions_raw = raw.get("versions") or {}
    versions = ConfigVersions(
        engine=ENGINE_VERSION,
        patterns=str(versions_raw.get("patterns", "unversioned")),
        guardrails=str(versions_raw.get("guardrails", "unversioned")),
        fallback=str(versions_raw.get("fallback", "unversioned")),
        classification=str(versions_raw.get("classification", "unversioned")),
        protocol=str(versions_raw.get("protocol", "unversioned")),
    )
    for entry in raw.get("load_errors") or ():
        issues.error(str(entry["location"]), str(entry["message"]))
    patterns = _build_patterns(raw.get("patterns"), issues)
    guardrails = _build_guardrails(raw.get("guardrails"), issues)
    fallback_order = _build_fallback_order(raw.get("fallback_order"), issues)
    classification = _build_classification(raw.get("classification"), issues)
    protocol = _build_protocol(raw.get("protocol"), issues)

    return ConfigRegistry(
        versions=versions,
        patterns=patterns,
        guardrails=guardrails,
        fallback_order=fallback_order,
        classification=classification,
        protocol=protocol,
        build_issues=tuple(issues.items),
    )


def load_registry(config_dir: Path | None = None) -> ConfigRegistry:
    """YAML 설정 → ConfigRegistry (검증 결과는 registry.validate()로 확인)"""
    return build_registry(load_raw_config(config_dir))


def load_validated_registry(config_dir: Path | None = None) -> ConfigRegistry:
    """
    YAML 설정 로드 + fail-hard 검증

    Raises:
        ConfigValidationError: error 수준 issue가 하나라도 있으면
    """
    registry = load_registry(config_dir)
    for issue in registry.warnings:
        logger.warning(f"[config] {issue.location}: {issue.message}")
    for issue in registry.errors:
        logger.error(f"[config] {issue.location}: {issue.message}")
    registry.ensure_valid()
    logger.info(
        f"Study design config loaded: {len(registry.patterns)} patterns, "
        f"{len(registry.guardrails)} guardrails, {len(registry.fallback_order)} fallback keys, "
        f"hash={registry.config_hash}"
    )
    return registry


def _build_patterns(raw: Any, issues: _Issues) -> dict[str, DesignPattern]:
    patterns: dict[str, DesignPattern] = {}
    if raw is None:
        issues.error("patterns", "Missing 'patterns' section")
        return patterns
    if not isinstance(raw, list):
        issues.error("patterns", "'patterns' must be a list")
        return patterns

    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            issues.error(f"patterns[{index}]", "Pattern entry must be a mapping")
            continue
        pattern_id = entry.get("id")
        if not isinstance(pattern_id, str) or not pattern_id.strip():
            issues.error(f"patterns[{index}].id", "Missing pattern id")
            continue
        loc = f"patterns[{pattern_id}]"
        if pattern_id == HUMAN_DECISION_REQUIRED:
            issues.error(f"{loc}.id", f"'{HUMAN_DECISION_REQUIRED}' is reserved")
            continue
        if pattern_id in patterns:
            issues.error(loc, f"Duplicate pattern id '{pattern_id}'")
            continue
        patterns[pattern_id] = _build_pattern(pattern_id, entry, loc, issues)
    return patterns


def _build_pattern(pattern_id: str, entry: dict, loc: str, issues: _Issues) -> DesignPattern:
    summary_raw = _mapping(entry.get("summary"), f"{loc}.summary", issues)
    arms = summary_raw.get("arms", "variable")
    if not (arms == "variable" or (isinstance(arms, int) and not isinstance(arms, bool) and arms > 0)):
        issues.error(f"{loc}.summary.arms", "arms must be a positive integer or 'variable'")
    summary = DesignSummaryTemplate(
        structure=str(summary_raw.get("structure", "")),
        randomization=str(summary_raw.get("randomization", "")),
        blinding=str(summary_raw.get("blinding", "")),
        arms=arms if isinstance(arms, (int, str)) else str(arms),
        comparator=str(summary_raw.get("comparator", "")),
        key_features=_str_tuple(summary_raw.get("key_features", []), f"{loc}.summary.key_features", issues),
    )

    n_raw = _mapping(entry.get("typical_n_range"), f"{loc}.typical_n_range", issues)
    n_range = TypicalNRange(
        min=_int(n_raw.get("min"), f"{loc}.typical_n_range.min", issues),
        max=_int(n_raw.get("max"), f"{loc}.typical_n_range.max", issues),
        unit=str(n_raw.get("unit", "")),
        note=str(n_raw["note"]) if n_raw.get("note") else None,
    )

    c_raw = _mapping(entry.get("constraints", {}), f"{loc}.constraints", issues)
    constraint_flags: dict[str, bool] = {}
    for key, value in c_raw.items():
        if key in BOOLEAN_CONSTRAINTS:
            if not isinstance(value, bool):
                issues.error(f"{loc}.constraints.{key}", "Constraint flag must be a boolean")
            constraint_flags[key] = bool(value)
        elif key not in ("min_arms", "max_arms"):
            issues.error(f"{loc}.constraints.{key}", f"Unknown constraint '{key}'")
    constraints = PatternConstraints(
        **constraint_flags,
        min_arms=_optional_int(c_raw.get("min_arms"), f"{loc}.constraints.min_arms", issues),
        max_arms=_optional_int(c_raw.get("max_arms"), f"{loc}.constraints.max_arms", issues),
    )

    drug_rules = _build_drug_rules(entry.get("drug_characteristics"), f"{loc}.drug_characteristics", issues)

    r_raw = _mapping(entry.get("rationale"), f"{loc}.rationale", issues)
    rationale = RationaleTemplate(
        what=str(r_raw.get("what") or ""),
        why=str(r_raw.get("why") or ""),
        reg=str(r_raw.get("reg") or ""),
        assumptions=_str_tuple(r_raw.get("assumptions", []), f"{loc}.rationale.assumptions", issues),
    )

    return DesignPattern(
        id=pattern_id,
        version=str(entry.get("version", "unversioned")),
        title=str(entry.get("title") or pattern_id),
        allowed_pathways=_str_tuple(entry.get("allowed_pathways"), f"{loc}.allowed_pathways", issues),
        allowed_objectives=_str_tuple(entry.get("allowed_objectives"), f"{loc}.allowed_objectives", issues),
        summary=summary,
        typical_n_range=n_range,
        constraints=constraints,
        tags=_str_tuple(entry.get("tags", []), f"{loc}.tags", issues),
        drug_rules=drug_rules,
        rationale=rationale,
        priority=_number(entry.get("priority"), f"{loc}.priority", issues),
        specificity_score=_number(entry.get("specificity_score"), f"{loc}.specificity_score", issues),
        phase_label=str(entry["phase_label"]) if entry.get("phase_label") else None,
    )


def _build_drug_rules(raw: Any, loc: str, issues: _Issues) -> DrugCharacteristicRules:
    if raw is None:
        return DrugCharacteristicRules()
    data = _mapping(raw, loc, issues)
    prefer_hvd = False
    avoid_half_life: float | None = None

    for section, value in data.items():
        section_data = _mapping(value, f"{loc}.{section}", issues)
        if section == "prefer_if":
            for key, flag in section_data.items():
                if key == "is_hvd" and isinstance(flag, bool):
                    prefer_hvd = flag
                else:
                    issues.error(f"{loc}.prefer_if.{key}", f"Unsupported prefer_if condition '{key}'")
        elif section == "avoid_if":
            for key, threshold in section_data.items():
                if key == "half_life_hours_gte":
                    avoid_half_life = _number(threshold, f"{loc}.avoid_if.{key}", issues)
                else:
                    issues.error(f"{loc}.avoid_if.{key}", f"Unsupported avoid_if condition '{key}'")
        else:
            issues.error(f"{loc}.{section}", f"Unknown drug_characteristics section '{section}'")

    return DrugCharacteristicRules(prefer_hvd=prefer_hvd, avoid_half_life_hours_gte=avoid_half_life)


def _build_guardrails(raw: Any, issues: _Issues) -> tuple[GuardrailRule, ...]:
    rules: dict[str, GuardrailRule] = {}
    if raw is None:
        issues.error("guardrails", "Missing 'rules' section")
        return ()
    if not isinstance(raw, list):
        issues.error("guardrails", "'rules' must be a list")
        return ()

    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            issues.error(f"guardrails[{index}]", "Guardrail entry must be a mapping")
            continue
        rule_id = entry.get("id")
        if not isinstance(rule_id, str) or not rule_id.strip():
            issues.error(f"guardrails[{index}].id", "Missing guardrail id")
            continue
        loc = f"guardrails[{rule_id}]"
        if rule_id in rules:
            issues.error(loc, f"Duplicate guardrail id '{rule_id}'")
            continue

        hint_raw = entry.get("fallback_hint")
        hint = None
        if hint_raw is not None:
            hint_data = _mapping(hint_raw, f"{loc}.fallback_hint", issues)
            strategy = str(hint_data.get("strategy", ""))
            if strategy == STRATEGY_SPECIFIC and "patterns" not in hint_data:
                issues.error(f"{loc}.fallback_hint.patterns", "use_specific_patterns requires a 'patterns' list")
            hint = FallbackHint(
                strategy=strategy,
                patterns=_str_tuple(hint_data.get("patterns", []), f"{loc}.fallback_hint.patterns", issues),
            )

        rules[rule_id] = GuardrailRule(
            id=rule_id,
            version=str(entry.get("version", "unversioned")),
            severity=str(entry.get("severity", "")),
            action=str(entry.get("action", "")),
            match=_build_predicate(entry.get("match", {}), f"{loc}.match", issues),
            message=str(entry.get("message") or ""),
            trace_note=str(entry.get("trace_note") or ""),
            implication=str(entry["implication"]) if entry.get("implication") else None,
            fallback_hint=hint,
        )
    return tuple(rules.values())


def _build_predicate(raw: Any, loc: str, issues: _Issues) -> GuardrailPredicate:
    data = _mapping(raw, loc, issues)
    values: dict[str, Any] = {}

    for key, value in data.items():
        if key in _LIST_PREDICATE_KEYS:
            items = _str_tuple(value, f"{loc}.{key}", issues)
            if not items:
                issues.error(f"{loc}.{key}", f"Predicate '{key}' must list at least one value")
            values[key] = items
        elif key in _NUMERIC_PREDICATE_KEYS:
            values[key] = _number(value, f"{loc}.{key}", issues)
        elif key in _BOOL_PREDICATE_KEYS:
            if not isinstance(value, bool):
                issues.error(f"{loc}.{key}", f"Predicate '{key}' must be a boolean")
            values[key] = bool(value)
        elif key == "constraints":
            flags = _mapping(value, f"{loc}.constraints", issues)
            pairs: list[tuple[str, bool]] = []
            for name, flag in sorted(flags.items()):
                if name not in BOOLEAN_CONSTRAINTS:
                    issues.error(f"{loc}.constraints.{name}", f"Unknown boolean constraint '{name}'")
                    continue
                if not isinstance(flag, bool):
                    issues.error(f"{loc}.constraints.{name}", "Constraint value must be a boolean")
                pairs.append((name, bool(flag)))
            values[key] = tuple(pairs)
        else:
            issues.error(f"{loc}.{key}", f"Unknown match field '{key}'")

    return GuardrailPredicate(**values)


def _build_fallback_order(raw: Any, issues: _Issues) -> dict[str, tuple[str, ...]]:
    if raw is None:
        issues.error("fallback_order", "Missing 'fallback_order' section")
        return {}
    if not isinstance(raw, dict):
        issues.error("fallback_order", "'fallback_order' must be a mapping")
        return {}
    return {str(key): _str_tuple(ids, f"fallback_order[{key}]", issues) for key, ids in raw.items()}


def _build_classification(raw: Any, issues: _Issues) -> ClassificationTables:
    loc = "classification"
    data = _mapping(raw, loc, issues)

    objective_rules: list[ObjectiveRule] = []
    rules_raw = data.get("objective_rules", [])
    if not isinstance(rules_raw, list):
        issues.error(f"{loc}.objective_rules", "'objective_rules' must be a list")
        rules_raw = []
    for index, entry in enumerate(rules_raw):
        rule_loc = f"{loc}.objective_rules[{index}]"
        rule = _mapping(entry, rule_loc, issues)
        overrides = _mapping(rule.get("pathway_overrides", {}), f"{rule_loc}.pathway_overrides", issues)
        objective_rules.append(
            ObjectiveRule(
                keywords=tuple(k.lower() for k in _str_tuple(rule.get("keywords"), f"{rule_loc}.keywords", issues)),
                objective=str(rule.get("objective", "")),
                pathway_overrides=tuple((str(k), str(v)) for k, v in sorted(overrides.items())),
            )
        )

    return ClassificationTables(
        biosimilar_indicators=tuple(
            k.lower() for k in _str_tuple(data.get("biosimilar_indicators", []), f"{loc}.biosimilar_indicators", issues)
        ),
        post_marketing_keywords=tuple(
            k.lower()
            for k in _str_tuple(data.get("post_marketing_keywords", []), f"{loc}.post_marketing_keywords", issues)
        ),
        product_type_pathways=_str_pairs(data.get("product_type_pathways"), f"{loc}.product_type_pathways", issues),
        objective_rules=tuple(objective_rules),
        default_objectives=_str_pairs(data.get("default_objectives"), f"{loc}.default_objectives", issues),
        objective_phase_labels=_str_pairs(
            data.get("objective_phase_labels"), f"{loc}.objective_phase_labels", issues
        ),
    )


# =============================================================================
# Tolerant coercion helpers
# =============================================================================

def _mapping(value: Any, loc: str, issues: _Issues) -> dict:
    if value is None:
        issues.error(loc, "Missing mapping")
        return {}
    if not isinstance(value, dict):
        issues.error(loc, "Expected a mapping")
        return {}
    return value


def _str_tuple(value: Any, loc: str, issues: _Issues) -> tuple[str, ...]:
    if value is None:
        issues.error(loc, "Missing list")
        return ()
    if not isinstance(value, list):
        issues.error(loc, "Expected a list")
        return ()
    return tuple(str(item) for item in value)


def _str_pairs(value: Any, loc: str, issues: _Issues) -> tuple[tuple[str, str], ...]:
    data = _mapping(value, loc, issues)
    return tuple((str(k), str(v)) for k, v in sorted(data.items(), key=lambda kv: str(kv[0])))


def _number(value: Any, loc: str, issues: _Issues) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.error(loc, "Expected a number")
        return 0.0
    return float(value)


def _int(value: Any, loc: str, issues: _Issues) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.error(loc, "Expected an integer")
        return 0
    return value


def _optional_int(value: Any, loc: str, issues: _Issues) -> int | None:
    if value is None:
        return None
    return _int(value, loc, issues)


def _optional_number(value: Any, loc: str, issues: _Issues) -> float | None:
    if value is None:
        return None
    return _number(value, loc, issues)


def _endpoint_set(raw: Any, loc: str, issues: _Issues) -> EndpointSet:
    data = _mapping(raw, loc, issues)
    return EndpointSet(
        primary=_str_tuple(data.get("primary"), f"{loc}.primary", issues),
        secondary=_str_tuple(data.get("secondary", []), f"{loc}.secondary", issues),
    )


def _comparator_description(raw: Any, loc: str, issues: _Issues) -> ComparatorDescription:
    data = _mapping(raw, loc, issues)
    return ComparatorDescription(type=str(data.get("type", "")), description=str(data.get("description") or ""))


def _crossover_layout(raw: Any, loc: str, issues: _Issues) -> CrossoverLayout:
    data = _mapping(raw, loc, issues)
    return CrossoverLayout(
        periods=_int(data.get("periods"), f"{loc}.periods", issues),
        sequences=_int(data.get("sequences"), f"{loc}.sequences", issues),
    )


def _int_pairs(raw: Any, loc: str, issues: _Issues) -> tuple[tuple[str, int], ...]:
    data = _mapping(raw, loc, issues)
    return tuple((str(k), _int(v, f"{loc}.{k}", issues)) for k, v in sorted(data.items(), key=lambda kv: str(kv[0])))


def _build_protocol(raw: Any, issues: _Issues) -> ProtocolTables:
    loc = "protocol"
    if raw is None:
        issues.error(loc, "Missing 'protocol' section")
        return _build_protocol({}, _Issues())
    data = _mapping(raw, loc, issues)

    acceptance_raw = _mapping(data.get("acceptance_criteria"), f"{loc}.acceptance_criteria", issues)
    default_raw = _mapping(acceptance_raw.get("default"), f"{loc}.acceptance_criteria.default", issues)
    acceptance_default = AcceptanceCriteria(
        criterion=str(default_raw.get("criterion", "")),
        margin=str(default_raw.get("margin", "")),
        description=str(default_raw.get("description") or ""),
    )
    acceptance_rules: list[AcceptanceRule] = []
    rules_raw = acceptance_raw.get("rules", [])
    if not isinstance(rules_raw, list):
        issues.error(f"{loc}.acceptance_criteria.rules", "'rules' must be a list")
        rules_raw = []
    for index, entry in enumerate(rules_raw):
        rule = _mapping(entry, f"{loc}.acceptance_criteria.rules[{index}]", issues)
        acceptance_rules.append(
            AcceptanceRule(
                objective=str(rule.get("objective", "")),
                drug_flag=str(rule["drug_flag"]) if rule.get("drug_flag") else None,
                criteria=AcceptanceCriteria(
                    criterion=str(rule.get("criterion", "")),
                    margin=str(rule.get("margin", "")),
                    description=str(rule.get("description") or ""),
                ),
            )
        )

    endpoints_raw = _mapping(data.get("endpoints"), f"{loc}.endpoints", issues)
    by_objective_raw = _mapping(endpoints_raw.get("by_objective", {}), f"{loc}.endpoints.by_objective", issues)
    endpoints_by_objective = tuple(
        (str(objective), _endpoint_set(entry, f"{loc}.endpoints.by_objective[{objective}]", issues))
        for objective, entry in sorted(by_objective_raw.items(), key=lambda kv: str(kv[0]))
    )

    sampling_raw = _mapping(data.get("sampling"), f"{loc}.sampling", issues)
    bands: list[SamplingBand] = []
    bands_raw = sampling_raw.get("bands")
    if not isinstance(bands_raw, list):
        issues.error(f"{loc}.sampling.bands", "'bands' must be a list")
        bands_raw = []
    for index, entry in enumerate(bands_raw):
        band_loc = f"{loc}.sampling.bands[{index}]"
        band = _mapping(entry, band_loc, issues)
        timepoints_raw = band.get("timepoints")
        if not isinstance(timepoints_raw, list):
            issues.error(f"{band_loc}.timepoints", "Expected a list")
            timepoints_raw = []
        bands.append(
            SamplingBand(
                timepoints=tuple(
                    _number(t, f"{band_loc}.timepoints[{i}]", issues) for i, t in enumerate(timepoints_raw)
                ),
                max_half_life_hours=_optional_number(
                    band.get("max_half_life_hours"), f"{band_loc}.max_half_life_hours", issues
                ),
            )
        )
    sampling = SamplingPlan(
        objectives=_str_tuple(sampling_raw.get("objectives", []), f"{loc}.sampling.objectives", issues),
        default_half_life_hours=_number(
            sampling_raw.get("default_half_life_hours"), f"{loc}.sampling.default_half_life_hours", issues
        ),
        rationale=str(sampling_raw.get("rationale") or ""),
        sparse_rationale=str(sampling_raw.get("sparse_rationale") or ""),
        bands=tuple(bands),
    )

    washout_raw = _mapping(data.get("washout"), f"{loc}.washout", issues)

    layouts_raw = _mapping(data.get("crossover_layouts"), f"{loc}.crossover_layouts", issues)
    by_pattern_raw = _mapping(layouts_raw.get("by_pattern", {}), f"{loc}.crossover_layouts.by_pattern", issues)

    dosing_raw = _mapping(data.get("dosing"), f"{loc}.dosing", issues)
    conditions_raw = _mapping(data.get("conditions"), f"{loc}.conditions", issues)

    comparators: list[ComparatorRule] = []
    comparators_raw = _mapping(data.get("comparators"), f"{loc}.comparators", issues)
    for comparator, entry in sorted(comparators_raw.items(), key=lambda kv: str(kv[0])):
        c_loc = f"{loc}.comparators[{comparator}]"
        c_raw = _mapping(entry, c_loc, issues)
        by_pathway_raw = _mapping(c_raw.get("by_pathway", {}), f"{c_loc}.by_pathway", issues)
        comparators.append(
            ComparatorRule(
                comparator=str(comparator),
                default=_comparator_description(c_raw.get("default"), f"{c_loc}.default", issues),
                by_pathway=tuple(
                    (str(pathway), _comparator_description(d, f"{c_loc}.by_pathway[{pathway}]", issues))
                    for pathway, d in sorted(by_pathway_raw.items(), key=lambda kv: str(kv[0]))
                ),
            )
        )

    duration_raw = _mapping(data.get("duration"), f"{loc}.duration", issues)
    follow_up_raw = _mapping(duration_raw.get("follow_up_days"), f"{loc}.duration.follow_up_days", issues)

    adjustments: list[SampleSizeAdjustment] = []
    adjustments_raw = data.get("sample_size_adjustments", [])
    if not isinstance(adjustments_raw, list):
        issues.error(f"{loc}.sample_size_adjustments", "'sample_size_adjustments' must be a list")
        adjustments_raw = []
    for index, entry in enumerate(adjustments_raw):
        a_loc = f"{loc}.sample_size_adjustments[{index}]"
        a_raw = _mapping(entry, a_loc, issues)
        adjustments.append(
            SampleSizeAdjustment(
                pathway=str(a_raw.get("pathway", "")),
                drug_flag=str(a_raw.get("drug_flag", "")),
                min=_int(a_raw.get("min"), f"{a_loc}.min", issues),
                max=_int(a_raw.get("max"), f"{a_loc}.max", issues),
                recommended=_int(a_raw.get("recommended"), f"{a_loc}.recommended", issues),
                note=str(a_raw.get("note") or ""),
            )
        )

    basis_raw = _mapping(data.get("regulatory_basis", {}), f"{loc}.regulatory_basis", issues)

    return ProtocolTables(
        acceptance_default=acceptance_default,
        acceptance_rules=tuple(acceptance_rules),
        endpoints_default=_endpoint_set(endpoints_raw.get("default"), f"{loc}.endpoints.default", issues),
        endpoints_by_objective=endpoints_by_objective,
        sampling=sampling,
        washout_half_lives=_number(washout_raw.get("half_lives"), f"{loc}.washout.half_lives", issues),
        washout_min_days=_int(washout_raw.get("min_days"), f"{loc}.washout.min_days", issues),
        crossover_default=_crossover_layout(
            layouts_raw.get("default"), f"{loc}.crossover_layouts.default", issues
        ),
        crossover_by_pattern=tuple(
            (str(pattern_id), _crossover_layout(entry, f"{loc}.crossover_layouts.by_pattern[{pattern_id}]", issues))
            for pattern_id, entry in sorted(by_pattern_raw.items(), key=lambda kv: str(kv[0]))
        ),
        crossover_dosing=str(dosing_raw.get("crossover") or ""),
        default_dosing=str(dosing_raw.get("default") or ""),
        fasting_pathways=_str_tuple(conditions_raw.get("fasting_pathways", []), f"{loc}.conditions.fasting_pathways", issues),
        fasting_objectives=_str_tuple(
            conditions_raw.get("fasting_objectives", []), f"{loc}.conditions.fasting_objectives", issues
        ),
        fed_pathways=_str_tuple(conditions_raw.get("fed_pathways", []), f"{loc}.conditions.fed_pathways", issues),
        fed_description=str(conditions_raw.get("fed_description") or ""),
        comparators=tuple(comparators),
        screening_days=_int(duration_raw.get("screening_days"), f"{loc}.duration.screening_days", issues),
        treatment_weeks=_int_pairs(duration_raw.get("treatment_weeks"), f"{loc}.duration.treatment_weeks", issues),
        follow_up_days_default=_int(follow_up_raw.get("default"), f"{loc}.duration.follow_up_days.default", issues),
        follow_up_days_by_pathway=_int_pairs(
            follow_up_raw.get("by_pathway", {}), f"{loc}.duration.follow_up_days.by_pathway", issues
        ),
        additional_weeks=_int(duration_raw.get("additional_weeks"), f"{loc}.duration.additional_weeks", issues),
        sample_size_adjustments=tuple(adjustments),
        regulatory_basis=tuple(
            (str(pathway), _str_tuple(refs, f"{loc}.regulatory_basis[{pathway}]", issues))
            for pathway, refs in sorted(basis_raw.items(), key=lambda kv: str(kv[0]))
        ),
    )

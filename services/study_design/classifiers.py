"""
Pathway / Objective 분류

키워드 포함 여부(case-insensitive)만으로 분류한다.
키워드와 테이블은 모두 classification.yaml에서 로드된 ClassificationTables 사용.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import InvalidDesignInputError
from .models import PRODUCT_TYPES, ClassificationTables, DesignPattern, ensure_objective, ensure_pathway

UNASSIGNED_PHASE = "Unassigned"


def _contains_any(text: str, keywords: tuple[str, ...]) -> str | None:
    """첫 번째로 포함된 keyword 반환 (없으면 None)"""
    for keyword in keywords:
        if keyword in text:
            return keyword
    return None


@dataclass(frozen=True)
class Classification:
    """분류 결과 + trace용 근거"""
    value: str
    reason: str


class PathwayClassifier:
    """
    Regulatory pathway 추론

    우선순위:
    1. compound name 또는 stage hint에 biosimilar indicator 포함 → biosimilar
    2. stage hint에 post-marketing 키워드 포함 → post_marketing
    3. product type 테이블
    """

    def __init__(self, tables: ClassificationTables):
        self._tables = tables
        self._product_pathways = dict(tables.product_type_pathways)

    def infer(self, product_type: str, compound_name: str = "", stage_hint: str | None = None) -> str:
        return self.classify(product_type, compound_name, stage_hint).value

    def classify(self, product_type: str, compound_name: str = "", stage_hint: str | None = None) -> Classification:
        if product_type not in self._product_pathways:
            raise InvalidDesignInputError("product_type", product_type, PRODUCT_TYPES)

        name = (compound_name or "").lower()
        hint = (stage_hint or "").lower()

        keyword = _contains_any(name, self._tables.biosimilar_indicators) or _contains_any(
            hint, self._tables.biosimilar_indicators
        )
        if keyword:
            return Classification("biosimilar", f"biosimilar indicator '{keyword}'")

        keyword = _contains_any(hint, self._tables.post_marketing_keywords)
        if keyword:
            return Classification("post_marketing", f"post-marketing keyword '{keyword}' in stage hint")

        pathway = self._product_pathways[product_type]
        return Classification(pathway, f"product type '{product_type}'")


class ObjectiveClassifier:
    """Stage hint 키워드 규칙 (순서대로, 첫 매칭 우선) → pathway별 기본값"""

    def __init__(self, tables: ClassificationTables):
        self._rules = tables.objective_rules
        self._defaults = dict(tables.default_objectives)

    def infer(self, pathway: str, stage_hint: str | None = None) -> str:
        return self.classify(pathway, stage_hint).value

    def classify(self, pathway: str, stage_hint: str | None = None) -> Classification:
        ensure_pathway(pathway)
        hint = (stage_hint or "").lower()

        if hint:
            for rule in self._rules:
                keyword = _contains_any(hint, rule.keywords)
                if keyword:
                    objective = rule.objective_for(pathway)
                    return Classification(objective, f"stage keyword '{keyword}'")

        return Classification(self._defaults[pathway], f"default for {pathway}")


def derive_phase_label(
    pattern: DesignPattern | None,
    objective: str,
    tables: ClassificationTables,
) -> str | None:
    """pattern.phase_label > objective 테이블 > 'Unassigned' (pattern 없으면 None)"""
    if pattern is None:
        return None
    if pattern.phase_label:
        return pattern.phase_label
    ensure_objective(objective)
    return dict(tables.objective_phase_labels).get(objective, UNASSIGNED_PHASE)

"""
Study Design API Router

POST /study-design                - design pattern 결정
GET  /study-design/config         - 설정 검증 결과 / hash / version
POST /study-design/config/reload  - 설정 재로드 (검증 통과 시에만 교체)
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from services.study_design import (
    ConfigValidationError,
    DesignEngine,
    DrugCharacteristics,
    Formulation,
    InvalidDesignInputError,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["study-design"])


# =============================================================================
# Request
# =============================================================================

class DrugCharacteristicsModel(BaseModel):
    """약물 특성 (camelCase / snake_case 모두 허용)"""
    half_life: float | None = Field(None, alias="halfLife", ge=0, description="반감기 (hours)")
    is_nti: bool | None = Field(None, alias="isNTI", description="Narrow therapeutic index")
    is_hvd: bool | None = Field(None, alias="isHVD", description="Highly variable drug (CV >30%)")
    has_food_effect: bool | None = Field(None, alias="hasFoodEffect", description="Food effect 여부")

    model_config = {"populate_by_name": True}


class FormulationModel(BaseModel):
    dosage_form: str | None = Field(None, alias="dosageForm")
    route: str | None = None
    strength: str | None = None

    model_config = {"populate_by_name": True}


class StudyDesignRequest(BaseModel):
    """Study design 결정 요청"""
    product_type: Literal["generic", "innovator", "hybrid", "biosimilar"] = Field(
        ..., description="제품 유형"
    )
    compound_name: str = Field(..., min_length=1, description="성분명")
    formulation: FormulationModel | None = Field(None, description="제형 정보 (trace 기록용)")
    stage_hint: str | None = Field(None, description="개발 단계 힌트 (예: 'Phase 1 BE study')")
    indication: str | None = Field(None, description="적응증")
    drug_characteristics: DrugCharacteristicsModel | None = Field(None, description="약물 특성")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "product_type": "generic",
                    "compound_name": "omeprazole",
                    "formulation": {"dosage_form": "capsule", "route": "oral", "strength": "20 mg"},
                    "stage_hint": "Phase 1 BE study",
                    "drug_characteristics": {"isHVD": False, "halfLife": 1.0},
                }
            ]
        }
    }


# =============================================================================
# Response
# =============================================================================

class WarningResponse(BaseModel):
    severity: Literal["HARD", "SOFT"]
    message: str
    implication: str | None = None
    rule_id: str | None = None


class TraceEntryResponse(BaseModel):
    step: str
    action: str
    result: str


class SampleSizeRangeResponse(BaseModel):
    min: int
    max: int
    recommended: int


class PopulationResponse(BaseModel):
    type: Literal["healthy_volunteers", "patients"]
    description: str
    sample_size_range: SampleSizeRangeResponse
    rationale: str


class StructuredRationaleResponse(BaseModel):
    what: str | None = None
    why: str | None = None
    regulatory: str | None = None
    assumptions: list[str] = []
    notes: list[str] = []
    fallback_note: str | None = None


class StudyDesignResponse(BaseModel):
    """Study design 결정 결과"""
    status: Literal["pattern_selected", "human_decision_required"]
    regulatory_pathway: str
    primary_objective: str
    design_pattern: str | None = None
    design_name: str | None = None
    design_summary: dict[str, Any] | None = None
    phase_label: str | None = None
    regulatory_rationale: str
    structured_rationale: StructuredRationaleResponse
    warnings: list[WarningResponse] = []
    population: PopulationResponse | None = None
    protocol: dict[str, Any] | None = Field(None, description="acceptance criteria, endpoints, sampling, washout 등 protocol 상세")
    regulatory_basis: list[str] = []
    confidence: int = Field(..., ge=0, le=100)
    decision_trace: list[TraceEntryResponse]
    config_hash: str


class ConfigStatusResponse(BaseModel):
    valid: bool
    errors: list[dict[str, str]]
    config_hash: str
    versions: dict[str, str]
    pattern_count: int
    guardrail_count: int


# =============================================================================
# Endpoints
# =============================================================================

def _get_engine(request: Request) -> DesignEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Study design engine is not initialized")
    return engine


def _config_status(engine: DesignEngine) -> ConfigStatusResponse:
    registry = engine.registry
    report = registry.validation_report()
    return ConfigStatusResponse(
        valid=report["valid"],
        errors=report["errors"],
        config_hash=registry.config_hash,
        versions={
            "engine": registry.versions.engine,
            "patterns": registry.versions.patterns,
            "guardrails": registry.versions.guardrails,
            "fallback": registry.versions.fallback,
            "classification": registry.versions.classification,
            "protocol": registry.versions.protocol,
        },
        pattern_count=len(registry.patterns),
        guardrail_count=len(registry.guardrails),
    )


@router.post("/study-design", response_model=StudyDesignResponse)
async def create_study_design(payload: StudyDesignRequest, request: Request) -> StudyDesignResponse:
    engine = _get_engine(request)
    drug = payload.drug_characteristics
    formulation = payload.formulation
    try:
        output = engine.generate_study_design(
            payload.product_type,
            payload.compound_name,
            formulation=Formulation(**formulation.model_dump()) if formulation else None,
            stage_hint=payload.stage_hint,
            indication=payload.indication,
            drug_characteristics=DrugCharacteristics(**drug.model_dump()) if drug else None,
        )
    except InvalidDesignInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return StudyDesignResponse(**output.to_dict())


@router.get("/study-design/config", response_model=ConfigStatusResponse)
async def get_config_status(request: Request) -> ConfigStatusResponse:
    return _config_status(_get_engine(request))


@router.post("/study-design/config/reload", response_model=ConfigStatusResponse)
async def reload_config(request: Request) -> ConfigStatusResponse:
    engine = _get_engine(request)
    try:
        engine.reload()
    except ConfigValidationError as e:
        logger.error(f"Config reload rejected: {e}")
        raise HTTPException(
            status_code=422,
            detail={"message": str(e), "errors": [i.to_dict() for i in e.issues]},
        )
    return _config_status(engine)

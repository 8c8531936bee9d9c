"""
Study Design Decision Engine

제품의 regulatory pathway 신호와 약물 특성으로부터 임상시험 design pattern을 결정.

핵심 원칙:
- 모든 규칙은 config/study_design/*.yaml (코드 수정 없이 변경)
- 설정 오류는 load 시점에 fail-hard (ConfigValidationError)
- "pattern 없음"은 오류가 아니라 HUMAN_DECISION_REQUIRED 출력
- 같은 입력 + 같은 config snapshot → 같은 출력, 같은 decision trace
"""

from .classifiers import ObjectiveClassifier, PathwayClassifier, derive_phase_label
from .engine import (
    DesignEngine,
    StudyDesignOutput,
    generate_config_hash,
    generate_study_design,
    get_default_engine,
    reset_default_engine,
    validate_configs,
)
from .errors import ConfigFileError, ConfigValidationError, InvalidDesignInputError
from .fallback import FallbackResolution, FallbackResolver
from .guardrails import GuardrailEvaluator, GuardrailReport, GuardrailResult
from .models import HUMAN_DECISION_REQUIRED, DrugCharacteristics, Formulation
from .pattern_selector import PatternSelection, PatternSelector
from .protocol import ProtocolBuilder, ProtocolDetails
from .rationale import RationaleComposer, StructuredRationale, StructuredWarning
from .registry import ConfigRegistry, ValidationIssue, build_registry, load_registry, load_validated_registry
from .trace import ConfidenceScorer, DecisionTraceRecorder
from .utils import setup_logging

__all__ = [
    # Engine
    "DesignEngine",
    "StudyDesignOutput",
    "generate_study_design",
    "validate_configs",
    "generate_config_hash",
    "get_default_engine",
    "reset_default_engine",
    # Registry
    "ConfigRegistry",
    "ValidationIssue",
    "build_registry",
    "load_registry",
    "load_validated_registry",
    # Stages
    "PathwayClassifier",
    "ObjectiveClassifier",
    "derive_phase_label",
    "PatternSelector",
    "PatternSelection",
    "GuardrailEvaluator",
    "GuardrailReport",
    "GuardrailResult",
    "FallbackResolver",
    "FallbackResolution",
    "ProtocolBuilder",
    "ProtocolDetails",
    "RationaleComposer",
    "StructuredRationale",
    "StructuredWarning",
    "DecisionTraceRecorder",
    "ConfidenceScorer",
    # Inputs
    "DrugCharacteristics",
    "Formulation",
    "HUMAN_DECISION_REQUIRED",
    # Errors
    "ConfigFileError",
    "ConfigValidationError",
    "InvalidDesignInputError",
    # Utils
    "setup_logging",
]

"""
Study Design Configuration Loader

- 모든 design pattern / guardrail / fallback / classification 규칙을 YAML 설정 파일에서 로드
- 코드 수정 없이 설정 파일만으로 규칙 변경 가능
- 로드된 raw dict는 registry.build_registry()가 검증/불변 snapshot으로 변환
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigFileError


# 번들 설정 디렉토리 경로
CONFIG_DIR = Path(__file__).parent.parent.parent / "config" / "study_design"

PATTERNS_FILE = "patterns.yaml"
GUARDRAILS_FILE = "guardrails.yaml"
FALLBACK_ORDER_FILE = "fallback_order.yaml"
CLASSIFICATION_FILE = "classification.yaml"
PROTOCOL_FILE = "protocol.yaml"


def get_config_dir() -> Path:
    """STUDY_DESIGN_CONFIG_DIR 환경변수가 있으면 우선, 없으면 번들 디렉토리"""
    override = os.environ.get("STUDY_DESIGN_CONFIG_DIR")
    return Path(override) if override else CONFIG_DIR


@lru_cache(maxsize=16)
def _load_yaml(config_dir: str, filename: str) -> dict[str, Any]:
    """
    YAML 파일 로드 (캐싱, 실패는 캐싱되지 않음)

    Raises:
        ConfigFileError: 파일 없음 / 읽기 실패 / YAML 파싱 실패 / top-level이 mapping 아님
    """
    filepath = Path(config_dir) / filename
    if not filepath.exists():
        raise ConfigFileError(filename, f"Config file not found: {filepath}")

    try:
        with open(filepath, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigFileError(filename, f"Invalid YAML: {e}") from e
    except OSError as e:
        raise ConfigFileError(filename, f"Cannot read config file: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigFileError(filename, "Config file must contain a mapping at top level")
    return data


def get_patterns_config(config_dir: Path | None = None) -> dict[str, Any]:
    """
    Design pattern 설정 반환

    Returns:
        {"version": "1.0", "patterns": [{"id": "SAD", ...}, ...]}
    """
    return _load_yaml(str(config_dir or get_config_dir()), PATTERNS_FILE)


def get_guardrails_config(config_dir: Path | None = None) -> dict[str, Any]:
    """
    Guardrail rule 설정 반환

    Returns:
        {"version": "1.0", "rules": [{"id": "GR-001", ...}, ...]}
    """
    return _load_yaml(str(config_dir or get_config_dir()), GUARDRAILS_FILE)


def get_fallback_order_config(config_dir: Path | None = None) -> dict[str, Any]:
    """
    Fallback order 설정 반환

    Returns:
        {"version": "2.0", "fallback_order": {"innovator:pk_safety": ["SAD", "MAD"], ...}}
    """
    return _load_yaml(str(config_dir or get_config_dir()), FALLBACK_ORDER_FILE)


def get_classification_config(config_dir: Path | None = None) -> dict[str, Any]:
    """
    Pathway/objective 분류 테이블 반환

    Returns:
        {
            "biosimilar_indicators": [...],
            "post_marketing_keywords": [...],
            "product_type_pathways": {...},
            "objective_rules": [...],
            "default_objectives": {...},
            "objective_phase_labels": {...}
        }
    """
    return _load_yaml(str(config_dir or get_config_dir()), CLASSIFICATION_FILE)


def get_protocol_config(config_dir: Path | None = None) -> dict[str, Any]:
    """
    Protocol detail 테이블 반환 (acceptance criteria, endpoints, sampling, washout, ...)

    Returns:
        {"version": "1.0", "acceptance_criteria": {...}, "endpoints": {...}, "sampling": {...}, ...}
    """
    return _load_yaml(str(config_dir or get_config_dir()), PROTOCOL_FILE)


def load_raw_config(config_dir: Path | None = None) -> dict[str, Any]:
    """
    5개 설정 파일을 하나의 raw dict로 결합

    파일 단위 로드 실패(없음 / YAML 파싱 실패 / mapping 아님)는 raise하지 않고
    load_errors에 모아 build_registry()가 error issue로 보고하게 함

    Returns:
        {
            "versions": {"patterns": ..., "guardrails": ..., "fallback": ..., "classification": ..., "protocol": ...},
            "patterns": [...],
            "guardrails": [...],
            "fallback_order": {...},
            "classification": {...},
            "protocol": {...},
            "load_errors": [{"location": "guardrails.yaml", "message": ...}]
        }
    """
    load_errors: list[dict[str, str]] = []
    files = {}
    for name, getter in (
        ("patterns", get_patterns_config),
        ("guardrails", get_guardrails_config),
        ("fallback", get_fallback_order_config),
        ("classification", get_classification_config),
        ("protocol", get_protocol_config),
    ):
        try:
            files[name] = getter(config_dir)
        except ConfigFileError as e:
            load_errors.append({"location": e.filename, "message": e.message})
            files[name] = None

    return {
        "versions": {
            name: str(data.get("version", "unversioned")) if data is not None else "unversioned"
            for name, data in files.items()
        },
        "patterns": _section(files["patterns"], "patterns"),
        "guardrails": _section(files["guardrails"], "rules"),
        "fallback_order": _section(files["fallback"], "fallback_order"),
        "classification": _without_version(files["classification"]),
        "protocol": _without_version(files["protocol"]),
        "load_errors": load_errors,
    }


def _section(data: dict[str, Any] | None, key: str) -> Any:
    return data.get(key) if data is not None else None


def _without_version(data: dict[str, Any] | None) -> dict[str, Any] | None:
    if data is None:
        return None
    return {k: v for k, v in data.items() if k != "version"}


def clear_cache():
    """캐시 초기화 (reload / 테스트용)"""
    _load_yaml.cache_clear()

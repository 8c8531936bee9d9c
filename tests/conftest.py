"""
Study design 공용 fixtures

- raw_config: 번들 YAML의 deep copy (테스트별로 자유롭게 수정)
- registry / engine: 번들 설정 기반
"""

import copy

import pytest

from services.study_design.config_loader import clear_cache, load_raw_config
from services.study_design.engine import DesignEngine, reset_default_engine
from services.study_design.registry import build_registry


@pytest.fixture(scope="session")
def bundled_raw_config():
    clear_cache()
    return load_raw_config()


@pytest.fixture
def raw_config(bundled_raw_config):
    return copy.deepcopy(bundled_raw_config)


@pytest.fixture
def registry(raw_config):
    return build_registry(raw_config)


@pytest.fixture
def engine(registry):
    return DesignEngine(registry)


@pytest.fixture
def always_blocking_rule():
    """모든 pattern을 차단하는 HARD_STOP 규칙 (빈 match)"""
    return {
        "id": "GR-999",
        "version": "1.0",
        "severity": "HARD_STOP",
        "action": "FALLBACK",
        "match": {},
        "message": "Synthetic rule blocking every pattern.",
        "trace_note": "Synthetic block.",
        "fallback_hint": {"strategy": "use_fallback_order_for_pathway_objective"},
    }


@pytest.fixture(autouse=True)
def _reset_default_engine():
    yield
    reset_default_engine()

"""
유틸리티 함수: logging 설정, sha256, canonical JSON
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import sys
from typing import Any


def get_log_level() -> int:
    """STUDY_DESIGN_LOG_LEVEL 환경변수 → logging level (기본 INFO)"""
    name = os.environ.get("STUDY_DESIGN_LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def setup_logging(level: int | None = None) -> logging.Logger:
    """로깅 설정"""
    logger = logging.getLogger("services.study_design")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            logging.Formatter(
                "[%(asctime)s] %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(handler)
    logger.setLevel(level if level is not None else get_log_level())
    return logger


def canonical_json(data: Any) -> str:
    """키 정렬 + 공백 없는 JSON (해시 입력용)"""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_text(text: str) -> str:
    """문자열의 SHA256 해시 계산"""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def redact_identifier(value: str | None, keep: int = 3) -> str:
    """
    식별자 부분 마스킹 (trace 기록용)
    예: omeprazole -> OME***
    """
    visible = (value or "").strip()[:keep].upper()
    return f"{visible}***" if visible else "***"

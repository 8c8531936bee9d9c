#!/usr/bin/env python3
"""
Study Design 설정 검증

config/study_design/*.yaml을 로드해 validate() 결과와 config hash를 출력.
error가 하나라도 있으면 exit code 1 (CI / 배포 전 점검용)

Usage:
    python tools/validate_design_config.py
    python tools/validate_design_config.py --config-dir /path/to/study_design
    python tools/validate_design_config.py --json
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass, field
from pathlib import Path

# 모듈 경로 설정 (services/study_design 접근용)
sys.path.insert(0, str(Path(__file__).parent.parent))

from services.study_design.config_loader import get_config_dir
from services.study_design.registry import ConfigRegistry, ValidationIssue, load_registry


@dataclass
class ValidationStats:
    """검증 통계"""

    config_dir: str = ""
    config_hash: str = ""
    versions: str = ""
    patterns: int = 0
    guardrails: int = 0
    fallback_keys: int = 0
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @classmethod
    def from_registry(cls, config_dir: Path, registry: ConfigRegistry) -> "ValidationStats":
        return cls(
            config_dir=str(config_dir),
            config_hash=registry.config_hash,
            versions=registry.versions.describe(),
            patterns=len(registry.patterns),
            guardrails=len(registry.guardrails),
            fallback_keys=len(registry.fallback_order),
            errors=registry.errors,
            warnings=registry.warnings,
        )

    def summary(self) -> str:
        lines = [
            "",
            "=" * 60,
            "Study Design 설정 검증 결과",
            "=" * 60,
            f"  설정 디렉토리: {self.config_dir}",
            f"  버전: {self.versions}",
            f"  config hash: {self.config_hash}",
            f"  patterns: {self.patterns}",
            f"  guardrails: {self.guardrails}",
            f"  fallback keys: {self.fallback_keys}",
            f"  에러: {len(self.errors)}건",
        ]
        for issue in self.errors:
            lines.append(f"    - [error] {issue.location}: {issue.message}")
        lines.append(f"  경고: {len(self.warnings)}건")
        for issue in self.warnings:
            lines.append(f"    - [warning] {issue.location}: {issue.message}")
        lines.append("=" * 60)
        lines.append("  결과: " + ("FAIL" if self.errors else "OK"))
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "valid": not self.errors,
            "config_dir": self.config_dir,
            "config_hash": self.config_hash,
            "errors": [i.to_dict() for i in self.errors + self.warnings],
        }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Study Design 설정 검증",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
예시:
  python tools/validate_design_config.py
  python tools/validate_design_config.py --config-dir config/study_design --json
        """,
    )

    parser.add_argument(
        "--config-dir",
        type=str,
        default=None,
        help="설정 디렉토리 (기본: STUDY_DESIGN_CONFIG_DIR 환경변수 또는 번들 설정)",
    )

    parser.add_argument(
        "--json",
        action="store_true",
        help="JSON 형식으로 출력",
    )

    args = parser.parse_args(argv)

    config_dir = Path(args.config_dir) if args.config_dir else get_config_dir()
    if not config_dir.is_dir():
        print(f"[ERROR] 디렉토리가 없습니다: {config_dir}")
        return 1

    # 파일 없음 / YAML 파싱 실패도 registry의 error issue로 보고됨
    registry = load_registry(config_dir)
    stats = ValidationStats.from_registry(config_dir, registry)
    if args.json:
        print(json.dumps(stats.to_dict(), ensure_ascii=False, indent=2))
    else:
        print(stats.summary())

    return 1 if stats.errors else 0


if __name__ == "__main__":
    sys.exit(main())

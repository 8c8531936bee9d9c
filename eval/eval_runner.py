#!/usr/bin/env python3
"""
Eval Runner for the Study Design Engine

Runs goldset scenarios through the engine (in-process by default, or against a
running API with --api-base) and compares pathway / objective / pattern / status.

Usage:
    python eval/eval_runner.py
    python eval/eval_runner.py --goldset eval/goldset_study_design.csv
    python eval/eval_runner.py --api-base http://localhost:8000
"""

from __future__ import annotations

import argparse
import csv
import json
import sys
from pathlib import Path
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

sys.path.insert(0, str(Path(__file__).parent.parent))

from services.study_design import generate_study_design


DEFAULT_GOLDSET = "eval/goldset_study_design.csv"

CHECKED_FIELDS = (
    ("expected_pathway", "regulatory_pathway"),
    ("expected_objective", "primary_objective"),
    ("expected_pattern", "design_pattern"),
    ("expected_status", "status"),
)


def load_goldset(goldset_path: str | Path) -> list[dict]:
    """Load goldset CSV file."""
    with open(goldset_path, "r", encoding="utf-8") as f:
        return list(csv.DictReader(f))


def _optional_bool(value: str | None) -> bool | None:
    value = (value or "").strip().lower()
    if not value:
        return None
    return value in ("1", "true", "yes", "y")


def build_request(row: dict) -> dict[str, Any]:
    """Goldset row -> POST /study-design payload."""
    drug: dict[str, Any] = {}
    if (row.get("half_life") or "").strip():
        drug["halfLife"] = float(row["half_life"])
    for column, key in (("is_hvd", "isHVD"), ("is_nti", "isNTI"), ("has_food_effect", "hasFoodEffect")):
        flag = _optional_bool(row.get(column))
        if flag is not None:
            drug[key] = flag

    return {
        "product_type": row["product_type"],
        "compound_name": row["compound_name"],
        "stage_hint": row.get("stage_hint") or None,
        "indication": row.get("indication") or None,
        "drug_characteristics": drug or None,
    }


def call_study_design_api(api_base: str, payload: dict) -> dict[str, Any] | None:
    """Call the study design API and return response."""
    url = f"{api_base}/study-design"
    try:
        req = Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        with urlopen(req, timeout=30) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except HTTPError as e:
        print(f"HTTP Error: {e.code} - {e.reason}", file=sys.stderr)
        return None
    except URLError as e:
        print(f"URL Error: {e.reason}", file=sys.stderr)
        return None


def run_in_process(payload: dict) -> dict[str, Any]:
    return generate_study_design(
        payload["product_type"],
        payload["compound_name"],
        stage_hint=payload["stage_hint"],
        indication=payload["indication"],
        drug_characteristics=payload["drug_characteristics"],
    ).to_dict()


def evaluate_row(row: dict, response: dict | None) -> dict:
    """Compare one response with its goldset expectations."""
    result: dict[str, Any] = {"case_id": row["case_id"], "errors": []}
    if response is None:
        result["errors"].append("no response")
        result["passed"] = False
        return result

    for expected_column, field in CHECKED_FIELDS:
        expected = (row.get(expected_column) or "").strip()
        if not expected:
            continue
        actual = response.get(field)
        if expected == "null":
            matched = actual is None
        else:
            matched = actual == expected
        if not matched:
            result["errors"].append(f"{field}: expected {expected}, got {actual}")

    min_confidence = (row.get("min_confidence") or "").strip()
    if min_confidence and response.get("confidence", 0) < int(min_confidence):
        result["errors"].append(f"confidence: expected >= {min_confidence}, got {response.get('confidence')}")
    max_confidence = (row.get("max_confidence") or "").strip()
    if max_confidence and response.get("confidence", 0) > int(max_confidence):
        result["errors"].append(f"confidence: expected <= {max_confidence}, got {response.get('confidence')}")

    result["pattern"] = response.get("design_pattern")
    result["confidence"] = response.get("confidence")
    result["passed"] = not result["errors"]
    return result


def run_eval(goldset_path: str | Path, api_base: str | None = None) -> dict:
    """Run evaluation against goldset.

    Returns summary statistics.
    """
    goldset = load_goldset(goldset_path)
    results = []

    print("\n" + "=" * 80)
    print("EVALUATION RESULTS")
    print("=" * 80)
    print(f"\n{'Case':<28} {'Pattern':<30} {'Conf':<6} {'Pass':<6}")
    print("-" * 80)

    for row in goldset:
        payload = build_request(row)
        response = call_study_design_api(api_base, payload) if api_base else run_in_process(payload)
        result = evaluate_row(row, response)
        results.append(result)

        pass_str = "Y" if result["passed"] else "N"
        pattern_str = str(result.get("pattern") or "-")[:28]
        print(f"{row['case_id'][:26]:<28} {pattern_str:<30} {str(result.get('confidence', '-')):<6} {pass_str:<6}")
        for error in result["errors"]:
            print(f"    ! {error}")

    return calculate_summary(results)


def calculate_summary(results: list[dict]) -> dict:
    """Calculate summary statistics from results."""
    total = len(results)
    passed = sum(1 for r in results if r["passed"])
    return {
        "total_cases": total,
        "passed_count": passed,
        "pass_rate": passed / total * 100 if total > 0 else 0,
        "failed_cases": [r["case_id"] for r in results if not r["passed"]],
    }


def print_summary(summary: dict) -> None:
    """Print evaluation summary."""
    print("\n" + "=" * 80)
    print("[Eval Summary]")
    print("=" * 80)
    print(f"- Total cases: {summary['total_cases']}")
    print(f"- Pass rate: {summary['pass_rate']:.1f}% ({summary['passed_count']}/{summary['total_cases']})")
    if summary["failed_cases"]:
        print(f"- Failed: {', '.join(summary['failed_cases'])}")
    print("=" * 80 + "\n")


def main():
    parser = argparse.ArgumentParser(description="Run study design eval against goldset")
    parser.add_argument(
        "--goldset",
        default=DEFAULT_GOLDSET,
        help=f"Path to goldset CSV (default: {DEFAULT_GOLDSET})"
    )
    parser.add_argument(
        "--api-base",
        default=None,
        help="API base URL (default: run the engine in-process)"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output raw JSON summary"
    )
    args = parser.parse_args()

    goldset_path = Path(args.goldset)
    if not goldset_path.is_absolute() and not goldset_path.exists():
        goldset_path = Path(__file__).parent.parent / args.goldset

    if not goldset_path.exists():
        print(f"Error: Goldset file not found: {goldset_path}", file=sys.stderr)
        sys.exit(1)

    print("=" * 80)
    print("STUDY DESIGN EVAL RUNNER")
    print("=" * 80)
    print(f"\nGoldset: {goldset_path}")
    print(f"Mode: {args.api_base or 'in-process'}")

    summary = run_eval(goldset_path, args.api_base)

    if args.json:
        print(json.dumps(summary, indent=2, ensure_ascii=False))
    else:
        print_summary(summary)

    sys.exit(0 if not summary["failed_cases"] else 1)


if __name__ == "__main__":
    main()

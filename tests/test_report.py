# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_federation

"""
Tests for report aggregation and rendering.
"""

import json
from datetime import UTC, datetime

from coreason_federation.models import SecurityTestResult, Severity, ValidationResult
from coreason_federation.report import ValidationReport


def _security(test: str, passed: bool, severity: Severity) -> SecurityTestResult:
    return SecurityTestResult(
        category="Demo",
        test=test,
        passed=passed,
        severity=severity,
        description=f"{test} description",
        recommendation=f"fix {test}",
    )


FLOWS = (
    ValidationResult(flow="authorization_code", passed=True, details={"status": 302, "claims": ["sub"]}),
    ValidationResult(flow="saml_sso", passed=False, errors=("InResponseTo mismatch",), warnings=("expired",)),
)


def test_counts() -> None:
    report = ValidationReport(
        flows=FLOWS,
        security=(
            _security("sql", True, Severity.CRITICAL),
            _security("rate", False, Severity.HIGH),
            _security("state", False, Severity.MEDIUM),
        ),
    )
    assert report.passed == 2
    assert report.failed == 3
    assert report.warnings == 1
    assert report.severity_counts() == {
        Severity.CRITICAL: 1,
        Severity.HIGH: 1,
        Severity.MEDIUM: 1,
        Severity.LOW: 0,
    }
    assert [r.test for r in report.failed_security(Severity.HIGH)] == ["rate"]
    assert report.has_blocking_failures()


def test_medium_failures_do_not_block() -> None:
    report = ValidationReport(security=(_security("state", False, Severity.MEDIUM),))
    assert not report.has_blocking_failures()
    assert not ValidationReport().has_blocking_failures()


def test_merge_keeps_order() -> None:
    first = ValidationReport(flows=FLOWS[:1], security=(_security("a", True, Severity.LOW),))
    second = ValidationReport(flows=FLOWS[1:], security=(_security("b", True, Severity.LOW),))
    merged = first.merge(second)
    assert [r.flow for r in merged.flows] == ["authorization_code", "saml_sso"]
    assert [r.test for r in merged.security] == ["a", "b"]


def test_to_dict_and_json() -> None:
    stamp = datetime(2025, 1, 1, tzinfo=UTC)
    report = ValidationReport(flows=FLOWS, security=(_security("sql", False, Severity.CRITICAL),), generated_at=stamp)
    data = report.to_dict()
    assert data["timestamp"] == "2025-01-01T00:00:00+00:00"
    assert data["summary"] == {
        "total": 3,
        "passed": 1,
        "failed": 2,
        "warnings": 1,
        "severity": {"critical": 1, "high": 0, "medium": 0, "low": 0},
    }
    assert data["security"][0]["severity"] == "critical"
    assert json.loads(report.to_json()) == data


def test_text_report_lists_blocking_issues() -> None:
    report = ValidationReport(
        flows=FLOWS,
        security=(_security("sql", False, Severity.CRITICAL), _security("rate", False, Severity.HIGH)),
    )
    text = report.to_text()
    assert "=== Flow Validation ===" in text
    assert "1. AUTHORIZATION_CODE" in text
    assert '     claims: ["sub"]' in text
    assert "CRITICAL SECURITY ISSUES:" in text
    assert "HIGH SEVERITY ISSUES:" in text
    assert "   Recommendation: fix sql" in text
    assert "Found 1 critical and 1 high severity issues." in text
    assert "  - saml_sso: InResponseTo mismatch" in text
    assert "Success Rate: 25.00%" in text


def test_text_report_all_clear() -> None:
    report = ValidationReport(security=(_security("sql", True, Severity.CRITICAL),))
    text = report.to_text()
    assert "=== Flow Validation ===" not in text
    assert "No critical or high severity security issues found." in text
    assert "Success Rate: 100.00%" in text


def test_empty_report_renders() -> None:
    text = ValidationReport().to_text()
    assert "Total Tests Run: 0" in text
    assert "Success Rate" not in text


def test_warning_listing_is_capped() -> None:
    flow = ValidationResult(flow="noisy", passed=True, warnings=tuple(f"w{i}" for i in range(15)))
    text = ValidationReport(flows=(flow,)).to_text()
    summary = text.split("=== OVERALL SUMMARY ===")[1]
    assert "  - w9" in summary
    assert "  - w10" not in summary

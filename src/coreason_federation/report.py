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
Aggregation of flow validation and security test results into text and JSON reports.
"""

import json
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from coreason_federation.models import SecurityTestResult, Severity, ValidationResult

BLOCKING_SEVERITIES = (Severity.CRITICAL, Severity.HIGH)
MAX_LISTED_WARNINGS = 10


def _now() -> datetime:
    return datetime.now(UTC)


class ValidationReport(BaseModel):
    """
    Results of one validation run.

    Attributes:
        flows (tuple[ValidationResult, ...]): OAuth and SAML flow validation results.
        security (tuple[SecurityTestResult, ...]): Security harness results.
        generated_at (datetime): Creation time of the report.
    """

    model_config = ConfigDict(frozen=True)

    flows: tuple[ValidationResult, ...] = ()
    security: tuple[SecurityTestResult, ...] = ()
    generated_at: datetime = Field(default_factory=_now)

    @property
    def passed(self) -> int:
        return sum(1 for r in self.flows if r.passed) + sum(1 for r in self.security if r.passed)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.flows if not r.passed) + sum(1 for r in self.security if not r.passed)

    @property
    def warnings(self) -> int:
        return sum(len(r.warnings) for r in self.flows)

    def severity_counts(self) -> dict[Severity, int]:
        """Number of security tests per severity, passed or not."""
        counts = {severity: 0 for severity in Severity}
        for result in self.security:
            counts[result.severity] += 1
        return counts

    def failed_security(self, severity: Severity) -> list[SecurityTestResult]:
        return [r for r in self.security if not r.passed and r.severity == severity]

    def has_blocking_failures(self) -> bool:
        """True iff a critical or high severity security test failed."""
        return any(self.failed_security(severity) for severity in BLOCKING_SEVERITIES)

    def merge(self, other: "ValidationReport") -> "ValidationReport":
        return ValidationReport(flows=self.flows + other.flows, security=self.security + other.security)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.generated_at.isoformat(),
            "summary": {
                "total": len(self.flows) + len(self.security),
                "passed": self.passed,
                "failed": self.failed,
                "warnings": self.warnings,
                "severity": {severity.value: count for severity, count in self.severity_counts().items()},
            },
            "flows": [r.model_dump(mode="json") for r in self.flows],
            "security": [r.model_dump(mode="json") for r in self.security],
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def to_text(self) -> str:
        lines = [f"=== Federation Validation Report ({self.generated_at.isoformat()}) ===", ""]
        if self.flows:
            lines.extend(self._flow_section())
        if self.security:
            lines.extend(self._security_section())
        lines.extend(self._summary_section())
        return "\n".join(lines) + "\n"

    def _flow_section(self) -> list[str]:
        passed = sum(1 for r in self.flows if r.passed)
        lines = [
            "=== Flow Validation ===",
            "",
            f"Total Tests: {len(self.flows)}",
            f"Passed: {passed}",
            f"Failed: {len(self.flows) - passed}",
            f"Success Rate: {passed / len(self.flows) * 100:.2f}%",
            "",
        ]
        for index, result in enumerate(self.flows, start=1):
            lines.append(f"{index}. {result.flow.upper()}")
            lines.append(f"   Status: {'PASSED' if result.passed else 'FAILED'}")
            if result.errors:
                lines.append("   Errors:")
                lines.extend(f"     - {e}" for e in result.errors)
            if result.warnings:
                lines.append("   Warnings:")
                lines.extend(f"     - {w}" for w in result.warnings)
            if result.details:
                lines.append("   Details:")
                for key, value in result.details.items():
                    rendered = json.dumps(value, default=str) if isinstance(value, (dict, list)) else str(value)
                    lines.append(f"     {key}: {rendered}")
            lines.append("")
        return lines

    def _security_section(self) -> list[str]:
        counts = self.severity_counts()
        passed = sum(1 for r in self.security if r.passed)
        lines = [
            "=== Security Validation ===",
            "",
            f"Total Security Tests: {len(self.security)}",
            f"Passed: {passed}",
            f"Failed: {len(self.security) - passed}",
            "",
            "Severity Breakdown:",
        ]
        lines.extend(f"  {severity.value.capitalize()}: {counts[severity]}" for severity in Severity)
        lines.append("")

        sections = ((Severity.CRITICAL, "CRITICAL SECURITY ISSUES"), (Severity.HIGH, "HIGH SEVERITY ISSUES"))
        for severity, title in sections:
            failures = self.failed_security(severity)
            if not failures:
                continue
            lines.extend([f"{title}:", ""])
            for index, result in enumerate(failures, start=1):
                lines.append(f"{index}. {result.test}")
                lines.append(f"   Category: {result.category}")
                lines.append(f"   Description: {result.description}")
                if result.recommendation:
                    lines.append(f"   Recommendation: {result.recommendation}")
                lines.append("")

        critical = len(self.failed_security(Severity.CRITICAL))
        high = len(self.failed_security(Severity.HIGH))
        if critical == 0 and high == 0:
            lines.extend(["No critical or high severity security issues found.", ""])
        else:
            lines.extend([f"Found {critical} critical and {high} high severity issues.", ""])
        return lines

    def _summary_section(self) -> list[str]:
        total = len(self.flows) + len(self.security)
        lines = [
            "=== OVERALL SUMMARY ===",
            "",
            f"Total Tests Run: {total}",
            f"Passed: {self.passed}",
            f"Failed: {self.failed}",
            f"Total Warnings: {self.warnings}",
        ]
        if total:
            lines.append(f"Success Rate: {self.passed / total * 100:.2f}%")
        lines.append("")

        failed_flows = [r for r in self.flows if not r.passed]
        if failed_flows:
            lines.append("Failed flows:")
            lines.extend(f"  - {r.flow}: {', '.join(r.errors)}" for r in failed_flows)
            lines.append("")
        flow_warnings = [w for r in self.flows for w in r.warnings][:MAX_LISTED_WARNINGS]
        if flow_warnings:
            lines.append("Warnings:")
            lines.extend(f"  - {w}" for w in flow_warnings)
            lines.append("")
        return lines

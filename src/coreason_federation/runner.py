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
Orchestrates OAuth, SAML and security validation and provides the `coreason-federation-validate`
command.
"""

import argparse
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import anyio
import httpx
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from coreason_federation.config import HarnessConfig
from coreason_federation.crypto import CryptoPosture
from coreason_federation.flow_validator import OAuthFlowValidator, SamlFlowValidator
from coreason_federation.models import ValidationResult
from coreason_federation.report import ValidationReport
from coreason_federation.security_harness import SecurityValidator
from coreason_federation.simulator import FederationSimulator
from coreason_federation.utils.logger import logger

DEFAULT_REPORT_PATH = "validation-report.json"


class ValidationRunner:
    """
    Runs every validation the configuration allows and merges the results into one report.

    OAuth flows need `client_id`, `client_secret` and `redirect_uri`; SAML flows need
    `environment_id`. Missing settings skip the corresponding flows. Security probes always run.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: HarnessConfig,
        posture: CryptoPosture | None = None,
    ) -> None:
        self.client = client
        self.config = config
        self.posture = posture

    async def run_oauth_validations(self) -> list[ValidationResult]:
        if not (self.config.client_id and self.config.client_secret and self.config.redirect_uri):
            logger.warning("OAuth credentials incomplete, skipping OAuth flow validation")
            return []
        logger.info("Starting OAuth 2.0 flow validation")
        return await OAuthFlowValidator(self.client, self.config).run_all()

    async def run_saml_validations(self) -> list[ValidationResult]:
        if not self.config.environment_id and not self.config.sp_environment_id:
            logger.warning("SAML environment not provided, skipping SAML flow validation")
            return []
        logger.info("Starting SAML 2.0 flow validation")
        return await SamlFlowValidator(self.client, self.config).run_all()

    async def run_security_validations(self) -> ValidationReport:
        logger.info("Starting security validation")
        validator = SecurityValidator(self.client, self.config, self.posture)
        await validator.run_all()
        return validator.report()

    async def run(self) -> ValidationReport:
        """
        Flows first, security last: the security run ends with the rate-limit burst.
        """
        flows = [*await self.run_oauth_validations(), *await self.run_saml_validations()]
        report = ValidationReport(flows=tuple(flows)).merge(await self.run_security_validations())
        logger.info(f"Validation finished: {report.passed} passed, {report.failed} failed")
        return report


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="coreason-federation-validate",
        description="Validate an OAuth 2.0 / SAML 2.0 deployment and probe it for known attack classes.",
    )
    parser.add_argument("--simulate", action="store_true", help="Run against a seeded in-process simulator")
    parser.add_argument("--base-url", help="Root URL of the system under test")
    parser.add_argument("--timeout", type=float, default=10.0, help="Per-request timeout in seconds")
    parser.add_argument("--client-id", help="Confidential OAuth client")
    parser.add_argument("--client-secret", help="Secret of --client-id (prefer COREASON_HARNESS_CLIENT_SECRET)")
    parser.add_argument("--redirect-uri", help="A redirect URI registered for the clients")
    parser.add_argument("--public-client-id", help="Public OAuth client used for PKCE")
    parser.add_argument("--environment-id", help="SAML IdP environment")
    parser.add_argument("--sp-environment-id", help="SAML SP environment")
    parser.add_argument("--rate-limit-endpoint", help="Path targeted by the rate-limit probe")
    parser.add_argument("--rate-limit-requests", type=int, help="Burst size of the rate-limit probe")
    parser.add_argument("--max-concurrency", type=int, help="Upper bound on in-flight probe requests")
    parser.add_argument("--output", default=DEFAULT_REPORT_PATH, help="Path of the JSON report")
    return parser


def harness_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Only options given on the command line, so that environment settings fill in the rest."""
    options = {
        "base_url": args.base_url,
        "client_id": args.client_id,
        "client_secret": args.client_secret,
        "redirect_uri": args.redirect_uri,
        "public_client_id": args.public_client_id,
        "environment_id": args.environment_id,
        "sp_environment_id": args.sp_environment_id,
        "rate_limit_endpoint": args.rate_limit_endpoint,
        "rate_limit_probe_requests": args.rate_limit_requests,
        "max_concurrency": args.max_concurrency,
    }
    return {key: value for key, value in options.items() if value is not None}


async def run_validation(args: argparse.Namespace) -> ValidationReport:
    overrides = harness_overrides(args)
    if args.simulate:
        overrides.pop("base_url", None)
        async with FederationSimulator.seeded() as simulator:
            config = simulator.harness_config(http_timeout=args.timeout, **overrides)
            runner = ValidationRunner(simulator.client(), config, simulator.crypto_posture())
            return await runner.run()

    config = HarnessConfig(http_timeout=args.timeout, **overrides)
    async with httpx.AsyncClient(base_url=config.base_url, timeout=config.http_timeout) as client:
        HTTPXClientInstrumentor().instrument_client(client)
        return await ValidationRunner(client, config).run()


def main(argv: Sequence[str] | None = None) -> int:
    """
    Entry point. Prints the text report, writes the JSON report, and returns 1 when any critical
    or high severity security test failed.
    """
    args = build_parser().parse_args(argv)
    report = anyio.run(run_validation, args)

    print(report.to_text())
    output = Path(args.output)
    output.write_text(report.to_json(), encoding="utf-8")
    logger.info(f"Report saved to {output}")

    if report.has_blocking_failures():
        logger.error("Critical or high severity security issues found")
        return 1
    return 0

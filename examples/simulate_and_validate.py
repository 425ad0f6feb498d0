# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_federation

import contextlib

import anyio

from coreason_federation.flow_validator import OAuthFlowValidator, SamlFlowValidator
from coreason_federation.report import ValidationReport
from coreason_federation.security_harness import SecurityValidator
from coreason_federation.simulator import FederationSimulator


async def main() -> None:
    """
    Runs the OAuth and SAML flow validators and the security harness against an in-process simulator.

    Includes:
    - A seeded simulator (confidential client, public PKCE client, IdP and SP environments)
    - Rate limiting on /oauth/token, exercised by the last security probe
    - OpenTelemetry instrumentation on every client the simulator hands out
    """
    print(">>> Starting federation simulator")

    async with FederationSimulator.seeded() as simulator:
        config = simulator.harness_config()
        print(f">>> Seeded client {config.client_id} and environment {config.environment_id}")

        oauth = await OAuthFlowValidator(simulator.client(), config).run_all()
        saml = await SamlFlowValidator(simulator.client(), config).run_all()
        print(f">>> Flow validation finished: {sum(r.passed for r in oauth + saml)}/{len(oauth + saml)} passed")

        validator = SecurityValidator(simulator.client(), config, simulator.crypto_posture())
        await validator.run_all()

        report = ValidationReport(flows=tuple(oauth + saml)).merge(validator.report())
        print(report.to_text())
        print(f">>> Blocking failures: {report.has_blocking_failures()}")


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        anyio.run(main)

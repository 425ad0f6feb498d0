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
OAuth 2.0 and SAML 2.0 protocol simulation with an adversarial validation harness.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .config import FederationConfig, HarnessConfig
from .endpoints import FederationEndpoints
from .exceptions import CoreasonFederationError, OAuthError, SamlParseError
from .flow_validator import OAuthFlowValidator, SamlFlowValidator
from .oauth_engine import OAuthGrantEngine
from .report import ValidationReport
from .runner import ValidationRunner
from .saml_builder import SamlAssertionBuilder
from .saml_parser import parse, validate_timing
from .security_harness import SecurityValidator
from .simulator import FederationSimulator
from .token_codec import TokenCodec
from .transport import FederationTransport

__all__ = [
    "CoreasonFederationError",
    "FederationConfig",
    "FederationEndpoints",
    "FederationSimulator",
    "FederationTransport",
    "HarnessConfig",
    "OAuthError",
    "OAuthFlowValidator",
    "OAuthGrantEngine",
    "SamlAssertionBuilder",
    "SamlFlowValidator",
    "SamlParseError",
    "SecurityValidator",
    "TokenCodec",
    "ValidationReport",
    "ValidationRunner",
    "parse",
    "validate_timing",
]

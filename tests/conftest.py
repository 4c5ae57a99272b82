"""Pytest configuration and fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for eks_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from eks_controller.gateway import EksGateway  # noqa: E402
from eks_controller.models import OidcIdentityProviderConfig  # noqa: E402
from eks_controller.wait import Backoff  # noqa: E402
from eks_mock import MockEksClient  # noqa: E402

CLUSTER = "dev-cluster"


@pytest.fixture
def fast_backoff() -> Backoff:
    """Backoff with millisecond delays so polling tests finish immediately."""
    return Backoff(
        initial_seconds=0.001,
        factor=1.0,
        jitter=0.0,
        steps=20,
        cap_seconds=0.001,
        max_elapsed_seconds=5.0,
    )


@pytest.fixture
def eks_client() -> MockEksClient:
    """Mock EKS client with one registered cluster."""
    client = MockEksClient()
    client.state.add_cluster(CLUSTER)
    return client


@pytest.fixture
def gateway(eks_client: MockEksClient) -> EksGateway:
    return EksGateway(eks_client)


@pytest.fixture
def desired() -> OidcIdentityProviderConfig:
    return OidcIdentityProviderConfig.model_validate(
        {
            "identityProviderConfigName": "corp-sso",
            "clientId": "abc",
            "issuerUrl": "https://issuer.example.com",
            "groupsClaim": "groups",
            "usernameClaim": "email",
            "tags": {},
        }
    )

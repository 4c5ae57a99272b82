"""EKS API mock for integration testing.

Provides an in-memory implementation of the EKS identity provider API so
the reconciler can be exercised end to end without AWS connectivity.

Key Features:
- In-memory clusters and OIDC identity provider configs
- Asynchronous CREATING → ACTIVE and DELETING → gone transitions driven by reads
- botocore ClientError injection per API method
- Call recording for ordering and call-count assertions

Usage:
    from eks_mock import MockEksClient, MockEksState
    from eks_controller.gateway import EksGateway

    client = MockEksClient()
    client.state.add_cluster("dev")
    gateway = EksGateway(client)
"""

from .client import MockEksClient, make_client_error
from .context import MockEksContext
from .state import MockEksState, MockIdentityProviderConfig

__all__ = [
    "MockEksClient",
    "MockEksContext",
    "MockEksState",
    "MockIdentityProviderConfig",
    "make_client_error",
]

"""Remote gateway over the EKS identity provider API.

The boto3 client is synchronous; every call is dispatched to the default
executor so that an awaiting pass can be cancelled and passes for other
clusters keep running on the event loop.

The gateway holds no state besides the client and never caches remote
state, so one instance can be shared across concurrent passes.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Protocol

import boto3
from botocore.config import Config as BotoConfig

from .models import OidcIdentityProvider, OidcIdentityProviderConfig

logger = logging.getLogger(__name__)


class RemoteGateway(Protocol):
    """Remote operations used by reconciliation procedures."""

    async def list_identity_provider_configs(
        self, cluster_name: str
    ) -> list[dict[str, str]]: ...

    async def describe_identity_provider_config(
        self, cluster_name: str, config_name: str, config_type: str
    ) -> OidcIdentityProvider: ...

    async def associate_identity_provider_config(
        self, cluster_name: str, oidc: OidcIdentityProviderConfig
    ) -> None: ...

    async def disassociate_identity_provider_config(
        self, cluster_name: str, config_name: str, config_type: str
    ) -> None: ...

    async def tag_resource(self, resource_arn: str, tags: dict[str, str]) -> None: ...

    async def untag_resource(self, resource_arn: str, tag_keys: list[str]) -> None: ...


class EksGateway:
    """RemoteGateway backed by a boto3 EKS client."""

    def __init__(self, client: Any) -> None:
        self._client = client

    async def _call(self, method: str, **kwargs: Any) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        operation = getattr(self._client, method)
        logger.debug("EKS API call", extra={"api_method": method})
        return await loop.run_in_executor(None, functools.partial(operation, **kwargs))

    async def list_identity_provider_configs(self, cluster_name: str) -> list[dict[str, str]]:
        configs: list[dict[str, str]] = []
        kwargs: dict[str, Any] = {"clusterName": cluster_name}
        while True:
            response = await self._call("list_identity_provider_configs", **kwargs)
            configs.extend(response.get("identityProviderConfigs", []))
            next_token = response.get("nextToken")
            if not next_token:
                return configs
            kwargs["nextToken"] = next_token

    async def describe_identity_provider_config(
        self, cluster_name: str, config_name: str, config_type: str
    ) -> OidcIdentityProvider:
        response = await self._call(
            "describe_identity_provider_config",
            clusterName=cluster_name,
            identityProviderConfig={"type": config_type, "name": config_name},
        )
        return OidcIdentityProvider.model_validate(response["identityProvider"]["oidc"])

    async def associate_identity_provider_config(
        self, cluster_name: str, oidc: OidcIdentityProviderConfig
    ) -> None:
        kwargs: dict[str, Any] = {
            "clusterName": cluster_name,
            "oidc": oidc.to_associate_request(),
        }
        if oidc.tags:
            kwargs["tags"] = dict(oidc.tags)
        await self._call("associate_identity_provider_config", **kwargs)

    async def disassociate_identity_provider_config(
        self, cluster_name: str, config_name: str, config_type: str
    ) -> None:
        await self._call(
            "disassociate_identity_provider_config",
            clusterName=cluster_name,
            identityProviderConfig={"type": config_type, "name": config_name},
        )

    async def tag_resource(self, resource_arn: str, tags: dict[str, str]) -> None:
        await self._call("tag_resource", resourceArn=resource_arn, tags=tags)

    async def untag_resource(self, resource_arn: str, tag_keys: list[str]) -> None:
        await self._call("untag_resource", resourceArn=resource_arn, tagKeys=tag_keys)


def create_eks_gateway(
    region: str,
    connect_timeout_seconds: int = 10,
    read_timeout_seconds: int = 30,
) -> EksGateway:
    """Create a gateway using boto3's default credential chain.

    SDK-level retries are limited to a single standard-mode retry; the
    reconciler and the wait harness own retry policy.
    """
    boto_config = BotoConfig(
        region_name=region,
        connect_timeout=connect_timeout_seconds,
        read_timeout=read_timeout_seconds,
        retries={"mode": "standard", "max_attempts": 2},
    )
    client = boto3.client("eks", config=boto_config)
    logger.info("Created EKS client", extra={"region": region})
    return EksGateway(client)

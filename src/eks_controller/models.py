"""Pydantic models for cluster specs and observed identity-provider state.

These models provide:
1. Type-safe YAML parsing of the desired configuration
2. Parsing of EKS DescribeIdentityProviderConfig responses
3. Comparison of the immutable scalar fields between the two
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from .config import MAX_CLUSTER_NAME_LENGTH


class IdentityProviderStatus(str, Enum):
    """Lifecycle status reported by EKS for an identity provider config."""

    CREATING = "CREATING"
    ACTIVE = "ACTIVE"
    DELETING = "DELETING"
    FAILED = "FAILED"


# Fields fixed at association time; EKS has no update call for them
IMMUTABLE_FIELDS = (
    "identity_provider_config_name",
    "client_id",
    "issuer_url",
    "groups_claim",
    "groups_prefix",
    "username_claim",
    "username_prefix",
    "required_claims",
)


class _OidcFields(BaseModel):
    """Scalar fields shared by desired and observed configurations."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    identity_provider_config_name: Annotated[
        str, Field(min_length=1, max_length=100, alias="identityProviderConfigName")
    ]
    client_id: Annotated[str, Field(min_length=1, alias="clientId")]
    issuer_url: str = Field(alias="issuerUrl")
    groups_claim: str | None = Field(None, alias="groupsClaim")
    groups_prefix: str | None = Field(None, alias="groupsPrefix")
    username_claim: str | None = Field(None, alias="usernameClaim")
    username_prefix: str | None = Field(None, alias="usernamePrefix")
    required_claims: dict[str, str] = Field(default_factory=dict, alias="requiredClaims")
    tags: dict[str, str] = Field(default_factory=dict)


class OidcIdentityProviderConfig(_OidcFields):
    """Desired OIDC identity provider association for a cluster."""

    @field_validator("issuer_url")
    @classmethod
    def validate_issuer_url(cls, v: str) -> str:
        if not v.startswith("https://"):
            raise ValueError("issuerUrl must use the https scheme")
        return v

    def to_associate_request(self) -> dict[str, Any]:
        """Build the ``oidc`` block of an AssociateIdentityProviderConfig call."""
        request: dict[str, Any] = {
            "identityProviderConfigName": self.identity_provider_config_name,
            "issuerUrl": self.issuer_url,
            "clientId": self.client_id,
        }
        optional = {
            "usernameClaim": self.username_claim,
            "usernamePrefix": self.username_prefix,
            "groupsClaim": self.groups_claim,
            "groupsPrefix": self.groups_prefix,
        }
        request.update({key: value for key, value in optional.items() if value is not None})
        if self.required_claims:
            request["requiredClaims"] = dict(self.required_claims)
        return request


class OidcIdentityProvider(_OidcFields):
    """Observed OIDC identity provider config as described by EKS."""

    identity_provider_config_arn: str = Field(alias="identityProviderConfigArn")
    status: IdentityProviderStatus
    cluster_name: str | None = Field(None, alias="clusterName")

    @property
    def is_active(self) -> bool:
        return self.status == IdentityProviderStatus.ACTIVE


def scalar_differences(
    current: OidcIdentityProvider, desired: OidcIdentityProviderConfig
) -> list[str]:
    """Return the aliases of immutable fields whose values differ, sorted."""
    differing = []
    for name in IMMUTABLE_FIELDS:
        if getattr(current, name) != getattr(desired, name):
            differing.append(_OidcFields.model_fields[name].alias or name)
    return sorted(differing)


class ClusterSpec(BaseModel):
    """Desired state for one managed cluster.

    ``oidcIdentityProviderConfig`` absent means no identity provider is
    requested and any existing association is removed.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    cluster_name: Annotated[
        str, Field(min_length=1, max_length=MAX_CLUSTER_NAME_LENGTH, alias="clusterName")
    ]
    oidc_identity_provider_config: OidcIdentityProviderConfig | None = Field(
        None, alias="oidcIdentityProviderConfig"
    )

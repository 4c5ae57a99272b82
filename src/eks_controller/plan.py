"""Reconciliation plan for a cluster's OIDC identity provider.

A Plan bundles the state observed and declared for one pass. The Differ
(``plan_procedures``) turns it into an ordered list of Procedures, each an
idempotent unit of remote work. Procedures only read the Plan; the only
side effects they have are remote calls through the gateway.

Decision table:

    current              desired                 procedures
    -------------------  ----------------------  ---------------------------------
    absent               absent                  []
    absent               present                 [Associate, WaitAssociated]
    ACTIVE               absent                  [Disassociate]
    not ACTIVE           absent                  [] (deferred)
    any                  present, scalars differ ImmutableFieldError
    CREATING             present                 [WaitAssociated, tag procedures]
    DELETING / FAILED    present                 [] (deferred)
    ACTIVE               present                 [RemoveTags?, UpdateTags?]
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from .errors import (
    IdentityProviderFailedError,
    ImmutableFieldError,
    InvalidPlanError,
    ProcedureError,
)
from .gateway import RemoteGateway
from .models import (
    IdentityProviderStatus,
    OidcIdentityProvider,
    OidcIdentityProviderConfig,
    scalar_differences,
)
from .wait import Backoff, wait_for_with_retryable

logger = logging.getLogger(__name__)

OIDC_TYPE = "oidc"

# Read errors that mean "association not visible yet" while waiting
WAIT_RETRYABLE_CODES = ("ResourceNotFoundException",)


@dataclass(frozen=True)
class Plan:
    """State shared by every procedure generated for one pass."""

    cluster_name: str
    desired: OidcIdentityProviderConfig | None
    current: OidcIdentityProvider | None
    gateway: RemoteGateway = field(repr=False)
    backoff: Backoff = field(default_factory=Backoff)

    def tags_to_remove(self) -> list[str]:
        """Current tag keys that the desired configuration no longer has."""
        if self.current is None:
            return []
        desired_tags = self.desired.tags if self.desired is not None else {}
        return sorted(key for key in self.current.tags if key not in desired_tags)

    def tags_to_update(self) -> dict[str, str]:
        """Desired tags that are missing remotely or carry a different value."""
        if self.desired is None:
            return {}
        current_tags = self.current.tags if self.current is not None else {}
        return {
            key: value
            for key, value in sorted(self.desired.tags.items())
            if current_tags.get(key) != value
        }

    def is_deferred(self) -> bool:
        """True when the remote side is mid-transition and the pass must wait."""
        if self.current is None or self.current.is_active:
            return False
        if self.desired is None:
            return True
        return self.current.status != IdentityProviderStatus.CREATING


class Procedure(ABC):
    """A named, idempotent unit of remote work bound to a Plan."""

    def __init__(self, plan: Plan) -> None:
        self._plan = plan

    @property
    @abstractmethod
    def name(self) -> str:
        """Stable identifier for logs."""

    @abstractmethod
    async def do(self) -> None:
        """Perform the remote side effect.

        Raises:
            ProcedureError: If the remote operation fails.
        """

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} cluster={self._plan.cluster_name}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Procedure):
            return NotImplemented
        return type(self) is type(other) and self._plan == other._plan

    def __hash__(self) -> int:
        return hash((type(self), self._plan.cluster_name))


class AssociateIdentityProviderProcedure(Procedure):
    """Request association of the desired OIDC config (asynchronous on EKS)."""

    @property
    def name(self) -> str:
        return "associate_identity_provider"

    async def do(self) -> None:
        desired = self._plan.desired
        if desired is None:
            raise InvalidPlanError(self.name, "desired")
        try:
            await self._plan.gateway.associate_identity_provider_config(
                self._plan.cluster_name, desired
            )
        except Exception as e:
            raise ProcedureError("failed associating identity provider", e) from e


class WaitIdentityProviderAssociatedProcedure(Procedure):
    """Poll until the association is reported ACTIVE."""

    @property
    def name(self) -> str:
        return "wait_identity_provider_association"

    def _config_name(self) -> str:
        if self._plan.desired is not None:
            return self._plan.desired.identity_provider_config_name
        if self._plan.current is None:
            raise InvalidPlanError(self.name, "desired or current")
        return self._plan.current.identity_provider_config_name

    async def do(self) -> None:
        config_name = self._config_name()

        async def is_active() -> bool:
            current = await self._plan.gateway.describe_identity_provider_config(
                self._plan.cluster_name, config_name, OIDC_TYPE
            )
            if current.status == IdentityProviderStatus.FAILED:
                raise IdentityProviderFailedError(self._plan.cluster_name, config_name)
            return current.is_active

        try:
            await wait_for_with_retryable(
                self._plan.backoff,
                is_active,
                retryable_codes=WAIT_RETRYABLE_CODES,
                operation=self.name,
            )
        except Exception as e:
            raise ProcedureError(
                "failed waiting for identity provider association to be ready", e
            ) from e


class DisassociateIdentityProviderProcedure(Procedure):
    """Request removal of the current association (asynchronous on EKS)."""

    @property
    def name(self) -> str:
        return "dissociate_identity_provider"

    async def do(self) -> None:
        current = self._plan.current
        if current is None:
            raise InvalidPlanError(self.name, "current")
        try:
            await self._plan.gateway.disassociate_identity_provider_config(
                self._plan.cluster_name, current.identity_provider_config_name, OIDC_TYPE
            )
        except Exception as e:
            raise ProcedureError("failed disassociating identity provider config", e) from e


class UpdateIdentityProviderTagsProcedure(Procedure):
    """Set desired tags whose key is new or whose value changed."""

    @property
    def name(self) -> str:
        return "update_identity_provider_tags"

    @property
    def tags(self) -> dict[str, str]:
        return self._plan.tags_to_update()

    async def do(self) -> None:
        current = self._plan.current
        if current is None:
            raise InvalidPlanError(self.name, "current")
        try:
            await self._plan.gateway.tag_resource(current.identity_provider_config_arn, self.tags)
        except Exception as e:
            raise ProcedureError("failed updating identity provider tags", e) from e


class RemoveIdentityProviderTagsProcedure(Procedure):
    """Remove current tag keys absent from the desired configuration."""

    @property
    def name(self) -> str:
        return "remove_identity_provider_tags"

    @property
    def tag_keys(self) -> list[str]:
        return self._plan.tags_to_remove()

    async def do(self) -> None:
        current = self._plan.current
        if current is None:
            raise InvalidPlanError(self.name, "current")
        try:
            await self._plan.gateway.untag_resource(
                current.identity_provider_config_arn, self.tag_keys
            )
        except Exception as e:
            raise ProcedureError("failed untagging identity provider", e) from e


def _tag_procedures(plan: Plan) -> list[Procedure]:
    # Removal first keeps the remote tag count under its limit during the pass
    procedures: list[Procedure] = []
    if plan.tags_to_remove():
        procedures.append(RemoveIdentityProviderTagsProcedure(plan))
    if plan.tags_to_update():
        procedures.append(UpdateIdentityProviderTagsProcedure(plan))
    return procedures


def plan_procedures(plan: Plan) -> list[Procedure]:
    """Compute the ordered procedures that move current state toward desired.

    Pure with respect to the plan: the same plan always yields the same list
    and nothing is fetched from the remote side.

    Raises:
        ImmutableFieldError: If desired scalar fields differ from the existing
            association's.
    """
    current, desired = plan.current, plan.desired

    if current is None:
        if desired is None:
            return []
        return [
            AssociateIdentityProviderProcedure(plan),
            WaitIdentityProviderAssociatedProcedure(plan),
        ]

    if desired is None:
        if current.is_active:
            return [DisassociateIdentityProviderProcedure(plan)]
        return []

    differing = scalar_differences(current, desired)
    if differing:
        raise ImmutableFieldError(plan.cluster_name, differing)

    if current.status == IdentityProviderStatus.CREATING:
        return [WaitIdentityProviderAssociatedProcedure(plan), *_tag_procedures(plan)]

    if not current.is_active:
        return []

    return _tag_procedures(plan)

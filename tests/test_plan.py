"""Tests for the plan module: the Differ decision table and the procedures."""

from __future__ import annotations

from typing import Any

import pytest
from conftest import CLUSTER
from eks_mock import MockEksClient, MockIdentityProviderConfig

from eks_controller.errors import (
    IdentityProviderFailedError,
    ImmutableFieldError,
    InvalidPlanError,
    ProcedureError,
    WaitTimeoutError,
)
from eks_controller.gateway import EksGateway
from eks_controller.models import OidcIdentityProvider, OidcIdentityProviderConfig
from eks_controller.plan import (
    AssociateIdentityProviderProcedure,
    DisassociateIdentityProviderProcedure,
    Plan,
    RemoveIdentityProviderTagsProcedure,
    UpdateIdentityProviderTagsProcedure,
    WaitIdentityProviderAssociatedProcedure,
    plan_procedures,
)
from eks_controller.wait import Backoff

ARN = "arn:aws:eks:eu-west-1:123456789012:identityproviderconfig/dev-cluster/oidc/corp-sso/1"


def make_current(status: str = "ACTIVE", **overrides: Any) -> OidcIdentityProvider:
    data: dict[str, Any] = {
        "identityProviderConfigName": "corp-sso",
        "identityProviderConfigArn": ARN,
        "clientId": "abc",
        "issuerUrl": "https://issuer.example.com",
        "groupsClaim": "groups",
        "usernameClaim": "email",
        "status": status,
        "tags": {},
    }
    data.update(overrides)
    return OidcIdentityProvider.model_validate(data)


def make_desired(**overrides: Any) -> OidcIdentityProviderConfig:
    data: dict[str, Any] = {
        "identityProviderConfigName": "corp-sso",
        "clientId": "abc",
        "issuerUrl": "https://issuer.example.com",
        "groupsClaim": "groups",
        "usernameClaim": "email",
        "tags": {},
    }
    data.update(overrides)
    return OidcIdentityProviderConfig.model_validate(data)


def make_plan(
    current: OidcIdentityProvider | None,
    desired: OidcIdentityProviderConfig | None,
    gateway: Any = None,
    backoff: Backoff | None = None,
) -> Plan:
    return Plan(
        cluster_name=CLUSTER,
        desired=desired,
        current=current,
        gateway=gateway,
        backoff=backoff or Backoff(),
    )


def names(procedures: list[Any]) -> list[str]:
    return [p.name for p in procedures]


class TestDecisionTable:
    """Tests for plan_procedures."""

    def test_absent_absent_is_noop(self) -> None:
        assert plan_procedures(make_plan(None, None)) == []

    def test_absent_present_associates_then_waits(self) -> None:
        procedures = plan_procedures(make_plan(None, make_desired()))

        assert [type(p) for p in procedures] == [
            AssociateIdentityProviderProcedure,
            WaitIdentityProviderAssociatedProcedure,
        ]
        assert names(procedures) == [
            "associate_identity_provider",
            "wait_identity_provider_association",
        ]

    def test_active_absent_disassociates(self) -> None:
        procedures = plan_procedures(make_plan(make_current("ACTIVE"), None))

        assert [type(p) for p in procedures] == [DisassociateIdentityProviderProcedure]

    @pytest.mark.parametrize("status", ["CREATING", "DELETING", "FAILED"])
    def test_not_active_absent_defers(self, status: str) -> None:
        plan = make_plan(make_current(status), None)

        assert plan_procedures(plan) == []
        assert plan.is_deferred() is True

    def test_equal_configs_is_noop(self) -> None:
        plan = make_plan(make_current(tags={"a": "1"}), make_desired(tags={"a": "1"}))

        assert plan_procedures(plan) == []
        assert plan.is_deferred() is False

    def test_added_tag_updates_only_new_key(self) -> None:
        plan = make_plan(make_current(tags={"a": "1"}), make_desired(tags={"a": "1", "b": "2"}))

        procedures = plan_procedures(plan)

        assert [type(p) for p in procedures] == [UpdateIdentityProviderTagsProcedure]
        assert procedures[0].tags == {"b": "2"}

    def test_dropped_tag_removes_only_that_key(self) -> None:
        plan = make_plan(make_current(tags={"a": "1", "c": "3"}), make_desired(tags={"a": "1"}))

        procedures = plan_procedures(plan)

        assert [type(p) for p in procedures] == [RemoveIdentityProviderTagsProcedure]
        assert procedures[0].tag_keys == ["c"]

    def test_changed_value_is_updated_not_removed(self) -> None:
        plan = make_plan(make_current(tags={"a": "1"}), make_desired(tags={"a": "2"}))

        procedures = plan_procedures(plan)

        assert [type(p) for p in procedures] == [UpdateIdentityProviderTagsProcedure]
        assert procedures[0].tags == {"a": "2"}

    def test_remove_precedes_update(self) -> None:
        plan = make_plan(
            make_current(tags={"old": "x", "keep": "1"}),
            make_desired(tags={"new": "x", "keep": "1"}),
        )

        procedures = plan_procedures(plan)

        assert names(procedures) == [
            "remove_identity_provider_tags",
            "update_identity_provider_tags",
        ]

    def test_creating_waits_before_tag_changes(self) -> None:
        plan = make_plan(make_current("CREATING"), make_desired(tags={"team": "platform"}))

        assert names(plan_procedures(plan)) == [
            "wait_identity_provider_association",
            "update_identity_provider_tags",
        ]
        assert plan.is_deferred() is False

    @pytest.mark.parametrize("status", ["DELETING", "FAILED"])
    def test_transitional_with_desired_defers(self, status: str) -> None:
        plan = make_plan(make_current(status), make_desired(tags={"team": "platform"}))

        assert plan_procedures(plan) == []
        assert plan.is_deferred() is True

    @pytest.mark.parametrize(
        ("override", "field"),
        [
            ({"clientId": "other"}, "clientId"),
            ({"issuerUrl": "https://other.example.com"}, "issuerUrl"),
            ({"groupsPrefix": "oidc:"}, "groupsPrefix"),
            ({"identityProviderConfigName": "other-sso"}, "identityProviderConfigName"),
            ({"requiredClaims": {"aud": "k8s"}}, "requiredClaims"),
        ],
    )
    def test_scalar_drift_is_configuration_error(
        self, override: dict[str, Any], field: str
    ) -> None:
        plan = make_plan(make_current(), make_desired(**override))

        with pytest.raises(ImmutableFieldError) as exc_info:
            plan_procedures(plan)

        assert exc_info.value.fields == [field]
        assert exc_info.value.requeue is False

    def test_scalar_drift_checked_before_status(self) -> None:
        plan = make_plan(make_current("DELETING"), make_desired(clientId="other"))

        with pytest.raises(ImmutableFieldError):
            plan_procedures(plan)

    def test_planning_is_deterministic(self) -> None:
        plan = make_plan(
            make_current(tags={"a": "1", "b": "2", "c": "3"}),
            make_desired(tags={"a": "1", "b": "20", "d": "4"}),
        )

        first = plan_procedures(plan)
        second = plan_procedures(plan)

        assert first == second
        remove, update = first
        assert remove.tag_keys == ["c"]
        assert update.tags == {"b": "20", "d": "4"}


class TestTagSets:
    """Tests for the disjoint removal/update tag sets."""

    @pytest.mark.parametrize(
        ("current_tags", "desired_tags"),
        [
            ({}, {}),
            ({"a": "1"}, {}),
            ({}, {"a": "1"}),
            ({"a": "1", "b": "2"}, {"b": "3", "c": "4"}),
            ({"x": "1", "y": "2", "z": "3"}, {"x": "1", "y": "2", "z": "3"}),
        ],
    )
    def test_sets_cover_exactly_the_changed_keys(
        self, current_tags: dict[str, str], desired_tags: dict[str, str]
    ) -> None:
        plan = make_plan(make_current(tags=current_tags), make_desired(tags=desired_tags))

        removed = set(plan.tags_to_remove())
        updated = set(plan.tags_to_update())
        unchanged = {k for k in current_tags if desired_tags.get(k) == current_tags[k]}

        assert removed.isdisjoint(updated)
        assert removed | updated == (set(current_tags) | set(desired_tags)) - unchanged

    def test_all_current_tags_removed_when_desired_absent(self) -> None:
        plan = make_plan(make_current(tags={"b": "2", "a": "1"}), None)

        assert plan.tags_to_remove() == ["a", "b"]
        assert plan.tags_to_update() == {}


def _seed(client: MockEksClient, status: str = "ACTIVE", tags: dict[str, str] | None = None):
    return client.state.put_config(
        MockIdentityProviderConfig(
            cluster_name=CLUSTER,
            name="corp-sso",
            client_id="abc",
            issuer_url="https://issuer.example.com",
            groups_claim="groups",
            username_claim="email",
            status=status,
            tags=dict(tags or {}),
        )
    )


class TestProcedures:
    """Tests for procedure execution against the mock EKS client."""

    @pytest.mark.asyncio
    async def test_associate_sends_desired_fields(
        self, eks_client: MockEksClient, gateway: EksGateway
    ) -> None:
        desired = make_desired(tags={"team": "platform"}, requiredClaims={"aud": "k8s"})

        await AssociateIdentityProviderProcedure(make_plan(None, desired, gateway)).do()

        assert eks_client.method_calls() == ["associate_identity_provider_config"]
        _, kwargs = eks_client.calls[0]
        assert kwargs["clusterName"] == CLUSTER
        assert kwargs["tags"] == {"team": "platform"}
        assert kwargs["oidc"] == {
            "identityProviderConfigName": "corp-sso",
            "issuerUrl": "https://issuer.example.com",
            "clientId": "abc",
            "usernameClaim": "email",
            "groupsClaim": "groups",
            "requiredClaims": {"aud": "k8s"},
        }

    @pytest.mark.asyncio
    async def test_associate_omits_empty_tags(
        self, eks_client: MockEksClient, gateway: EksGateway
    ) -> None:
        await AssociateIdentityProviderProcedure(make_plan(None, make_desired(), gateway)).do()

        _, kwargs = eks_client.calls[0]
        assert kwargs["tags"] is None

    @pytest.mark.asyncio
    async def test_associate_failure_is_wrapped(
        self, eks_client: MockEksClient, gateway: EksGateway
    ) -> None:
        eks_client.fail("associate_identity_provider_config", code="InvalidParameterException",
                        status=400)

        with pytest.raises(ProcedureError) as exc_info:
            await AssociateIdentityProviderProcedure(make_plan(None, make_desired(), gateway)).do()

        error = exc_info.value
        assert error.operation == "failed associating identity provider"
        assert error.code == "InvalidParameterException"
        assert str(error).startswith("failed associating identity provider: ")
        assert error.requeue is False
        assert eks_client.call_count("associate_identity_provider_config") == 1

    @pytest.mark.asyncio
    async def test_mutation_is_not_retried_internally(
        self, eks_client: MockEksClient, gateway: EksGateway
    ) -> None:
        _seed(eks_client)
        eks_client.fail("disassociate_identity_provider_config", code="ServerException")
        plan = make_plan(make_current(), None, gateway)

        with pytest.raises(ProcedureError) as exc_info:
            await DisassociateIdentityProviderProcedure(plan).do()

        assert exc_info.value.requeue is True
        assert eks_client.call_count("disassociate_identity_provider_config") == 1

    @pytest.mark.asyncio
    async def test_wait_polls_until_active(
        self, eks_client: MockEksClient, gateway: EksGateway, fast_backoff: Backoff
    ) -> None:
        config = _seed(eks_client, status="CREATING")
        config.reads_until_transition = 3

        plan = make_plan(None, make_desired(), gateway, fast_backoff)
        await WaitIdentityProviderAssociatedProcedure(plan).do()

        assert eks_client.call_count("describe_identity_provider_config") == 4
        _, kwargs = eks_client.calls[0]
        assert kwargs["identityProviderConfig"] == {"type": "oidc", "name": "corp-sso"}

    @pytest.mark.asyncio
    async def test_wait_tolerates_not_yet_visible_config(
        self, eks_client: MockEksClient, gateway: EksGateway, fast_backoff: Backoff
    ) -> None:
        eks_client.fail(
            "describe_identity_provider_config", code="ResourceNotFoundException", status=404
        )
        _seed(eks_client, status="ACTIVE")

        plan = make_plan(None, make_desired(), gateway, fast_backoff)
        await WaitIdentityProviderAssociatedProcedure(plan).do()

        assert eks_client.call_count("describe_identity_provider_config") == 2

    @pytest.mark.asyncio
    async def test_wait_stops_on_terminal_read_error(
        self, eks_client: MockEksClient, gateway: EksGateway, fast_backoff: Backoff
    ) -> None:
        _seed(eks_client, status="CREATING")
        eks_client.fail(
            "describe_identity_provider_config", code="AccessDeniedException", status=403
        )

        plan = make_plan(None, make_desired(), gateway, fast_backoff)
        with pytest.raises(ProcedureError) as exc_info:
            await WaitIdentityProviderAssociatedProcedure(plan).do()

        assert exc_info.value.operation == (
            "failed waiting for identity provider association to be ready"
        )
        assert exc_info.value.code == "AccessDeniedException"
        assert eks_client.call_count("describe_identity_provider_config") == 1

    @pytest.mark.asyncio
    async def test_wait_timeout_is_distinguishable(
        self, eks_client: MockEksClient, gateway: EksGateway
    ) -> None:
        config = _seed(eks_client, status="CREATING")
        config.reads_until_transition = 100
        backoff = Backoff(initial_seconds=0.001, factor=1.0, jitter=0.0, steps=3)

        plan = make_plan(None, make_desired(), gateway, backoff)
        with pytest.raises(ProcedureError) as exc_info:
            await WaitIdentityProviderAssociatedProcedure(plan).do()

        assert isinstance(exc_info.value.cause, WaitTimeoutError)
        assert exc_info.value.requeue is True
        assert eks_client.call_count("describe_identity_provider_config") == 3

    @pytest.mark.asyncio
    async def test_wait_fails_fast_on_failed_status(
        self, eks_client: MockEksClient, gateway: EksGateway, fast_backoff: Backoff
    ) -> None:
        _seed(eks_client, status="FAILED")

        plan = make_plan(None, make_desired(), gateway, fast_backoff)
        with pytest.raises(ProcedureError) as exc_info:
            await WaitIdentityProviderAssociatedProcedure(plan).do()

        assert isinstance(exc_info.value.cause, IdentityProviderFailedError)
        assert exc_info.value.requeue is False
        assert "FAILED" in str(exc_info.value)
        assert eks_client.call_count("describe_identity_provider_config") == 1

    @pytest.mark.asyncio
    async def test_disassociate_uses_current_name(
        self, eks_client: MockEksClient, gateway: EksGateway
    ) -> None:
        _seed(eks_client)

        await DisassociateIdentityProviderProcedure(make_plan(make_current(), None, gateway)).do()

        _, kwargs = eks_client.calls[0]
        assert kwargs["identityProviderConfig"] == {"type": "oidc", "name": "corp-sso"}
        assert eks_client.state.get_config(CLUSTER).status == "DELETING"

    @pytest.mark.asyncio
    async def test_tag_procedures_use_current_arn(
        self, eks_client: MockEksClient, gateway: EksGateway
    ) -> None:
        seeded = _seed(eks_client, tags={"a": "1", "old": "x"})
        current = make_current(identityProviderConfigArn=seeded.arn, tags={"a": "1", "old": "x"})
        plan = make_plan(current, make_desired(tags={"a": "1", "new": "y"}), gateway)

        for procedure in plan_procedures(plan):
            await procedure.do()

        assert eks_client.calls[0] == (
            "untag_resource",
            {"resourceArn": seeded.arn, "tagKeys": ["old"]},
        )
        assert eks_client.calls[1] == (
            "tag_resource",
            {"resourceArn": seeded.arn, "tags": {"new": "y"}},
        )
        assert seeded.tags == {"a": "1", "new": "y"}

    @pytest.mark.asyncio
    async def test_untag_failure_is_wrapped(
        self, eks_client: MockEksClient, gateway: EksGateway
    ) -> None:
        plan = make_plan(make_current(tags={"old": "x"}), make_desired(), gateway)

        with pytest.raises(ProcedureError) as exc_info:
            await RemoveIdentityProviderTagsProcedure(plan).do()

        assert exc_info.value.operation == "failed untagging identity provider"
        assert exc_info.value.code == "NotFoundException"

    @pytest.mark.asyncio
    async def test_procedures_do_not_mutate_plan(
        self, eks_client: MockEksClient, gateway: EksGateway
    ) -> None:
        seeded = _seed(eks_client, tags={"old": "x"})
        current = make_current(identityProviderConfigArn=seeded.arn, tags={"old": "x"})
        plan = make_plan(current, make_desired(tags={"new": "y"}), gateway)
        before = (plan.current.model_dump(), plan.desired.model_dump())

        for procedure in plan_procedures(plan):
            await procedure.do()

        assert (plan.current.model_dump(), plan.desired.model_dump()) == before

    @pytest.mark.parametrize(
        ("procedure_class", "desired_tags", "missing"),
        [
            (AssociateIdentityProviderProcedure, None, "desired"),
            (WaitIdentityProviderAssociatedProcedure, None, "desired or current"),
            (DisassociateIdentityProviderProcedure, None, "current"),
            (UpdateIdentityProviderTagsProcedure, {"a": "1"}, "current"),
            (RemoveIdentityProviderTagsProcedure, {}, "current"),
        ],
    )
    @pytest.mark.asyncio
    async def test_procedure_without_required_state_is_rejected(
        self,
        eks_client: MockEksClient,
        gateway: EksGateway,
        procedure_class: type,
        desired_tags: dict[str, str] | None,
        missing: str,
    ) -> None:
        """Test that a procedure refuses to run on a plan lacking its input state."""
        desired = None if desired_tags is None else make_desired(tags=desired_tags)
        plan = make_plan(None, desired, gateway)

        with pytest.raises(InvalidPlanError) as exc_info:
            await procedure_class(plan).do()

        assert exc_info.value.missing == missing
        assert exc_info.value.requeue is False
        assert eks_client.calls == []

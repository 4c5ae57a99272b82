"""Reconciliation of EKS OIDC identity provider associations.

One pass for one cluster:
1. Fetch current state from EKS (list + describe)
2. Obtain desired state from the spec source
3. Build a Plan and ask the Differ for procedures
4. Execute procedures strictly in order, stopping at the first failure
5. Report the result; the caller decides when to run the next pass

No plan checkpoint is kept between passes. Every procedure is idempotent
and guarded by the Differ, so a pass that fails halfway is resumed by the
next pass re-planning from freshly fetched state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from .config import Config
from .errors import ReconcileError, RemoteReadError, error_code
from .gateway import RemoteGateway, create_eks_gateway
from .models import IdentityProviderStatus, OidcIdentityProvider, OidcIdentityProviderConfig
from .plan import OIDC_TYPE, Plan, Procedure, plan_procedures
from .spec_loader import SpecDirectorySource, SpecLoadError
from .wait import Backoff

logger = logging.getLogger(__name__)

# Circuit breaker constants
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300  # 5 minutes


class DesiredStateSource(Protocol):
    """Supplies the declared identity provider configuration per cluster."""

    def clusters(self) -> list[str]: ...

    def desired(self, cluster_name: str) -> OidcIdentityProviderConfig | None: ...


@dataclass
class ReconcileResult:
    """Result of a single reconciliation pass."""

    cluster_name: str
    procedures: list[str] = field(default_factory=list)
    executed: list[str] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    requeue_after_seconds: int = 0
    deferred: bool = False
    dry_run: bool = False
    status: str | None = None
    arn: str | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the pass completed without error."""
        return self.error is None

    @property
    def requeue(self) -> bool:
        """Whether a failed pass is worth retrying without a spec change."""
        if self.error is None:
            return False
        if isinstance(self.error, ReconcileError):
            return self.error.requeue
        return not isinstance(self.error, SpecLoadError)


class IdentityProviderReconciler:
    """Runs passes for the identity provider association of one cluster at a time.

    Holds no per-cluster state; concurrent passes for different clusters
    may share one instance.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        backoff: Backoff | None = None,
        defer_requeue_seconds: int = 30,
    ) -> None:
        self._gateway = gateway
        self._backoff = backoff or Backoff()
        self._defer_requeue_seconds = defer_requeue_seconds

    async def fetch_current(self, cluster_name: str) -> OidcIdentityProvider | None:
        """Describe the cluster's OIDC identity provider config, if any.

        Raises:
            RemoteReadError: If EKS cannot be queried.
        """
        try:
            configs = await self._gateway.list_identity_provider_configs(cluster_name)
        except Exception as e:
            raise RemoteReadError(cluster_name, e) from e

        oidc_configs = [c for c in configs if c.get("type") == OIDC_TYPE]
        if not oidc_configs:
            return None

        # EKS allows a single OIDC provider per cluster
        try:
            return await self._gateway.describe_identity_provider_config(
                cluster_name, oidc_configs[0]["name"], OIDC_TYPE
            )
        except Exception as e:
            if error_code(e) == "ResourceNotFoundException":
                # Removed between list and describe
                return None
            raise RemoteReadError(cluster_name, e) from e

    async def plan(
        self, cluster_name: str, desired: OidcIdentityProviderConfig | None
    ) -> tuple[Plan, list[Procedure]]:
        """Fetch current state and compute the procedures for a pass.

        Raises:
            RemoteReadError: If current state cannot be fetched.
            ImmutableFieldError: If desired scalars conflict with the association.
        """
        current = await self.fetch_current(cluster_name)
        plan = Plan(
            cluster_name=cluster_name,
            desired=desired,
            current=current,
            gateway=self._gateway,
            backoff=self._backoff,
        )
        return plan, plan_procedures(plan)

    async def reconcile(
        self,
        cluster_name: str,
        desired: OidcIdentityProviderConfig | None,
        dry_run: bool = False,
    ) -> ReconcileResult:
        """Run one pass. Errors are reported on the result, never raised.

        ``asyncio.CancelledError`` propagates unchanged.
        """
        result = ReconcileResult(cluster_name=cluster_name, dry_run=dry_run)

        try:
            plan, procedures = await self.plan(cluster_name, desired)
            result.procedures = [p.name for p in procedures]
            self._record_status(result, plan.current)

            if not procedures:
                if plan.is_deferred():
                    result.deferred = True
                    result.requeue_after_seconds = self._defer_requeue_seconds
                    if result.status == IdentityProviderStatus.FAILED.value:
                        logger.warning(
                            "Identity provider FAILED, remove it to allow re-association",
                            extra={"cluster": cluster_name, "arn": result.arn},
                        )
                    else:
                        logger.info(
                            "Identity provider in transition, deferring",
                            extra={"cluster": cluster_name, "status": result.status},
                        )
            elif dry_run:
                logger.info(
                    "Dry run, procedures not executed",
                    extra={"cluster": cluster_name, "procedures": result.procedures},
                )
            else:
                await self._execute(cluster_name, procedures, result)
                await self._refresh_status(cluster_name, result)

        except ReconcileError as e:
            result.error = e
        except Exception as e:
            logger.exception("Unexpected error during reconciliation")
            result.error = e

        result.end_time = datetime.now(UTC)
        return result

    async def _execute(
        self, cluster_name: str, procedures: list[Procedure], result: ReconcileResult
    ) -> None:
        for index, procedure in enumerate(procedures, start=1):
            logger.info(
                "Executing procedure",
                extra={
                    "cluster": cluster_name,
                    "procedure": procedure.name,
                    "step": index,
                    "total_steps": len(procedures),
                },
            )
            try:
                await procedure.do()
            except ReconcileError as e:
                logger.warning(
                    "Procedure failed, aborting pass",
                    extra={
                        "cluster": cluster_name,
                        "procedure": procedure.name,
                        "skipped": [p.name for p in procedures[index:]],
                        "error": str(e),
                    },
                )
                raise
            result.executed.append(procedure.name)

    async def _refresh_status(self, cluster_name: str, result: ReconcileResult) -> None:
        try:
            current = await self.fetch_current(cluster_name)
        except RemoteReadError as e:
            logger.warning(
                "Status refresh failed after successful pass",
                extra={"cluster": cluster_name, "error": str(e)},
            )
            return
        self._record_status(result, current)

    @staticmethod
    def _record_status(result: ReconcileResult, current: OidcIdentityProvider | None) -> None:
        if current is None:
            result.status = None
            result.arn = None
        else:
            result.status = current.status.value
            result.arn = current.identity_provider_config_arn


class Reconciler:
    """Operator entry point: desired state from specs, passes per cluster.

    Implements circuit breaker pattern: after MAX_CONSECUTIVE_FAILURES failed
    cycles, reconciliation pauses for CIRCUIT_BREAKER_RESET_SECONDS.
    """

    def __init__(
        self,
        config: Config,
        gateway: RemoteGateway | None = None,
        spec_source: DesiredStateSource | None = None,
    ) -> None:
        """Initialize reconciler with configuration.

        Args:
            config: Validated operator configuration.
            gateway: Remote gateway; an EKS client for the configured region by default.
            spec_source: Desired-state source; the specs directory by default.
        """
        self._config = config
        self._gateway = gateway or create_eks_gateway(
            config.region,
            connect_timeout_seconds=config.aws_connect_timeout_seconds,
            read_timeout_seconds=config.aws_read_timeout_seconds,
        )
        self._spec_source = spec_source or SpecDirectorySource(config.specs_dir)
        self._identity_providers = IdentityProviderReconciler(
            self._gateway,
            backoff=config.backoff(),
            defer_requeue_seconds=config.defer_requeue_seconds,
        )

        self._shutdown_event = asyncio.Event()

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    async def reconcile(self, cluster_name: str) -> ReconcileResult:
        """Run one pass for a cluster and log its result."""
        try:
            desired = self._spec_source.desired(cluster_name)
        except SpecLoadError as e:
            logger.error("Failed to load spec", extra={"cluster": cluster_name, "error": str(e)})
            result = ReconcileResult(cluster_name=cluster_name, error=e)
            result.end_time = datetime.now(UTC)
            return result

        result = await self._identity_providers.reconcile(
            cluster_name, desired, dry_run=self._config.dry_run
        )
        self._log_result(result)
        return result

    async def reconcile_all(self) -> list[ReconcileResult]:
        """Run one pass for every known cluster, concurrently."""
        clusters = self._spec_source.clusters()
        if not clusters:
            logger.warning(
                "No cluster specs found", extra={"specs_dir": str(self._config.specs_dir)}
            )
            return []
        return list(await asyncio.gather(*(self.reconcile(name) for name in clusters)))

    async def run(self) -> None:
        """Run reconciliation cycles until shutdown.

        A cycle that only has deferred passes shortens the wait to the
        deferred requeue delay.
        """
        logger.info(
            "Starting reconciler",
            extra={
                "region": self._config.region,
                "interval_seconds": self._config.reconcile_interval_seconds,
                "dry_run": self._config.dry_run,
            },
        )

        while not self._shutdown_event.is_set():
            if self._circuit_open_until is not None:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping reconciliation",
                        extra={
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    await self._wait_for_shutdown(
                        min(remaining, self._config.reconcile_interval_seconds)
                    )
                    continue

                logger.info("Circuit breaker reset, resuming reconciliation")
                self._circuit_open_until = None
                self._consecutive_failures = 0

            results = await self.reconcile_all()
            self._update_circuit_breaker(results)
            await self._wait_for_shutdown(self._next_delay(results))

        logger.info("Reconciler shutdown complete")

    def shutdown(self) -> None:
        """Signal the reconciler to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def _wait_for_shutdown(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except TimeoutError:
            pass

    def _next_delay(self, results: list[ReconcileResult]) -> float:
        delay = self._config.reconcile_interval_seconds
        for result in results:
            if result.requeue_after_seconds > 0:
                delay = min(delay, result.requeue_after_seconds)
        return float(delay)

    def _update_circuit_breaker(self, results: list[ReconcileResult]) -> None:
        if any(r.error is not None and r.requeue for r in results):
            self._consecutive_failures += 1
            if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                self._circuit_open_until = datetime.now(UTC) + timedelta(
                    seconds=CIRCUIT_BREAKER_RESET_SECONDS
                )
                logger.error(
                    "Circuit breaker opened after consecutive failures",
                    extra={
                        "consecutive_failures": self._consecutive_failures,
                        "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                    },
                )
        else:
            self._consecutive_failures = 0

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "cluster": result.cluster_name,
            "duration_seconds": result.duration_seconds,
            "procedures": result.procedures,
            "executed": result.executed,
            "status": result.status,
            "requeue_after_seconds": result.requeue_after_seconds,
        }

        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            extra["requeue"] = result.requeue
            logger.error("Reconciliation failed", extra=extra)
        elif result.deferred and result.status == IdentityProviderStatus.FAILED.value:
            logger.warning("Reconciliation blocked by FAILED identity provider", extra=extra)
        elif result.deferred:
            logger.info("Reconciliation deferred", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)

"""
Reconciliation pass for a single ArangoDeployment.

One pass brings the deployment's pods, services and secrets in line with its
spec, observes the cluster, derives the phase and persists the status. A pass
is idempotent and can be re-run from scratch at any point:

0. Fetch the deployment; handle deletion (teardown) and the cleanup finalizer
1. Validate the spec and provision the encryption-key secret
2. Create missing member pods and services, rotate one outdated pod on upgrade
3. Poll cluster health until the topology matches (bounded by the pass deadline)
4. Compute the phase and write the status, retrying on write conflicts only
"""
import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel

from arango_operator.config.logging import get_logger
from arango_operator.config.settings import Settings, settings as default_settings
from arango_operator.core.state_machine import PhaseObservation, compute_phase
from arango_operator.core.topology import check_topology, desired_topology, observed_topology
from arango_operator.exceptions import (
    ConflictError,
    NotFoundError,
    OperatorException,
    RetryTimeoutError,
    TransientError,
    ValidationError,
)
from arango_operator.models.deployment import (
    ArangoDeployment,
    DeploymentPhase,
    DeploymentStatus,
    HealthSummary,
)
from arango_operator.models.health import ClusterHealthReport, VersionInfo
from arango_operator.services import member_pods, secret_provisioner
from arango_operator.services.health_observer import ArangoHealthClient
from arango_operator.utils.retry import retry_until

logger = get_logger(__name__)

CLEANUP_FINALIZER = "database.arangodb.com/cleanup"

REASON_INVALID_SPEC = "InvalidSpec"
REASON_SECRET_FAILED = "SecretProvisioningFailed"
REASON_MEMBERS_FAILED = "MemberProvisioningFailed"
REASON_NOT_CONVERGED = "NotConverged"
REASON_UPGRADING = "Upgrading"
REASON_TEARDOWN_FAILED = "TeardownFailed"


class HealthObservation(BaseModel):
    """Result of the health polling step."""

    converged: bool = False
    health: Optional[HealthSummary] = None
    error: Optional[str] = None


class DeploymentReconciler:
    """
    Runs reconciliation passes.

    Args:
        platform: Platform client (see KubernetesPlatform)
        health_client_factory: Builds a health client (async context manager)
            for a deployment; defaults to ArangoHealthClient.for_deployment
        settings: Operator settings (deadlines, retry intervals, ...)
    """

    def __init__(
        self,
        platform,
        health_client_factory: Optional[Callable[[ArangoDeployment], ArangoHealthClient]] = None,
        settings: Optional[Settings] = None,
    ):
        self.platform = platform
        self.settings = settings or default_settings
        self.health_client_factory = health_client_factory or (
            lambda deployment: ArangoHealthClient.for_deployment(deployment, self.settings)
        )

    async def reconcile(
        self, name: str, namespace: str, timeout: Optional[float] = None
    ) -> Optional[DeploymentStatus]:
        """
        Run one reconciliation pass.

        Args:
            name: Deployment name
            namespace: Deployment namespace
            timeout: Pass deadline in seconds (default: settings.pass_timeout_seconds)

        Returns:
            The persisted status, or None if the deployment no longer exists

        Raises:
            TransientError: If the pass could not complete; the next pass retries
        """
        timeout = timeout if timeout is not None else self.settings.pass_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        try:
            deployment = await self.platform.get_deployment(name, namespace)
        except NotFoundError:
            logger.debug("deployment_gone", deployment=name, namespace=namespace)
            return None

        log = logger.bind(deployment=name, namespace=namespace)

        if deployment.deletion_requested:
            return await self._teardown(deployment)

        if CLEANUP_FINALIZER not in deployment.finalizers:
            deployment = await self.platform.set_deployment_finalizers(
                deployment, deployment.finalizers + [CLEANUP_FINALIZER]
            )
            log.info("finalizer_added", finalizer=CLEANUP_FINALIZER)

        spec = deployment.spec
        observation = PhaseObservation(
            previous_phase=deployment.status.phase,
            desired_image=spec.image,
        )

        # Step 1: validate and provision secrets
        try:
            spec.validate_spec()
        except ValidationError as e:
            log.warning("deployment_spec_invalid", error=e.message)
            observation.validation_error = e.message
            return await self._persist(deployment, observation, None, REASON_INVALID_SPEC, e.message)

        try:
            await self._provision_secrets(deployment, remaining=deadline - loop.time())
        except OperatorException as e:
            if e.retryable:
                raise
            log.error("secret_provisioning_failed", error=e.message)
            observation.fatal_error = e.message
            return await self._persist(deployment, observation, None, REASON_SECRET_FAILED, e.message)

        # Step 2: member pods and services
        try:
            sync = await member_pods.ensure_member_pods(
                self.platform, deployment, self.settings, allow_rotation=self._converged_before(deployment)
            )
            await member_pods.ensure_services(self.platform, deployment, self.settings)
        except OperatorException as e:
            if e.retryable:
                raise
            log.error("member_provisioning_failed", error=e.message)
            observation.fatal_error = e.message
            return await self._persist(
                deployment, observation, deployment.status.health, REASON_MEMBERS_FAILED, e.message
            )
        observation.running_images = frozenset(sync.running_images)

        # Step 3: observe the cluster
        if sync.rotated:
            # A member was just taken down; the cluster cannot be converged this pass.
            health = HealthObservation(health=deployment.status.health)
        else:
            health = await self._observe_health(deployment, remaining=deadline - loop.time())
        observation.topology_satisfied = health.converged
        observation.version_available = health.converged

        # Step 4: phase and status
        reason, message = None, None
        if observation.desired_image and any(i != spec.image for i in observation.running_images):
            reason, message = REASON_UPGRADING, f"Rolling members to image {spec.image}"
        elif not health.converged:
            reason, message = REASON_NOT_CONVERGED, health.error
        return await self._persist(deployment, observation, health.health, reason, message)

    @staticmethod
    def _converged_before(deployment: ArangoDeployment) -> bool:
        """Whether the last persisted status shows the full topology healthy."""
        status = deployment.status
        if status.phase not in (DeploymentPhase.RUNNING, DeploymentPhase.UPGRADING) or status.health is None:
            return False
        health = status.health
        if not deployment.spec.is_cluster:
            return health.version is not None
        observed = (health.agents, health.good_dbservers, health.good_coordinators)
        return observed == tuple(desired_topology(deployment.spec))

    async def _provision_secrets(self, deployment: ArangoDeployment, remaining: float) -> None:
        secret_name = deployment.spec.encryption_key_secret_name
        if not secret_name:
            return

        async def ensure():
            return await secret_provisioner.ensure_encryption_key_secret(
                self.platform, deployment.name, secret_name, deployment.namespace
            )

        await retry_until(
            ensure,
            timeout=max(remaining, 0.0),
            interval=self.settings.retry_interval_seconds,
            max_interval=self.settings.retry_max_interval_seconds,
            operation_name="ensure_encryption_key_secret",
        )

    async def _observe_health(self, deployment: ArangoDeployment, remaining: float) -> HealthObservation:
        """Poll health until the deployment converged or the deadline elapsed."""
        spec = deployment.spec
        last = HealthObservation(health=deployment.status.health)

        async with self.health_client_factory(deployment) as health_client:

            async def poll() -> VersionInfo:
                summary = HealthSummary()
                if spec.is_cluster:
                    report: ClusterHealthReport = await health_client.get_cluster_health()
                    counts = observed_topology(report)
                    summary = HealthSummary(
                        agents=counts.agents,
                        good_dbservers=counts.good_dbservers,
                        good_coordinators=counts.good_coordinators,
                    )
                    last.health = summary
                    check_topology(report, spec)
                version = await health_client.get_version()
                summary.version = version.version
                last.health = summary
                return version

            try:
                await retry_until(
                    poll,
                    timeout=max(remaining, 0.0),
                    interval=self.settings.retry_interval_seconds,
                    max_interval=self.settings.retry_max_interval_seconds,
                    operation_name="wait_for_cluster_health",
                )
            except RetryTimeoutError as e:
                logger.info(
                    "deployment_not_converged",
                    deployment=deployment.name,
                    namespace=deployment.namespace,
                    error=str(e.last_error),
                )
                last.error = str(e.last_error) if e.last_error else e.message
                return last

        last.converged = True
        return last

    async def _teardown(self, deployment: ArangoDeployment) -> Optional[DeploymentStatus]:
        """Delete owned resources; Terminated once no member pod is left."""
        log = logger.bind(deployment=deployment.name, namespace=deployment.namespace)

        observation = PhaseObservation(previous_phase=deployment.status.phase, deletion_requested=True)
        try:
            remaining = await member_pods.delete_member_pods(self.platform, deployment)
        except OperatorException as e:
            if e.retryable:
                raise
            log.error("teardown_failed", error=e.message)
            # Pods could not be removed
            observation.member_pods_remaining = 1
            return await self._persist(
                deployment, observation, deployment.status.health, REASON_TEARDOWN_FAILED, e.message
            )
        observation.member_pods_remaining = remaining

        if remaining:
            log.info("teardown_waiting_for_pods", remaining=remaining)
            return await self._persist(deployment, observation, deployment.status.health, None, None)

        await member_pods.delete_services(self.platform, deployment)
        await secret_provisioner.delete_owned_secrets(self.platform, deployment.name, deployment.namespace)
        status = await self._persist(deployment, observation, deployment.status.health, None, None)

        if CLEANUP_FINALIZER in deployment.finalizers:
            current = await self.platform.get_deployment(deployment.name, deployment.namespace)
            await self.platform.set_deployment_finalizers(
                current, [f for f in current.finalizers if f != CLEANUP_FINALIZER]
            )
            log.info("finalizer_removed", finalizer=CLEANUP_FINALIZER)

        return status

    def _build_status(
        self,
        previous: DeploymentStatus,
        observation: PhaseObservation,
        health: Optional[HealthSummary],
        reason: Optional[str],
        message: Optional[str],
    ) -> DeploymentStatus:
        phase = compute_phase(observation)
        transition_time = previous.last_transition_time
        if phase != previous.phase or transition_time is None:
            transition_time = datetime.now(timezone.utc).replace(microsecond=0)
        if phase == DeploymentPhase.RUNNING:
            reason, message = None, None
        return DeploymentStatus(
            phase=phase,
            reason=reason,
            message=message,
            health=health,
            last_transition_time=transition_time,
        )

    async def _persist(
        self,
        deployment: ArangoDeployment,
        observation: PhaseObservation,
        health: Optional[HealthSummary],
        reason: Optional[str],
        message: Optional[str],
    ) -> Optional[DeploymentStatus]:
        status = self._build_status(deployment.status, observation, health, reason, message)
        if status.phase != deployment.status.phase:
            logger.info(
                "deployment_phase_changed",
                deployment=deployment.name,
                namespace=deployment.namespace,
                from_phase=deployment.status.phase.value if deployment.status.phase else None,
                to_phase=status.phase.value,
                reason=reason,
            )
        return await self.write_status(deployment, status)

    async def write_status(
        self, deployment: ArangoDeployment, status: DeploymentStatus
    ) -> Optional[DeploymentStatus]:
        """
        Persist ``status`` with optimistic concurrency.

        On a conflict the deployment is re-read and the same status is applied to
        the fresh copy; nothing else of the pass is repeated. Writes are skipped
        when the stored status already matches.

        Raises:
            TransientError: If every attempt conflicted
        """
        current = deployment
        max_attempts = self.settings.status_update_max_attempts

        for attempt in range(1, max_attempts + 1):
            if status.same_as(current.status):
                return current.status

            try:
                updated = await self.platform.replace_deployment_status(
                    current.model_copy(update={"status": status})
                )
                if attempt > 1:
                    logger.info(
                        "status_update_succeeded_after_conflict",
                        deployment=deployment.name,
                        namespace=deployment.namespace,
                        attempt=attempt,
                    )
                return updated.status
            except ConflictError:
                logger.warning(
                    "status_update_conflict",
                    deployment=deployment.name,
                    namespace=deployment.namespace,
                    attempt=attempt,
                    max_attempts=max_attempts,
                )
                try:
                    current = await self.platform.get_deployment(deployment.name, deployment.namespace)
                except NotFoundError:
                    return None

        raise TransientError(
            f"Status update of {deployment.namespace}/{deployment.name} conflicted {max_attempts} times",
            details={"deployment": deployment.name, "namespace": deployment.namespace},
        )

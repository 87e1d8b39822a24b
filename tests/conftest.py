"""
Pytest configuration and fixtures.

``FakePlatform`` keeps deployments, secrets, pods and services in memory and
behaves like the API server where the operator depends on it: status writes
are guarded by resourceVersion, names are unique, and a deployment marked for
deletion disappears once its finalizers are gone.
"""
import copy
from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from arango_operator.config.settings import Settings
from arango_operator.exceptions import AlreadyExistsError, ConflictError, NotFoundError
from arango_operator.models.deployment import ArangoDeployment, DeploymentSpec, MemberPod, MemberRole
from arango_operator.models.health import ClusterHealthReport, MemberHealth, ServerRole, ServerStatus, VersionInfo
from arango_operator.services.kubernetes import ROLE_LABEL
from arango_operator.services.reconciler import DeploymentReconciler


class FakePlatform:
    """In-memory stand-in for KubernetesPlatform."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.deployments: Dict[tuple, ArangoDeployment] = {}
        self.secrets: Dict[tuple, dict] = {}
        self.pods: Dict[tuple, dict] = {}
        self.services: Dict[tuple, dict] = {}
        self._resource_version = 100

        # Fault injection
        self.conflicts_remaining = 0
        self.secret_create_error: Optional[Exception] = None
        self.pod_create_error: Optional[Exception] = None
        self.pod_delete_error: Optional[Exception] = None
        self.pods_linger = False

        # Call accounting
        self.status_writes = 0
        self.status_write_attempts = 0
        self.secret_creates = 0
        self.pod_creates: List[str] = []
        self.pod_deletes: List[str] = []

    def _next_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    # ArangoDeployment resources

    def add_deployment(self, deployment: ArangoDeployment) -> ArangoDeployment:
        stored = deployment.model_copy(deep=True, update={"resource_version": self._next_version()})
        if stored.uid is None:
            stored.uid = f"uid-{stored.name}"
        self.deployments[(stored.namespace, stored.name)] = stored
        return stored.model_copy(deep=True)

    def stored(self, name: str, namespace: str = "default") -> ArangoDeployment:
        return self.deployments[(namespace, name)]

    def update_spec(self, name: str, namespace: str = "default", **changes) -> None:
        """Edit the spec the way a user would (bumps resourceVersion and generation)."""
        current = self.stored(name, namespace)
        spec = current.spec.model_copy(update=changes)
        self.deployments[(namespace, name)] = current.model_copy(
            update={
                "spec": spec,
                "resource_version": self._next_version(),
                "generation": (current.generation or 1) + 1,
            }
        )

    def request_deletion(self, name: str, namespace: str = "default") -> None:
        current = self.stored(name, namespace)
        self.deployments[(namespace, name)] = current.model_copy(
            update={
                "deletion_timestamp": datetime.now(timezone.utc).isoformat(),
                "resource_version": self._next_version(),
            }
        )

    async def get_deployment(self, name: str, namespace: str) -> ArangoDeployment:
        try:
            return self.deployments[(namespace, name)].model_copy(deep=True)
        except KeyError:
            raise NotFoundError("ArangoDeployment", name, namespace)

    async def list_deployments(self, namespace: str) -> List[ArangoDeployment]:
        return [d.model_copy(deep=True) for (ns, _), d in sorted(self.deployments.items()) if ns == namespace]

    async def replace_deployment_status(self, deployment: ArangoDeployment) -> ArangoDeployment:
        self.status_write_attempts += 1
        key = (deployment.namespace, deployment.name)
        if key not in self.deployments:
            raise NotFoundError("ArangoDeployment", deployment.name, deployment.namespace)
        stored = self.deployments[key]

        if self.conflicts_remaining > 0:
            # Someone else wrote in between
            self.conflicts_remaining -= 1
            self.deployments[key] = stored.model_copy(update={"resource_version": self._next_version()})
            raise ConflictError("concurrent modification")
        if deployment.resource_version != stored.resource_version:
            raise ConflictError("stale resourceVersion")

        self.status_writes += 1
        updated = stored.model_copy(
            deep=True,
            update={"status": deployment.status.model_copy(deep=True), "resource_version": self._next_version()},
        )
        self.deployments[key] = updated
        return updated.model_copy(deep=True)

    async def set_deployment_finalizers(self, deployment: ArangoDeployment, finalizers: List[str]) -> ArangoDeployment:
        key = (deployment.namespace, deployment.name)
        stored = self.deployments.get(key)
        if stored is None:
            raise NotFoundError("ArangoDeployment", deployment.name, deployment.namespace)
        if deployment.resource_version != stored.resource_version:
            raise ConflictError("stale resourceVersion")

        updated = stored.model_copy(update={"finalizers": list(finalizers), "resource_version": self._next_version()})
        if updated.deletion_requested and not updated.finalizers:
            del self.deployments[key]
        else:
            self.deployments[key] = updated
        return updated.model_copy(deep=True)

    # Secrets

    async def get_secret(self, name: str, namespace: str) -> Optional[Dict[str, bytes]]:
        secret = self.secrets.get((namespace, name))
        return dict(secret["data"]) if secret else None

    async def create_secret(self, name, namespace, data, labels=None) -> None:
        if self.secret_create_error is not None:
            raise self.secret_create_error
        if (namespace, name) in self.secrets:
            raise AlreadyExistsError("Secret", name, namespace)
        self.secret_creates += 1
        self.secrets[(namespace, name)] = {"data": dict(data), "labels": dict(labels or {})}

    async def list_secret_names(self, namespace, labels) -> List[str]:
        return sorted(
            name
            for (ns, name), secret in self.secrets.items()
            if ns == namespace and labels.items() <= secret["labels"].items()
        )

    async def delete_secret(self, name, namespace) -> None:
        self.secrets.pop((namespace, name), None)

    # Pods

    def add_pod(self, namespace: str, name: str, role: MemberRole, image: str, labels: Dict[str, str]) -> None:
        self.pods[(namespace, name)] = {
            "metadata": {"name": name, "namespace": namespace, "labels": {**labels, ROLE_LABEL: role.value}},
            "spec": {"containers": [{"name": "server", "image": image}]},
            "terminating": False,
        }

    def set_pod_phase(self, name: str, phase: str, namespace: str = "default") -> None:
        """Report a pod in the given phase (e.g. Failed after its container exited)."""
        self.pods[(namespace, name)]["phase"] = phase

    async def list_member_pods(self, namespace, labels) -> List[MemberPod]:
        pods = []
        for (ns, name), body in sorted(self.pods.items()):
            pod_labels = body["metadata"]["labels"]
            if ns != namespace or not labels.items() <= pod_labels.items():
                continue
            pods.append(
                MemberPod(
                    name=name,
                    role=MemberRole(pod_labels[ROLE_LABEL]),
                    image=body["spec"]["containers"][0]["image"],
                    phase=body.get("phase", "Running"),
                    ready=body.get("phase", "Running") == "Running",
                    terminating=body.get("terminating", False),
                )
            )
        return pods

    async def create_pod(self, namespace, body) -> None:
        if self.pod_create_error is not None:
            raise self.pod_create_error
        name = body["metadata"]["name"]
        if (namespace, name) in self.pods:
            raise AlreadyExistsError("Pod", name, namespace)
        self.pod_creates.append(name)
        self.pods[(namespace, name)] = copy.deepcopy(body)

    async def delete_pod(self, name, namespace) -> None:
        if self.pod_delete_error is not None:
            raise self.pod_delete_error
        if (namespace, name) not in self.pods:
            return
        self.pod_deletes.append(name)
        if self.pods_linger:
            self.pods[(namespace, name)]["terminating"] = True
        else:
            del self.pods[(namespace, name)]

    # Services

    async def create_service(self, namespace, body) -> None:
        name = body["metadata"]["name"]
        if (namespace, name) in self.services:
            raise AlreadyExistsError("Service", name, namespace)
        self.services[(namespace, name)] = copy.deepcopy(body)

    async def delete_service(self, name, namespace) -> None:
        self.services.pop((namespace, name), None)


class FakeHealthClient:
    """
    Health client reporting the member pods of a FakePlatform as cluster members.

    ``unhealthy_polls`` makes the first polls report one DBServer as BAD.
    """

    def __init__(self, platform: FakePlatform, deployment: ArangoDeployment, unhealthy_polls: int = 0,
                 version: str = "3.3.4"):
        self.platform = platform
        self.deployment = deployment
        self.unhealthy_polls = unhealthy_polls
        self.version = version
        self.health_calls = 0
        self.version_calls = 0
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True

    async def get_cluster_health(self) -> ClusterHealthReport:
        self.health_calls += 1
        roles = {
            MemberRole.AGENT: ServerRole.AGENT,
            MemberRole.DBSERVER: ServerRole.DBSERVER,
            MemberRole.COORDINATOR: ServerRole.COORDINATOR,
        }
        pods = await self.platform.list_member_pods(
            self.deployment.namespace, {"arango_deployment": self.deployment.name}
        )
        members = []
        degraded = self.health_calls <= self.unhealthy_polls
        for pod in pods:
            if pod.role not in roles or pod.terminating or pod.phase != "Running":
                continue
            status = ServerStatus.GOOD
            if degraded and pod.role == MemberRole.DBSERVER:
                status = ServerStatus.BAD
                degraded = False
            members.append(MemberHealth(id=pod.name, role=roles[pod.role], status=status))
        return ClusterHealthReport(cluster_id="test-cluster", members=members)

    async def get_version(self) -> VersionInfo:
        self.version_calls += 1
        return VersionInfo(server="arango", version=self.version, license="community")


@pytest.fixture
def test_settings() -> Settings:
    """Settings with short deadlines and retry intervals."""
    return Settings(
        environment="testing",
        watch_namespace="default",
        pass_timeout_seconds=0.5,
        retry_interval_seconds=0.01,
        retry_max_interval_seconds=0.02,
        status_update_max_attempts=5,
    )


@pytest.fixture
def platform(test_settings) -> FakePlatform:
    return FakePlatform(test_settings)


@pytest.fixture
def make_deployment():
    """Factory for ArangoDeployment objects in cluster mode."""

    def _make(
        name: str = "example",
        namespace: str = "default",
        agents: int = 1,
        dbservers: int = 1,
        coordinators: int = 1,
        image: str = "arangodb/arangodb:3.3.4",
        encryption_secret: Optional[str] = None,
        mode: str = "Cluster",
    ) -> ArangoDeployment:
        spec = {
            "mode": mode,
            "image": image,
            "agents": {"count": agents},
            "dbservers": {"count": dbservers},
            "coordinators": {"count": coordinators},
        }
        if encryption_secret:
            spec["rocksdb"] = {"encryption": {"keySecretName": encryption_secret}}
        return ArangoDeployment(
            name=name,
            namespace=namespace,
            generation=1,
            spec=DeploymentSpec.model_validate(spec),
        )

    return _make


@pytest.fixture
def health_clients():
    """Health clients handed out by the reconciler, in creation order."""
    return []


@pytest.fixture
def reconciler(platform, test_settings, health_clients) -> DeploymentReconciler:
    def factory(deployment):
        health_client = FakeHealthClient(platform, deployment)
        health_clients.append(health_client)
        return health_client

    return DeploymentReconciler(platform, health_client_factory=factory, settings=test_settings)


@pytest_asyncio.fixture
async def test_client(platform) -> AsyncGenerator[AsyncClient, None]:
    """Dashboard client bound to a FakePlatform; the lifespan is not run."""
    from arango_operator.main import app

    app.state.platform = platform
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client
    finally:
        del app.state.platform

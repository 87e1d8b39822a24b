"""
Tests for the Kubernetes platform client and its error translation.
"""
import base64
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from kubernetes_asyncio.client import ApiException

from arango_operator.exceptions import (
    AlreadyExistsError,
    ConflictError,
    ForbiddenError,
    KubernetesError,
    NotFoundError,
    UnauthorizedError,
)
from arango_operator.models.deployment import DeploymentPhase, DeploymentStatus, MemberRole
from arango_operator.services.kubernetes import (
    KubernetesPlatform,
    deployment_labels,
    label_selector,
    member_pod_from_k8s,
    translate_api_exception,
)

DEPLOYMENT_OBJECT = {
    "apiVersion": "database.arangodb.com/v1alpha",
    "kind": "ArangoDeployment",
    "metadata": {
        "name": "example",
        "namespace": "default",
        "uid": "uid-1",
        "resourceVersion": "42",
        "generation": 3,
        "finalizers": ["database.arangodb.com/cleanup"],
    },
    "spec": {
        "mode": "Cluster",
        "image": "arangodb/arangodb:3.3.4",
        "rocksdb": {"encryption": {"keySecretName": "k1"}},
        "agents": {"count": 1},
        "dbservers": {"count": 1},
        "coordinators": {"count": 1},
    },
    "status": {"phase": "Running", "health": {"agents": 1, "goodDBServers": 1, "goodCoordinators": 1}},
}


def _api_exception(status: int, body: str = None) -> ApiException:
    error = ApiException(status=status, reason="Reason")
    error.body = body
    return error


@pytest.fixture
def k8s(test_settings) -> KubernetesPlatform:
    platform = KubernetesPlatform(MagicMock(), test_settings)
    platform.custom_api = AsyncMock()
    platform.core_api = AsyncMock()
    return platform


@pytest.mark.parametrize(
    "status, body, expected",
    [
        (404, None, NotFoundError),
        (409, '{"reason":"AlreadyExists"}', AlreadyExistsError),
        (409, '{"reason":"Conflict"}', ConflictError),
        (403, None, ForbiddenError),
        (401, None, UnauthorizedError),
        (500, None, KubernetesError),
    ],
)
def test_translate_api_exception(status, body, expected):
    error = translate_api_exception(_api_exception(status, body), "Secret", "k1", "default")

    assert type(error) is expected


def test_server_errors_are_retryable_client_errors_are_not():
    assert translate_api_exception(_api_exception(503), "Pod", "p", "default").retryable is True
    assert translate_api_exception(_api_exception(422), "Pod", "p", "default").retryable is False
    assert translate_api_exception(_api_exception(409), "Pod", "p", "default").retryable is True


@pytest.mark.asyncio
async def test_get_deployment_parses_resource(k8s):
    k8s.custom_api.get_namespaced_custom_object.return_value = DEPLOYMENT_OBJECT

    deployment = await k8s.get_deployment("example", "default")

    kwargs = k8s.custom_api.get_namespaced_custom_object.call_args.kwargs
    assert kwargs["group"] == "database.arangodb.com"
    assert kwargs["plural"] == "arangodeployments"
    assert deployment.resource_version == "42"
    assert deployment.spec.encryption_key_secret_name == "k1"
    assert deployment.status.phase == DeploymentPhase.RUNNING
    assert deployment.status.health.good_dbservers == 1


@pytest.mark.asyncio
async def test_get_missing_deployment_raises_not_found(k8s):
    k8s.custom_api.get_namespaced_custom_object.side_effect = _api_exception(404)

    with pytest.raises(NotFoundError):
        await k8s.get_deployment("example", "default")


@pytest.mark.asyncio
async def test_replace_status_sends_resource_version(k8s):
    k8s.custom_api.get_namespaced_custom_object.return_value = DEPLOYMENT_OBJECT
    k8s.custom_api.replace_namespaced_custom_object_status.return_value = DEPLOYMENT_OBJECT
    deployment = await k8s.get_deployment("example", "default")
    deployment.status = DeploymentStatus(phase=DeploymentPhase.UPGRADING, reason="Upgrading")

    await k8s.replace_deployment_status(deployment)

    body = k8s.custom_api.replace_namespaced_custom_object_status.call_args.kwargs["body"]
    assert body["metadata"]["resourceVersion"] == "42"
    assert body["status"] == {"phase": "Upgrading", "reason": "Upgrading"}


@pytest.mark.asyncio
async def test_replace_status_conflict(k8s):
    k8s.custom_api.get_namespaced_custom_object.return_value = DEPLOYMENT_OBJECT
    k8s.custom_api.replace_namespaced_custom_object_status.side_effect = _api_exception(409, '{"reason":"Conflict"}')
    deployment = await k8s.get_deployment("example", "default")

    with pytest.raises(ConflictError):
        await k8s.replace_deployment_status(deployment)


@pytest.mark.asyncio
async def test_secret_payload_round_trips_through_base64(k8s):
    key = bytes(range(32))

    await k8s.create_secret("k1", "default", {"key": key}, labels={"app": "arangodb"})

    body = k8s.core_api.create_namespaced_secret.call_args.kwargs["body"]
    assert base64.b64decode(body.data["key"]) == key
    assert body.metadata.labels == {"app": "arangodb"}

    k8s.core_api.read_namespaced_secret.return_value = SimpleNamespace(data=body.data)
    assert await k8s.get_secret("k1", "default") == {"key": key}


@pytest.mark.asyncio
async def test_get_missing_secret_returns_none(k8s):
    k8s.core_api.read_namespaced_secret.side_effect = _api_exception(404)

    assert await k8s.get_secret("k1", "default") is None


@pytest.mark.asyncio
async def test_create_existing_secret_raises_already_exists(k8s):
    k8s.core_api.create_namespaced_secret.side_effect = _api_exception(409, '{"reason":"AlreadyExists"}')

    with pytest.raises(AlreadyExistsError):
        await k8s.create_secret("k1", "default", {"key": b"k" * 32})


@pytest.mark.asyncio
async def test_delete_ignores_missing_objects(k8s):
    k8s.core_api.delete_namespaced_pod.side_effect = _api_exception(404)
    k8s.core_api.delete_namespaced_secret.side_effect = _api_exception(404)

    await k8s.delete_pod("p", "default")
    await k8s.delete_secret("s", "default")


def test_member_pod_from_k8s():
    pod = SimpleNamespace(
        metadata=SimpleNamespace(
            name="example-prmr-0",
            labels={"role": "dbserver"},
            deletion_timestamp=None,
        ),
        spec=SimpleNamespace(containers=[SimpleNamespace(image="arangodb/arangodb:3.3.4")]),
        status=SimpleNamespace(phase="Running", conditions=[SimpleNamespace(type="Ready", status="True")]),
    )

    member = member_pod_from_k8s(pod)

    assert member.role == MemberRole.DBSERVER
    assert member.image == "arangodb/arangodb:3.3.4"
    assert member.ready is True
    assert member.terminating is False


def test_pod_without_role_label_is_ignored():
    pod = SimpleNamespace(metadata=SimpleNamespace(name="other", labels={}, deletion_timestamp=None))

    assert member_pod_from_k8s(pod) is None


def test_labels():
    assert deployment_labels("example", MemberRole.AGENT) == {
        "app": "arangodb",
        "arango_deployment": "example",
        "role": "agent",
    }
    assert label_selector({"b": "2", "a": "1"}) == "a=1,b=2"

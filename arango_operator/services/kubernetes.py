"""
Kubernetes platform client.

Wraps the ``kubernetes_asyncio`` APIs the operator needs (ArangoDeployment
custom objects, secrets, pods, services) and translates ``ApiException`` into
the operator's error taxonomy, so callers can tell a stale write (ConflictError)
from a missing object (NotFoundError) or a permission problem (ForbiddenError).
"""
import base64
from typing import Any, Dict, List, Optional

from kubernetes_asyncio import client, config
from kubernetes_asyncio.client import ApiException

from arango_operator.config.logging import get_logger
from arango_operator.config.settings import Settings, settings as default_settings
from arango_operator.exceptions import (
    AlreadyExistsError,
    ConflictError,
    ForbiddenError,
    KubernetesError,
    NotFoundError,
    OperatorException,
    UnauthorizedError,
)
from arango_operator.models.deployment import ArangoDeployment, MemberPod, MemberRole
from arango_operator.utils.retry import is_retryable_k8s_error, retry_on_k8s_error

logger = get_logger(__name__)

ROLE_LABEL = "role"
DEPLOYMENT_LABEL = "arango_deployment"
APP_LABEL = "app"
APP_NAME = "arangodb"


def translate_api_exception(
    error: ApiException, resource: str, name: Optional[str], namespace: Optional[str]
) -> OperatorException:
    """Map an ApiException to the matching operator exception."""
    if error.status == 404:
        return NotFoundError(resource, name or "", namespace)
    if error.status == 409:
        # Create conflicts carry reason AlreadyExists in the Status body
        body = str(error.body or "").lower()
        if "alreadyexists" in body or "already exists" in body:
            return AlreadyExistsError(resource, name or "", namespace)
        return ConflictError(
            f"{resource} '{namespace}/{name}' was modified concurrently",
            details={"resource": resource, "name": name, "namespace": namespace},
        )
    if error.status == 403:
        return ForbiddenError(
            f"Forbidden to access {resource} '{namespace}/{name}': {error.reason}",
            details={"resource": resource, "name": name, "namespace": namespace},
        )
    if error.status == 401:
        return UnauthorizedError(
            f"Unauthorized to access {resource} '{namespace}/{name}': {error.reason}",
            details={"resource": resource, "name": name, "namespace": namespace},
        )
    return KubernetesError(
        f"{resource} '{namespace}/{name}' request failed with {error.status} {error.reason}",
        retryable=is_retryable_k8s_error(error),
        details={"resource": resource, "name": name, "namespace": namespace, "status": error.status},
    )


def member_pod_from_k8s(pod: Any) -> Optional[MemberPod]:
    """Convert a V1Pod to a MemberPod; None if it lacks a known role label."""
    labels = pod.metadata.labels or {}
    try:
        role = MemberRole(labels.get(ROLE_LABEL))
    except ValueError:
        return None

    image = None
    containers = pod.spec.containers if pod.spec else None
    if containers:
        image = containers[0].image

    ready = False
    phase = pod.status.phase if pod.status else None
    for condition in (pod.status.conditions if pod.status else None) or []:
        if condition.type == "Ready" and condition.status == "True":
            ready = True

    return MemberPod(
        name=pod.metadata.name,
        role=role,
        image=image,
        phase=phase,
        ready=ready,
        terminating=pod.metadata.deletion_timestamp is not None,
    )


class KubernetesPlatform:
    """
    Namespace-scoped access to the Kubernetes objects managed by the operator.

    Use ``KubernetesPlatform.connect()`` to load configuration (in-cluster or
    kubeconfig) and ``close()`` when done.
    """

    def __init__(
        self,
        api_client: client.ApiClient,
        settings: Optional[Settings] = None,
    ):
        self.api_client = api_client
        self.core_api = client.CoreV1Api(api_client)
        self.custom_api = client.CustomObjectsApi(api_client)
        self.settings = settings or default_settings

    @classmethod
    async def connect(cls, settings: Optional[Settings] = None) -> "KubernetesPlatform":
        """Load Kubernetes configuration and build a platform client."""
        settings = settings or default_settings
        if settings.k8s_in_cluster and not settings.kubeconfig_path:
            config.load_incluster_config()
            logger.info("kubernetes_config_loaded", source="in_cluster")
        else:
            await config.load_kube_config(config_file=settings.kubeconfig_path)
            logger.info("kubernetes_config_loaded", source="kubeconfig", path=settings.kubeconfig_path)
        return cls(client.ApiClient(), settings)

    async def close(self):
        """Close the underlying API client."""
        if self.api_client:
            await self.api_client.close()

    @property
    def api_version(self) -> str:
        return f"{self.settings.crd_group}/{self.settings.crd_version}"

    def _crd_args(self, namespace: str) -> Dict[str, str]:
        return {
            "group": self.settings.crd_group,
            "version": self.settings.crd_version,
            "namespace": namespace,
            "plural": self.settings.crd_plural,
        }

    # ArangoDeployment resources

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def _get_deployment_raw(self, name: str, namespace: str) -> Dict[str, Any]:
        return await self.custom_api.get_namespaced_custom_object(name=name, **self._crd_args(namespace))

    async def get_deployment(self, name: str, namespace: str) -> ArangoDeployment:
        """
        Read an ArangoDeployment.

        Raises:
            NotFoundError: If the deployment does not exist
        """
        try:
            obj = await self._get_deployment_raw(name, namespace)
        except ApiException as e:
            raise translate_api_exception(e, self.settings.crd_kind, name, namespace) from e
        return ArangoDeployment.from_k8s(obj)

    async def list_deployments(self, namespace: str) -> List[ArangoDeployment]:
        try:
            result = await self.custom_api.list_namespaced_custom_object(**self._crd_args(namespace))
        except ApiException as e:
            raise translate_api_exception(e, self.settings.crd_kind, None, namespace) from e
        return [ArangoDeployment.from_k8s(item) for item in result.get("items", [])]

    async def replace_deployment_status(self, deployment: ArangoDeployment) -> ArangoDeployment:
        """
        Write the status sub-resource, guarded by the deployment's resourceVersion.

        Raises:
            ConflictError: If the stored resource changed since it was read
        """
        body = deployment.status_body(self.api_version, self.settings.crd_kind)
        try:
            obj = await self.custom_api.replace_namespaced_custom_object_status(
                name=deployment.name, body=body, **self._crd_args(deployment.namespace)
            )
        except ApiException as e:
            raise translate_api_exception(e, self.settings.crd_kind, deployment.name, deployment.namespace) from e
        return ArangoDeployment.from_k8s(obj)

    async def set_deployment_finalizers(self, deployment: ArangoDeployment, finalizers: List[str]) -> ArangoDeployment:
        """Replace the finalizer list, guarded by the deployment's resourceVersion."""
        patch = {"metadata": {"finalizers": finalizers, "resourceVersion": deployment.resource_version}}
        try:
            obj = await self.custom_api.patch_namespaced_custom_object(
                name=deployment.name, body=patch, **self._crd_args(deployment.namespace)
            )
        except ApiException as e:
            raise translate_api_exception(e, self.settings.crd_kind, deployment.name, deployment.namespace) from e
        return ArangoDeployment.from_k8s(obj)

    # Secrets

    async def get_secret(self, name: str, namespace: str) -> Optional[Dict[str, bytes]]:
        """Return the decoded secret payload, or None if the secret does not exist."""
        try:
            secret = await self.core_api.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise translate_api_exception(e, "Secret", name, namespace) from e
        return {key: base64.b64decode(value) for key, value in (secret.data or {}).items()}

    async def create_secret(
        self, name: str, namespace: str, data: Dict[str, bytes], labels: Optional[Dict[str, str]] = None
    ) -> None:
        """
        Create an opaque secret. Values are stored verbatim (base64 is only the API transport).

        Raises:
            AlreadyExistsError: If the name is taken
            ForbiddenError/UnauthorizedError: If the operator lacks permission
        """
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels or {}),
            type="Opaque",
            data={key: base64.b64encode(value).decode("ascii") for key, value in data.items()},
        )
        try:
            await self.core_api.create_namespaced_secret(namespace=namespace, body=body)
        except ApiException as e:
            raise translate_api_exception(e, "Secret", name, namespace) from e

    async def list_secret_names(self, namespace: str, labels: Dict[str, str]) -> List[str]:
        try:
            result = await self.core_api.list_namespaced_secret(
                namespace=namespace, label_selector=label_selector(labels)
            )
        except ApiException as e:
            raise translate_api_exception(e, "Secret", None, namespace) from e
        return [item.metadata.name for item in result.items]

    async def delete_secret(self, name: str, namespace: str) -> None:
        """Delete a secret; a missing secret is not an error."""
        try:
            await self.core_api.delete_namespaced_secret(name=name, namespace=namespace)
        except ApiException as e:
            if e.status != 404:
                raise translate_api_exception(e, "Secret", name, namespace) from e

    # Pods

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def _list_pods_raw(self, namespace: str, selector: str):
        return await self.core_api.list_namespaced_pod(namespace=namespace, label_selector=selector)

    async def list_member_pods(self, namespace: str, labels: Dict[str, str]) -> List[MemberPod]:
        try:
            result = await self._list_pods_raw(namespace, label_selector(labels))
        except ApiException as e:
            raise translate_api_exception(e, "Pod", None, namespace) from e
        pods = []
        for item in result.items:
            pod = member_pod_from_k8s(item)
            if pod is not None:
                pods.append(pod)
        return pods

    async def create_pod(self, namespace: str, body: Dict[str, Any]) -> None:
        try:
            await self.core_api.create_namespaced_pod(namespace=namespace, body=body)
        except ApiException as e:
            raise translate_api_exception(e, "Pod", body["metadata"]["name"], namespace) from e

    async def delete_pod(self, name: str, namespace: str) -> None:
        try:
            await self.core_api.delete_namespaced_pod(name=name, namespace=namespace)
        except ApiException as e:
            if e.status != 404:
                raise translate_api_exception(e, "Pod", name, namespace) from e

    # Services

    async def create_service(self, namespace: str, body: Dict[str, Any]) -> None:
        try:
            await self.core_api.create_namespaced_service(namespace=namespace, body=body)
        except ApiException as e:
            raise translate_api_exception(e, "Service", body["metadata"]["name"], namespace) from e

    async def delete_service(self, name: str, namespace: str) -> None:
        try:
            await self.core_api.delete_namespaced_service(name=name, namespace=namespace)
        except ApiException as e:
            if e.status != 404:
                raise translate_api_exception(e, "Service", name, namespace) from e


def label_selector(labels: Dict[str, str]) -> str:
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def deployment_labels(deployment_name: str, role: Optional[MemberRole] = None) -> Dict[str, str]:
    """Labels identifying the objects owned by a deployment (and optionally one role)."""
    labels = {APP_LABEL: APP_NAME, DEPLOYMENT_LABEL: deployment_name}
    if role is not None:
        labels[ROLE_LABEL] = role.value
    return labels

"""
Member pods and services of an ArangoDeployment.

Pods are named ``<deployment>-<agnt|prmr|crdn|sngl>-<index>`` and labelled with
the deployment and their role. Creation is additive: existing pods matching the
labels are left untouched and only the per-role deficit is created. Pods in
excess of the spec are not removed. Member pods never restart: a pod that
exited is deleted and created again.

Every member is reachable through the headless service ``<deployment>-int``;
clients (and the health observer) use the service ``<deployment>``, which
selects coordinators in cluster mode and the single server otherwise.
"""
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from arango_operator.config.logging import get_logger
from arango_operator.config.settings import Settings, settings as default_settings
from arango_operator.exceptions import AlreadyExistsError
from arango_operator.models.deployment import ArangoDeployment, MemberPod, MemberRole, StorageEngine
from arango_operator.services.kubernetes import deployment_labels

logger = get_logger(__name__)

ROLE_ABBREVIATIONS: Dict[MemberRole, str] = {
    MemberRole.SINGLE: "sngl",
    MemberRole.AGENT: "agnt",
    MemberRole.DBSERVER: "prmr",
    MemberRole.COORDINATOR: "crdn",
}

ENCRYPTION_VOLUME = "rocksdb-encryption"
ENCRYPTION_MOUNT_PATH = "/secrets/rocksdb/encryption"
DATA_MOUNT_PATH = "/data"

# Pod phases after which a pod with restartPolicy Never stays down
DEAD_POD_PHASES = frozenset({"Failed", "Succeeded"})


class MemberSyncResult(BaseModel):
    """Outcome of one pass over the member pods."""

    pods: List[MemberPod] = Field(default_factory=list)
    created: List[str] = Field(default_factory=list)
    rotated: Optional[str] = None

    @property
    def running_images(self) -> Set[str]:
        return {pod.image for pod in self.pods if pod.image}


def member_pod_name(deployment_name: str, role: MemberRole, index: int) -> str:
    return f"{deployment_name}-{ROLE_ABBREVIATIONS[role]}-{index}"


def internal_service_name(deployment_name: str) -> str:
    return f"{deployment_name}-int"


def member_address(deployment: ArangoDeployment, role: MemberRole, index: int, port: int) -> str:
    host = "{}.{}.{}.svc".format(
        member_pod_name(deployment.name, role, index),
        internal_service_name(deployment.name),
        deployment.namespace,
    )
    return f"tcp://{host}:{port}"


def _server_args(deployment: ArangoDeployment, role: MemberRole, index: int, port: int) -> List[str]:
    spec = deployment.spec
    engine = "rocksdb" if spec.storage_engine == StorageEngine.ROCKSDB else "mmfiles"
    args = [
        f"--database.directory={DATA_MOUNT_PATH}",
        f"--server.endpoint=tcp://[::]:{port}",
        f"--server.storage-engine={engine}",
        "--server.authentication=false",
    ]

    if spec.encryption_key_secret_name:
        args.append(f"--rocksdb.encryption-keyfile={ENCRYPTION_MOUNT_PATH}/key")

    if role == MemberRole.SINGLE:
        return args

    agency_endpoints = [
        member_address(deployment, MemberRole.AGENT, i, port) for i in range(spec.agents.count)
    ]
    my_address = member_address(deployment, role, index, port)

    if role == MemberRole.AGENT:
        args += [
            "--agency.activate=true",
            f"--agency.size={spec.agents.count}",
            "--agency.supervision=true",
            f"--agency.my-address={my_address}",
        ]
        args += [f"--agency.endpoint={endpoint}" for endpoint in agency_endpoints if endpoint != my_address]
    else:
        cluster_role = "PRIMARY" if role == MemberRole.DBSERVER else "COORDINATOR"
        args += [
            f"--cluster.my-role={cluster_role}",
            f"--cluster.my-address={my_address}",
        ]
        args += [f"--cluster.agency-endpoint={endpoint}" for endpoint in agency_endpoints]

    return args


def build_member_pod(
    deployment: ArangoDeployment,
    role: MemberRole,
    index: int,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    """Build the pod manifest of one deployment member."""
    settings = settings or default_settings
    port = settings.database_port
    name = member_pod_name(deployment.name, role, index)

    volume_mounts = [{"name": "data", "mountPath": DATA_MOUNT_PATH}]
    volumes: List[Dict[str, Any]] = [{"name": "data", "emptyDir": {}}]

    secret_name = deployment.spec.encryption_key_secret_name
    if secret_name:
        volume_mounts.append({"name": ENCRYPTION_VOLUME, "mountPath": ENCRYPTION_MOUNT_PATH, "readOnly": True})
        volumes.append({"name": ENCRYPTION_VOLUME, "secret": {"secretName": secret_name}})

    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": name,
            "namespace": deployment.namespace,
            "labels": deployment_labels(deployment.name, role),
            "ownerReferences": _owner_references(deployment, settings),
        },
        "spec": {
            "hostname": name,
            "subdomain": internal_service_name(deployment.name),
            "containers": [
                {
                    "name": "server",
                    "image": deployment.spec.image,
                    "args": _server_args(deployment, role, index, port),
                    "ports": [{"name": "server", "containerPort": port}],
                    "volumeMounts": volume_mounts,
                    "readinessProbe": {
                        "httpGet": {"path": "/_api/version", "port": port},
                        "initialDelaySeconds": 2,
                        "periodSeconds": 10,
                    },
                }
            ],
            "volumes": volumes,
            "restartPolicy": "Never",
        },
    }


def build_services(deployment: ArangoDeployment, settings: Optional[Settings] = None) -> List[Dict[str, Any]]:
    """Headless service for member DNS plus the client service."""
    settings = settings or default_settings
    port = settings.database_port
    client_role = MemberRole.COORDINATOR if deployment.spec.is_cluster else MemberRole.SINGLE
    owner_references = _owner_references(deployment, settings)

    return [
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {
                "name": internal_service_name(deployment.name),
                "namespace": deployment.namespace,
                "labels": deployment_labels(deployment.name),
                "ownerReferences": owner_references,
            },
            "spec": {
                "clusterIP": "None",
                "publishNotReadyAddresses": True,
                "selector": deployment_labels(deployment.name),
                "ports": [{"name": "server", "port": port, "targetPort": port}],
            },
        },
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {
                "name": deployment.name,
                "namespace": deployment.namespace,
                "labels": deployment_labels(deployment.name),
                "ownerReferences": owner_references,
            },
            "spec": {
                "selector": deployment_labels(deployment.name, client_role),
                "ports": [{"name": "server", "port": port, "targetPort": port}],
            },
        },
    ]


def _owner_references(deployment: ArangoDeployment, settings: Settings) -> List[Dict[str, Any]]:
    if not deployment.uid:
        return []
    return [
        {
            "apiVersion": f"{settings.crd_group}/{settings.crd_version}",
            "kind": settings.crd_kind,
            "name": deployment.name,
            "uid": deployment.uid,
            "controller": True,
        }
    ]


def _free_indices(existing: Set[str], deployment_name: str, role: MemberRole, count: int) -> List[int]:
    indices = []
    index = 0
    while len(indices) < count:
        if member_pod_name(deployment_name, role, index) not in existing:
            indices.append(index)
        index += 1
    return indices


async def ensure_services(platform, deployment: ArangoDeployment, settings: Optional[Settings] = None) -> List[str]:
    """Create the deployment services that do not exist yet."""
    created = []
    for body in build_services(deployment, settings):
        try:
            await platform.create_service(deployment.namespace, body)
        except AlreadyExistsError:
            continue
        created.append(body["metadata"]["name"])
        logger.info("service_created", deployment=deployment.name, service=body["metadata"]["name"])
    return created


async def ensure_member_pods(
    platform,
    deployment: ArangoDeployment,
    settings: Optional[Settings] = None,
    allow_rotation: bool = True,
) -> MemberSyncResult:
    """
    Replace dead member pods, create the missing ones and rotate at most one
    outdated pod.

    Pods in phase Failed or Succeeded never restart; they are deleted and
    recreated under the same name. A pod runs an outdated image when its image
    differs from ``spec.image``. Rotation (deleting the pod so the next pass
    recreates it with the desired image) only happens when ``allow_rotation``
    is set, no member is missing and every member pod is ready and not
    terminating.
    """
    pods = await platform.list_member_pods(deployment.namespace, deployment_labels(deployment.name))
    existing_names = {pod.name for pod in pods}
    live = []
    for pod in pods:
        if pod.phase not in DEAD_POD_PHASES:
            live.append(pod)
            continue
        if not pod.terminating:
            await platform.delete_pod(pod.name, deployment.namespace)
            logger.warning(
                "member_pod_dead",
                deployment=deployment.name,
                namespace=deployment.namespace,
                pod=pod.name,
                pod_phase=pod.phase,
            )
        existing_names.discard(pod.name)

    result = MemberSyncResult(pods=list(live))

    for role, desired in deployment.spec.desired_members().items():
        present = sum(1 for pod in live if pod.role == role)
        deficit = desired - present
        if deficit <= 0:
            continue

        for index in _free_indices(existing_names, deployment.name, role, deficit):
            body = build_member_pod(deployment, role, index, settings)
            name = body["metadata"]["name"]
            try:
                await platform.create_pod(deployment.namespace, body)
            except AlreadyExistsError:
                # A deleted pod with this name is still shutting down
                logger.debug("member_pod_already_exists", deployment=deployment.name, pod=name)
                continue
            existing_names.add(name)
            result.created.append(name)
            result.pods.append(MemberPod(name=name, role=role, image=deployment.spec.image, phase="Pending"))
            logger.info(
                "member_pod_created",
                deployment=deployment.name,
                namespace=deployment.namespace,
                pod=name,
                role=role.value,
            )

    if result.created or len(live) != len(pods) or not allow_rotation:
        return result

    unsettled = [pod.name for pod in pods if pod.terminating or not pod.ready]
    outdated = sorted(
        (pod for pod in pods if pod.image and pod.image != deployment.spec.image),
        key=lambda pod: pod.name,
    )
    if not outdated:
        return result
    if unsettled:
        logger.debug("member_rotation_deferred", deployment=deployment.name, unsettled=unsettled)
        return result

    victim = outdated[0]
    await platform.delete_pod(victim.name, deployment.namespace)
    result.rotated = victim.name
    logger.info(
        "member_pod_rotated_for_upgrade",
        deployment=deployment.name,
        pod=victim.name,
        from_image=victim.image,
        to_image=deployment.spec.image,
    )

    return result


async def delete_member_pods(platform, deployment: ArangoDeployment) -> int:
    """Delete all member pods; returns how many pods are still present afterwards."""
    labels = deployment_labels(deployment.name)
    for pod in await platform.list_member_pods(deployment.namespace, labels):
        if not pod.terminating:
            await platform.delete_pod(pod.name, deployment.namespace)
            logger.info("member_pod_deleted", deployment=deployment.name, pod=pod.name)
    return len(await platform.list_member_pods(deployment.namespace, labels))


async def delete_services(platform, deployment: ArangoDeployment) -> None:
    for name in (deployment.name, internal_service_name(deployment.name)):
        await platform.delete_service(name, deployment.namespace)

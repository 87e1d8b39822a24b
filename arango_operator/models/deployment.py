"""
Pydantic models for the ArangoDeployment custom resource.

Field aliases follow the camelCase JSON of the resource so that objects read
from the Kubernetes API can be validated directly and dumped back with
``by_alias=True``.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from arango_operator.exceptions import ValidationError


class DeploymentMode(str, Enum):
    """Deployment topology mode."""

    SINGLE = "Single"
    CLUSTER = "Cluster"


class StorageEngine(str, Enum):
    """ArangoDB storage engine."""

    ROCKSDB = "RocksDB"
    MMFILES = "MMFiles"


class DeploymentPhase(str, Enum):
    """Deployment lifecycle phase reported in status."""

    CREATED = "Created"
    RUNNING = "Running"
    UPGRADING = "Upgrading"
    FAILED = "Failed"
    TERMINATING = "Terminating"
    TERMINATED = "Terminated"


class MemberRole(str, Enum):
    """Role of a member pod."""

    SINGLE = "single"
    AGENT = "agent"
    DBSERVER = "dbserver"
    COORDINATOR = "coordinator"


class _ResourceModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ServerGroupSpec(_ResourceModel):
    """Desired member count of one server group."""

    count: int = Field(default=3, description="Number of members in the group")


class EncryptionSpec(_ResourceModel):
    """Encryption-at-rest options."""

    key_secret_name: Optional[str] = Field(
        default=None,
        alias="keySecretName",
        description="Name of the secret holding the 32-byte encryption key",
    )


class RocksDBSpec(_ResourceModel):
    """RocksDB storage engine options."""

    encryption: EncryptionSpec = Field(default_factory=EncryptionSpec)


class DeploymentSpec(_ResourceModel):
    """Desired state of an ArangoDB deployment."""

    mode: DeploymentMode = Field(default=DeploymentMode.CLUSTER)
    image: str = Field(default="arangodb/arangodb:latest")
    storage_engine: StorageEngine = Field(default=StorageEngine.ROCKSDB, alias="storageEngine")
    rocksdb: RocksDBSpec = Field(default_factory=RocksDBSpec)
    agents: ServerGroupSpec = Field(default_factory=ServerGroupSpec)
    dbservers: ServerGroupSpec = Field(default_factory=ServerGroupSpec)
    coordinators: ServerGroupSpec = Field(default_factory=ServerGroupSpec)

    @property
    def encryption_key_secret_name(self) -> Optional[str]:
        return self.rocksdb.encryption.key_secret_name or None

    @property
    def is_cluster(self) -> bool:
        return self.mode == DeploymentMode.CLUSTER

    def desired_members(self) -> Dict[MemberRole, int]:
        """Return the desired pod count per member role."""
        if not self.is_cluster:
            return {MemberRole.SINGLE: 1}
        return {
            MemberRole.AGENT: self.agents.count,
            MemberRole.DBSERVER: self.dbservers.count,
            MemberRole.COORDINATOR: self.coordinators.count,
        }

    def validate_spec(self) -> None:
        """
        Check the spec for permanent errors.

        Raises:
            ValidationError: If the spec can never produce a viable deployment
        """
        if not self.image or not self.image.strip():
            raise ValidationError("spec.image must not be empty", details={"field": "image"})

        if self.encryption_key_secret_name and self.storage_engine != StorageEngine.ROCKSDB:
            raise ValidationError(
                "Encryption at rest requires the RocksDB storage engine",
                details={"field": "storageEngine", "value": self.storage_engine.value},
            )

        if self.is_cluster:
            for field_name, group in (
                ("agents", self.agents),
                ("dbservers", self.dbservers),
                ("coordinators", self.coordinators),
            ):
                if group.count < 1:
                    raise ValidationError(
                        f"spec.{field_name}.count must be at least 1 in cluster mode, got {group.count}",
                        details={"field": f"{field_name}.count", "value": group.count},
                    )


class HealthSummary(_ResourceModel):
    """Last-observed health of the deployment."""

    agents: int = 0
    good_dbservers: int = Field(default=0, alias="goodDBServers")
    good_coordinators: int = Field(default=0, alias="goodCoordinators")
    version: Optional[str] = None


class DeploymentStatus(_ResourceModel):
    """Observed state, written exclusively by the reconciler."""

    phase: Optional[DeploymentPhase] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    health: Optional[HealthSummary] = None
    last_transition_time: Optional[datetime] = Field(default=None, alias="lastTransitionTime")

    def same_as(self, other: Optional["DeploymentStatus"]) -> bool:
        """Compare the serialized forms, which is what the API server stores."""
        if other is None:
            return False
        return self.to_k8s() == other.to_k8s()

    def to_k8s(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ArangoDeployment(_ResourceModel):
    """An ArangoDeployment object as stored in Kubernetes."""

    name: str
    namespace: str
    uid: Optional[str] = None
    resource_version: Optional[str] = None
    generation: Optional[int] = None
    deletion_timestamp: Optional[str] = None
    finalizers: List[str] = Field(default_factory=list)
    spec: DeploymentSpec = Field(default_factory=DeploymentSpec)
    status: DeploymentStatus = Field(default_factory=DeploymentStatus)

    @property
    def deletion_requested(self) -> bool:
        return self.deletion_timestamp is not None

    @classmethod
    def from_k8s(cls, obj: Dict[str, Any]) -> "ArangoDeployment":
        """Build a model from the dict returned by the custom objects API."""
        metadata = obj.get("metadata", {})
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace", "default"),
            uid=metadata.get("uid"),
            resource_version=metadata.get("resourceVersion"),
            generation=metadata.get("generation"),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            finalizers=list(metadata.get("finalizers") or []),
            spec=DeploymentSpec.model_validate(obj.get("spec") or {}),
            status=DeploymentStatus.model_validate(obj.get("status") or {}),
        )

    def status_body(self, api_version: str, kind: str) -> Dict[str, Any]:
        """Body for a status sub-resource replace, pinned to the read resourceVersion."""
        metadata: Dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        return {
            "apiVersion": api_version,
            "kind": kind,
            "metadata": metadata,
            "status": self.status.to_k8s(),
        }


class MemberPod(BaseModel):
    """Operator view of one member pod."""

    name: str
    role: MemberRole
    image: Optional[str] = None
    phase: Optional[str] = None
    ready: bool = False
    terminating: bool = False

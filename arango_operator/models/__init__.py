from arango_operator.models.deployment import (
    ArangoDeployment,
    DeploymentMode,
    DeploymentPhase,
    DeploymentSpec,
    DeploymentStatus,
    HealthSummary,
    MemberPod,
    MemberRole,
    StorageEngine,
)
from arango_operator.models.health import ClusterHealthReport, MemberHealth, ServerRole, ServerStatus, VersionInfo

__all__ = [
    "ArangoDeployment",
    "DeploymentMode",
    "DeploymentPhase",
    "DeploymentSpec",
    "DeploymentStatus",
    "HealthSummary",
    "MemberPod",
    "MemberRole",
    "StorageEngine",
    "ClusterHealthReport",
    "MemberHealth",
    "ServerRole",
    "ServerStatus",
    "VersionInfo",
]

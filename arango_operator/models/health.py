"""
Pydantic models for the ArangoDB cluster health and version endpoints.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ServerRole(str, Enum):
    """Role of a cluster member as reported by /_admin/cluster/health."""

    AGENT = "Agent"
    DBSERVER = "DBServer"
    COORDINATOR = "Coordinator"


class ServerStatus(str, Enum):
    """Health status of a cluster member."""

    GOOD = "GOOD"
    BAD = "BAD"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def _missing_(cls, value: object) -> "ServerStatus":
        # Agents and older servers may omit or invent statuses
        return cls.UNKNOWN


class MemberHealth(BaseModel):
    """Health record of one cluster member."""

    id: str
    role: ServerRole
    status: ServerStatus = ServerStatus.UNKNOWN
    endpoint: Optional[str] = None


class ClusterHealthReport(BaseModel):
    """Per-poll snapshot of cluster membership. Never persisted."""

    cluster_id: Optional[str] = None
    members: List[MemberHealth] = Field(default_factory=list)

    @classmethod
    def from_response(cls, payload: Dict[str, Any]) -> "ClusterHealthReport":
        """
        Parse the body of GET /_admin/cluster/health.

        Example payload:
            {"ClusterId": "...", "Health": {"PRMR-1": {"Role": "DBServer", "Status": "GOOD"}}}
        """
        members = [
            MemberHealth(
                id=member_id,
                role=entry.get("Role"),
                status=ServerStatus(entry.get("Status") or ServerStatus.UNKNOWN.value),
                endpoint=entry.get("Endpoint"),
            )
            for member_id, entry in (payload.get("Health") or {}).items()
        ]
        return cls(cluster_id=payload.get("ClusterId"), members=members)


class VersionInfo(BaseModel):
    """Body of GET /_api/version."""

    server: str = "arango"
    version: str
    license: Optional[str] = None

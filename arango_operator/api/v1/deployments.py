"""
Read-only deployment endpoints backing the operator dashboard.

``GET /api/deployment/{name}`` returns the deployment with its members grouped
by server group, the shape the dashboard's deployment details view renders.
"""
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from arango_operator.config.settings import settings
from arango_operator.models.deployment import ArangoDeployment, MemberPod, MemberRole
from arango_operator.services.kubernetes import deployment_labels

router = APIRouter()

MEMBER_GROUPS: Dict[MemberRole, str] = {
    MemberRole.SINGLE: "single",
    MemberRole.AGENT: "agents",
    MemberRole.DBSERVER: "dbservers",
    MemberRole.COORDINATOR: "coordinators",
}


class MemberInfo(BaseModel):
    id: str
    pod_name: str
    image: Optional[str] = None
    phase: Optional[str] = None
    ready: bool = False


class MemberGroup(BaseModel):
    group: str
    members: List[MemberInfo] = Field(default_factory=list)


class DeploymentInfo(BaseModel):
    name: str
    namespace: str
    mode: str
    image: str
    phase: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None


class DeploymentDetails(DeploymentInfo):
    member_groups: List[MemberGroup] = Field(default_factory=list)


def get_platform(request: Request):
    return request.app.state.platform


def _info(deployment: ArangoDeployment) -> Dict:
    status = deployment.status
    return {
        "name": deployment.name,
        "namespace": deployment.namespace,
        "mode": deployment.spec.mode.value,
        "image": deployment.spec.image,
        "phase": status.phase.value if status.phase else None,
        "reason": status.reason,
        "message": status.message,
    }


def group_members(deployment: ArangoDeployment, pods: List[MemberPod]) -> List[MemberGroup]:
    """Group member pods by server group, in the order of the spec."""
    groups = []
    for role in deployment.spec.desired_members():
        members = [
            MemberInfo(id=pod.name, pod_name=pod.name, image=pod.image, phase=pod.phase, ready=pod.ready)
            for pod in sorted(pods, key=lambda p: p.name)
            if pod.role == role
        ]
        groups.append(MemberGroup(group=MEMBER_GROUPS[role], members=members))
    return groups


@router.get("", response_model=List[DeploymentInfo])
async def list_deployments(platform=Depends(get_platform)):
    """List the deployments of the watched namespace."""
    deployments = await platform.list_deployments(settings.watch_namespace)
    return [_info(d) for d in sorted(deployments, key=lambda d: d.name)]


@router.get("/{name}", response_model=DeploymentDetails)
async def get_deployment(name: str, platform=Depends(get_platform)):
    """
    Get one deployment with its member groups.

    Raises:
        NotFoundError: If the deployment does not exist (404)
    """
    deployment = await platform.get_deployment(name, settings.watch_namespace)
    pods = await platform.list_member_pods(deployment.namespace, deployment_labels(deployment.name))
    return {**_info(deployment), "member_groups": group_members(deployment, pods)}

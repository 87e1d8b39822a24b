"""
Topology comparison between a cluster health report and a deployment spec.

Agents count regardless of their status; DBServers and coordinators only count
when reported GOOD.
"""
from typing import NamedTuple

from arango_operator.exceptions import TopologyMismatchError
from arango_operator.models.deployment import DeploymentSpec
from arango_operator.models.health import ClusterHealthReport, ServerRole, ServerStatus


class TopologyCounts(NamedTuple):
    """Member counts as (agents, good DBServers, good coordinators)."""

    agents: int
    good_dbservers: int
    good_coordinators: int


def desired_topology(spec: DeploymentSpec) -> TopologyCounts:
    return TopologyCounts(spec.agents.count, spec.dbservers.count, spec.coordinators.count)


def observed_topology(report: ClusterHealthReport) -> TopologyCounts:
    """Count the members of a health report per role."""
    agents = 0
    good_dbservers = 0
    good_coordinators = 0
    for member in report.members:
        if member.role == ServerRole.AGENT:
            agents += 1
        elif member.role == ServerRole.DBSERVER:
            if member.status == ServerStatus.GOOD:
                good_dbservers += 1
        elif member.role == ServerRole.COORDINATOR:
            if member.status == ServerStatus.GOOD:
                good_coordinators += 1
        else:
            raise ValueError(f"Unhandled server role: {member.role!r}")
    return TopologyCounts(agents, good_dbservers, good_coordinators)


def check_topology(report: ClusterHealthReport, spec: DeploymentSpec) -> TopologyCounts:
    """
    Verify that the observed topology matches the desired counts.

    Returns:
        The observed counts

    Raises:
        TopologyMismatchError: If any count differs (retryable)
    """
    expected = desired_topology(spec)
    observed = observed_topology(report)
    if observed != expected:
        raise TopologyMismatchError(expected, observed)
    return observed


def satisfies(report: ClusterHealthReport, spec: DeploymentSpec) -> bool:
    try:
        check_topology(report, spec)
    except TopologyMismatchError:
        return False
    return True

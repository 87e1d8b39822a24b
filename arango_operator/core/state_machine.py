"""
Deployment phase state machine.

The phase is never mutated in place: every reconciliation pass collects the
facts it observed into a ``PhaseObservation`` and calls ``compute_phase``.
Replaying the same observation yields the same phase.

Phases:
- Created: resources are being provisioned, cluster not yet converged
- Running: topology matches the spec and the version endpoint answers
- Upgrading: member pods run an image other than the desired one
- Failed: provisioning error that needs external intervention, or invalid spec
- Terminating: deletion requested, member pods still present
- Terminated: deletion requested, all member pods gone

Usage:
    >>> from arango_operator.core.state_machine import PhaseObservation, compute_phase
    >>> compute_phase(PhaseObservation(topology_satisfied=True, version_available=True))
    <DeploymentPhase.RUNNING: 'Running'>
"""
from typing import Dict, FrozenSet, Optional, Set

from pydantic import BaseModel, Field

from arango_operator.config.logging import get_logger
from arango_operator.models.deployment import DeploymentPhase

logger = get_logger(__name__)


class PhaseObservation(BaseModel):
    """Facts gathered by one reconciliation pass."""

    previous_phase: Optional[DeploymentPhase] = None
    deletion_requested: bool = False
    member_pods_remaining: int = 0
    fatal_error: Optional[str] = None
    validation_error: Optional[str] = None
    desired_image: Optional[str] = None
    running_images: FrozenSet[str] = Field(default_factory=frozenset)
    topology_satisfied: bool = False
    version_available: bool = False


class DeploymentStateMachine:
    """
    Phase transitions of an ArangoDeployment.

    TRANSITIONS documents the legal edges; ``compute_phase`` only ever produces
    targets listed here. Failed is reachable from every non-terminal phase and
    is left as soon as a pass no longer observes the failure.
    """

    TRANSITIONS: Dict[DeploymentPhase, Set[DeploymentPhase]] = {
        DeploymentPhase.CREATED: {
            DeploymentPhase.RUNNING,      # Cluster converged
            DeploymentPhase.UPGRADING,    # Image changed before convergence
            DeploymentPhase.FAILED,       # Provisioning failed
            DeploymentPhase.TERMINATING,  # Deletion requested
            DeploymentPhase.TERMINATED,
        },
        DeploymentPhase.RUNNING: {
            DeploymentPhase.UPGRADING,
            DeploymentPhase.FAILED,
            DeploymentPhase.TERMINATING,
            DeploymentPhase.TERMINATED,
        },
        DeploymentPhase.UPGRADING: {
            DeploymentPhase.RUNNING,      # All members on the new image and healthy
            DeploymentPhase.FAILED,
            DeploymentPhase.TERMINATING,
            DeploymentPhase.TERMINATED,
        },
        DeploymentPhase.FAILED: {
            DeploymentPhase.CREATED,      # Underlying condition resolved
            DeploymentPhase.RUNNING,
            DeploymentPhase.UPGRADING,
            DeploymentPhase.TERMINATING,
            DeploymentPhase.TERMINATED,
        },
        DeploymentPhase.TERMINATING: {
            DeploymentPhase.TERMINATED,
        },
        DeploymentPhase.TERMINATED: set(),
    }

    @classmethod
    def can_transition(
        cls,
        from_phase: Optional[DeploymentPhase],
        to_phase: DeploymentPhase,
    ) -> bool:
        """
        Check if a phase transition is valid. Staying in a phase is always valid.

        Example:
            >>> DeploymentStateMachine.can_transition(DeploymentPhase.CREATED, DeploymentPhase.RUNNING)
            True
            >>> DeploymentStateMachine.can_transition(DeploymentPhase.TERMINATED, DeploymentPhase.RUNNING)
            False
        """
        if from_phase is None or from_phase == to_phase:
            return True
        return to_phase in cls.TRANSITIONS.get(from_phase, set())

    @classmethod
    def compute_phase(cls, observation: PhaseObservation) -> DeploymentPhase:
        """
        Derive the phase from the previous phase and the facts of the current pass.

        Priority: deletion, failures, upgrade, convergence, then the previous phase.
        """
        previous = observation.previous_phase

        if observation.deletion_requested:
            if observation.member_pods_remaining == 0:
                return DeploymentPhase.TERMINATED
            return DeploymentPhase.TERMINATING

        if observation.fatal_error or observation.validation_error:
            return DeploymentPhase.FAILED

        if observation.desired_image and any(
            image != observation.desired_image for image in observation.running_images
        ):
            return DeploymentPhase.UPGRADING

        if observation.topology_satisfied and observation.version_available:
            return DeploymentPhase.RUNNING

        # Not converged (yet): keep what we had, but never stay Failed once the
        # failure is gone, and never resurrect a terminal phase.
        if previous in (None, DeploymentPhase.FAILED, DeploymentPhase.TERMINATING, DeploymentPhase.TERMINATED):
            return DeploymentPhase.CREATED
        return previous


def compute_phase(observation: PhaseObservation) -> DeploymentPhase:
    """Compute the next phase and log transitions the table does not list."""
    phase = DeploymentStateMachine.compute_phase(observation)
    if not DeploymentStateMachine.can_transition(observation.previous_phase, phase):
        logger.warning(
            "unexpected_phase_transition",
            from_phase=observation.previous_phase.value if observation.previous_phase else None,
            to_phase=phase.value,
        )
    return phase

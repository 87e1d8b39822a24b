"""
Core reconciliation logic.

This package holds the pure parts of the convergence engine:
- Topology comparison of a health report against a deployment spec
- Phase state machine computed fresh on every reconciliation pass
"""

# Import directly from submodules:
# from arango_operator.core.state_machine import DeploymentStateMachine, PhaseObservation, compute_phase
# from arango_operator.core.topology import check_topology, satisfies

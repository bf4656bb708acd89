"""Reference graph storage and dependency planning."""

from tablespine.graph.planner import (
    CYCLE_WARNING,
    ComputedPlan,
    DependencyPlanner,
    PropagationEdge,
    SeedGroup,
    UpdateStep,
)
from tablespine.graph.references import ReferenceEdge, ReferenceRepository

__all__ = [
    "CYCLE_WARNING",
    "ComputedPlan",
    "DependencyPlanner",
    "PropagationEdge",
    "ReferenceEdge",
    "ReferenceRepository",
    "SeedGroup",
    "UpdateStep",
]

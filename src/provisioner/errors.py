"""Error taxonomy for the provisioning engine.

Graph, validation and planning errors are raised synchronously before any
provider side effect occurs. Execution errors are local to one resource:
the executor captures them into the apply report instead of raising.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ResourceKey, ResourceRef
    from .validation import Violation


class ProvisioningError(Exception):
    """Base class for all engine errors."""

    pass


# =============================================================================
# Pre-planning (fatal, reject the whole run)
# =============================================================================


class GraphError(ProvisioningError):
    """Raised when the resource set cannot form a dependency graph."""

    pass


class DuplicateResourceError(GraphError):
    """Raised when two resources share the same (kind, name)."""

    def __init__(self, key: ResourceKey) -> None:
        self.key = key
        super().__init__(f"Duplicate resource '{key}'")


class UnresolvedReferenceError(GraphError):
    """Raised when a reference targets a resource not in the input set."""

    def __init__(self, source: ResourceKey, target: ResourceKey | ResourceRef) -> None:
        self.source = source
        self.target = target
        super().__init__(f"Resource '{source}' references unknown resource '{target}'")


class CyclicDependencyError(GraphError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, cycle: list[ResourceKey]) -> None:
        self.cycle = cycle
        path = " -> ".join(str(key) for key in [*cycle, cycle[0]]) if cycle else ""
        super().__init__(f"Circular dependency detected: {path}")


class ValidationFailedError(ProvisioningError):
    """Raised when validation produced at least one fatal violation."""

    def __init__(self, violations: list[Violation]) -> None:
        self.violations = violations
        lines = "\n  - ".join(str(v) for v in violations)
        super().__init__(f"Validation failed with {len(violations)} violation(s):\n  - {lines}")


class PlanningError(ProvisioningError):
    """Raised when a plan cannot be ordered."""

    pass


class PreventDestroyError(PlanningError):
    """Raised when a plan would destroy a resource with prevent_destroy set."""

    def __init__(self, key: ResourceKey) -> None:
        self.key = key
        super().__init__(
            f"Resource '{key}' has lifecycle.prevent_destroy set but the plan "
            f"would destroy it"
        )


class UnknownKindError(ProvisioningError):
    """Raised when no provider is registered for a resource kind."""

    pass


class LoadError(ProvisioningError):
    """Raised when a desired-state document cannot be loaded."""

    pass


class StateStoreError(ProvisioningError):
    """Raised when the state store cannot be read or written."""

    pass


# =============================================================================
# Execution (per resource, captured in the apply report)
# =============================================================================


class ExecutionError(ProvisioningError):
    """Raised by providers when an operation fails."""

    pass


class TransientExecutionError(ExecutionError):
    """An execution error that may succeed on retry (throttling, conflicts)."""

    pass


class FatalExecutionError(ExecutionError):
    """An execution error that will not succeed on retry."""

    pass


class OperationTimeoutError(ExecutionError):
    """Raised when a provider operation exceeds its deadline."""

    pass


class ResourceGoneError(ExecutionError):
    """Raised by a provider when the resource no longer exists provider-side."""

    pass

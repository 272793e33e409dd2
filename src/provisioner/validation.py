"""Pluggable per-kind resource invariants.

The engine defines only the registration and execution contract. Concrete
rules (CIDR containment, naming conventions, ...) are registered by the
caller per resource kind:

```python
registry = ValidatorRegistry()

@registry.rule("aws_subnet")
def subnet_inside_vpc(resource, deps):
    vpc = deps.first("aws_vpc")
    if vpc and not cidr_within(resource.attributes["cidr_block"], vpc["cidr_block"]):
        yield "subnet CIDR must be contained in the VPC CIDR"
```

Violations are collected across all resources in a single pass. Planning
does not proceed if any violation is Fatal; warnings are logged only.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from .errors import ValidationFailedError
from .graph import ResourceGraph
from .models import Resource, ResourceKey

logger = logging.getLogger(__name__)

# Kind that applies a rule to every resource
ANY_KIND = "*"


class Severity(str, Enum):
    """Severity of a violation."""

    FATAL = "fatal"  # Blocks planning
    WARNING = "warning"  # Surfaced, non-blocking


@dataclass(frozen=True)
class Violation:
    """A failed invariant for one resource."""

    key: ResourceKey
    message: str
    severity: Severity = Severity.FATAL
    rule: str = ""

    @property
    def is_fatal(self) -> bool:
        return self.severity == Severity.FATAL

    def __str__(self) -> str:
        rule = f" [{self.rule}]" if self.rule else ""
        return f"{self.severity.value}: {self.key}{rule}: {self.message}"


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list | tuple):
        return tuple(_freeze(v) for v in value)
    return value


class DependencyView(Mapping[ResourceKey, Mapping[str, Any]]):
    """Read-only access to a resource's direct dependencies.

    Values are the dependencies' desired attributes with references
    resolved where the value is known before apply.
    """

    def __init__(self, resource: Resource, graph: ResourceGraph) -> None:
        self._graph = graph
        self._keys = graph.dependencies(resource.key) if resource.key in graph else []
        self._cache: dict[ResourceKey, Mapping[str, Any]] = {}

    def __getitem__(self, key: ResourceKey | str) -> Mapping[str, Any]:  # type: ignore[override]
        key = ResourceKey.parse(key)
        if key not in self._keys:
            raise KeyError(key)
        if key not in self._cache:
            resolved = self._graph.resolve_desired(self._graph.resource(key).attributes)
            self._cache[key] = _freeze(resolved)
        return self._cache[key]

    def __iter__(self) -> Iterator[ResourceKey]:
        return iter(self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    def of_kind(self, kind: str) -> list[Mapping[str, Any]]:
        """Attributes of every dependency of the given kind."""
        return [self[key] for key in self._keys if key.kind == kind]

    def first(self, kind: str) -> Mapping[str, Any] | None:
        """Attributes of the first dependency of the given kind, if any."""
        matches = self.of_kind(kind)
        return matches[0] if matches else None

    def resolve(self, value: Any) -> Any:
        """Resolve references inside ``value`` against desired attributes."""
        return self._graph.resolve_desired(value)


# Returns None, a Violation or message, or an iterable of those
InvariantFn = Callable[[Resource, DependencyView], Any]


@dataclass
class ValidatorRegistry:
    """Per-kind invariant registry."""

    _rules: dict[str, list[InvariantFn]] = field(default_factory=dict)

    def register(self, kind: str, fn: InvariantFn) -> None:
        """Register an invariant for a resource kind ("*" for all kinds)."""
        self._rules.setdefault(kind, []).append(fn)
        logger.debug(
            "Registered invariant",
            extra={"kind": kind, "rule": getattr(fn, "__name__", repr(fn))},
        )

    def rule(self, kind: str) -> Callable[[InvariantFn], InvariantFn]:
        """Decorator form of register()."""

        def decorator(fn: InvariantFn) -> InvariantFn:
            self.register(kind, fn)
            return fn

        return decorator

    def rules_for(self, kind: str) -> list[InvariantFn]:
        return [*self._rules.get(ANY_KIND, []), *self._rules.get(kind, [])]

    def validate_resource(self, resource: Resource, graph: ResourceGraph) -> list[Violation]:
        """Run every applicable invariant for one resource."""
        violations: list[Violation] = []
        deps = DependencyView(resource, graph)

        for fn in self.rules_for(resource.kind):
            rule_name = getattr(fn, "__name__", repr(fn))
            try:
                outcome = fn(resource, deps)
                violations.extend(_normalize(resource.key, rule_name, outcome))
            except Exception as e:
                # A crashing rule is reported, not propagated
                logger.error(
                    "Invariant raised an exception",
                    extra={"resource": str(resource.key), "rule": rule_name, "error": str(e)},
                )
                violations.append(
                    Violation(
                        key=resource.key,
                        message=f"rule raised {type(e).__name__}: {e}",
                        severity=Severity.FATAL,
                        rule=rule_name,
                    )
                )

        return violations

    def validate(self, graph: ResourceGraph) -> list[Violation]:
        """Validate every resource in the graph, collecting all violations."""
        violations: list[Violation] = []
        for resource in graph:
            violations.extend(self.validate_resource(resource, graph))

        for violation in violations:
            log = logger.error if violation.is_fatal else logger.warning
            log(
                "Resource invariant violated",
                extra={
                    "resource": str(violation.key),
                    "rule": violation.rule,
                    "severity": violation.severity.value,
                    "violation": violation.message,
                },
            )
        return violations


def _normalize(key: ResourceKey, rule_name: str, outcome: Any) -> list[Violation]:
    """Convert an invariant's return value into violations."""
    if outcome is None:
        return []
    if isinstance(outcome, Violation | str):
        outcome = [outcome]

    violations: list[Violation] = []
    for item in outcome:
        if isinstance(item, Violation):
            violations.append(item)
        else:
            violations.append(Violation(key=key, message=str(item), rule=rule_name))
    return violations


def raise_for_violations(violations: Iterable[Violation]) -> None:
    """Raise if any violation is fatal.

    Raises:
        ValidationFailedError: Carrying every fatal violation.
    """
    fatal = [v for v in violations if v.is_fatal]
    if fatal:
        raise ValidationFailedError(fatal)

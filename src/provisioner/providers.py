"""Provider callback contract and per-kind registry.

Providers supply the actual side effects (cloud API calls). The engine
never talks to a cloud directly: for every planned operation it hands the
provider a Change and records whatever attributes and handle come back.

One provider is typically registered per resource kind family:

```python
registry = ProviderRegistry()
registry.register("aws_iam_*", IamProvider())
registry.register("aws_vpc", VpcProvider())
```
"""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from .errors import TransientExecutionError, UnknownKindError
from .models import Action, DiffEntry, ResourceKey, StateRecord

logger = logging.getLogger(__name__)


class ErrorClass(str, Enum):
    """Provider classification of an execution error."""

    TRANSIENT = "transient"  # Retried with backoff
    FATAL = "fatal"  # Fails the resource immediately


@dataclass(frozen=True)
class Change:
    """A planned operation as handed to a provider.

    ``attributes`` are the desired attributes with every reference resolved
    against state written earlier in the same apply. Empty for deletes.
    """

    entry: DiffEntry
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> ResourceKey:
        return self.entry.key

    @property
    def kind(self) -> str:
        return self.entry.key.kind

    @property
    def action(self) -> Action:
        return self.entry.action

    @property
    def prior(self) -> StateRecord | None:
        return self.entry.prior

    @property
    def handle(self) -> str | None:
        """Provider handle of the existing instance, if any."""
        return self.entry.prior.handle if self.entry.prior is not None else None


@dataclass(frozen=True)
class ProviderResult:
    """Outcome of a successful provider operation."""

    # Provider-computed attributes (ARNs, generated IDs, ...)
    attributes: dict[str, Any] = field(default_factory=dict)

    # Opaque handle for the resource; None after a delete
    handle: str | None = None


@runtime_checkable
class Provider(Protocol):
    """Per-kind side-effect callback."""

    def execute(self, change: Change) -> ProviderResult:
        """Perform the change. Blocking; runs on a worker thread."""
        ...

    def classify(self, error: Exception) -> ErrorClass:
        """Classify an error raised by execute() or a timeout."""
        ...


def default_classify(error: Exception) -> ErrorClass:
    """Classification used by providers without a classifier of their own."""
    if isinstance(error, TransientExecutionError):
        return ErrorClass.TRANSIENT
    return ErrorClass.FATAL


@dataclass
class ProviderRegistry:
    """Kind-keyed provider registry.

    Lookup tries an exact kind first, then glob patterns in registration order.
    """

    _exact: dict[str, Provider] = field(default_factory=dict)
    _patterns: list[tuple[str, Provider]] = field(default_factory=list)

    def register(self, kind: str, provider: Provider) -> None:
        """Register a provider for a kind or kind glob (e.g. ``aws_iam_*``)."""
        if any(ch in kind for ch in "*?["):
            self._patterns.append((kind, provider))
        else:
            self._exact[kind] = provider
        logger.debug(
            "Registered provider",
            extra={"kind": kind, "provider": type(provider).__name__},
        )

    def get(self, kind: str) -> Provider:
        """Return the provider for a kind.

        Raises:
            UnknownKindError: If no provider matches.
        """
        provider = self._exact.get(kind)
        if provider is not None:
            return provider
        for pattern, candidate in self._patterns:
            if fnmatch.fnmatchcase(kind, pattern):
                return candidate
        raise UnknownKindError(f"No provider registered for kind '{kind}'")

    def __contains__(self, kind: object) -> bool:
        if not isinstance(kind, str):
            return False
        try:
            self.get(kind)
        except UnknownKindError:
            return False
        return True

    def missing_kinds(self, kinds: list[str]) -> list[str]:
        """Kinds from ``kinds`` without a provider."""
        return sorted({kind for kind in kinds if kind not in self})

"""Pydantic models for resources, state, diffs, plans and apply reports.

These models provide:
1. Typed resource identity and cross-resource references
2. Validation at the boundary (fail fast, fail loudly)
3. Serializable plan and report documents for review and tooling

Attribute values are a tagged union of scalars, ResourceRef, lists and
mappings. On the wire a reference is written as ``{"$ref": "kind.name.path"}``
and an unknown value as ``{"$unknown": true}``.
"""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_serializer, field_validator

REF_MARKER = "$ref"
UNKNOWN_MARKER = "$unknown"

# Attribute path resolving to the provider-assigned handle
HANDLE_PATH = "id"


class _Unknown:
    """A value that cannot be known until apply."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __deepcopy__(self, memo: dict[int, Any]) -> _Unknown:
        return self

    def __reduce__(self) -> str:
        return "UNKNOWN"


UNKNOWN: Any = _Unknown()


# =============================================================================
# Identity and references
# =============================================================================


def _check_segment(value: str, what: str) -> str:
    if not value:
        raise ValueError(f"{what} must not be empty")
    if "." in value:
        raise ValueError(f"{what} must not contain '.': {value}")
    return value


class ResourceKey(BaseModel):
    """Identity of a resource: (kind, name), unique within a resource set."""

    model_config = {"frozen": True}

    kind: str
    name: str

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        return _check_segment(v, "kind")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _check_segment(v, "name")

    @classmethod
    def parse(cls, value: str | ResourceKey) -> ResourceKey:
        """Parse ``kind.name`` into a key."""
        if isinstance(value, ResourceKey):
            return value
        kind, sep, name = value.partition(".")
        if not sep:
            raise ValueError(f"Resource key must look like 'kind.name': {value}")
        return cls(kind=kind, name=name)

    def _sort_key(self) -> tuple[str, str]:
        return (self.kind, self.name)

    def __lt__(self, other: ResourceKey) -> bool:
        return self._sort_key() < other._sort_key()

    def __str__(self) -> str:
        return f"{self.kind}.{self.name}"


class ResourceRef(BaseModel):
    """An unresolved forward reference to another resource's attribute."""

    model_config = {"frozen": True}

    kind: str
    name: str
    attribute_path: str = HANDLE_PATH

    @classmethod
    def parse(cls, value: str) -> ResourceRef:
        """Parse ``kind.name[.attribute.path]``; the default path is the handle."""
        parts = value.split(".", 2)
        if len(parts) < 2 or not parts[0] or not parts[1]:
            raise ValueError(f"Reference must look like 'kind.name.path': {value}")
        path = parts[2] if len(parts) == 3 else HANDLE_PATH
        return cls(kind=parts[0], name=parts[1], attribute_path=path)

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(kind=self.kind, name=self.name)

    @property
    def targets_handle(self) -> bool:
        return self.attribute_path in ("", HANDLE_PATH)

    def __str__(self) -> str:
        return f"{self.kind}.{self.name}.{self.attribute_path}"


# =============================================================================
# Value encoding
# =============================================================================


def encode_value(value: Any) -> Any:
    """Convert a Value into plain JSON/YAML-compatible data."""
    if isinstance(value, ResourceRef):
        return {REF_MARKER: str(value)}
    if value is UNKNOWN:
        return {UNKNOWN_MARKER: True}
    if isinstance(value, Mapping):
        return {str(k): encode_value(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [encode_value(v) for v in value]
    return value


def decode_value(value: Any) -> Any:
    """Convert plain data back into a Value (inverse of encode_value)."""
    if isinstance(value, Mapping):
        if set(value.keys()) == {REF_MARKER}:
            return ResourceRef.parse(value[REF_MARKER])
        if set(value.keys()) == {UNKNOWN_MARKER}:
            return UNKNOWN
        return {str(k): decode_value(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [decode_value(v) for v in value]
    return value


def iter_refs(value: Any) -> Iterator[ResourceRef]:
    """Yield every ResourceRef found (recursively) in a Value."""
    if isinstance(value, ResourceRef):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_refs(item)
    elif isinstance(value, list | tuple):
        for item in value:
            yield from iter_refs(item)


def contains_unknown(value: Any) -> bool:
    """Check whether a resolved Value still contains UNKNOWN anywhere."""
    if value is UNKNOWN:
        return True
    if isinstance(value, Mapping):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list | tuple):
        return any(contains_unknown(v) for v in value)
    return False


def format_value(value: Any) -> str:
    """Render a Value for human review."""
    if value is UNKNOWN:
        return "(known after apply)"
    if isinstance(value, ResourceRef):
        return f"${{{value}}}"
    return json.dumps(encode_value(value), sort_keys=True, default=str)


class _AttributesModel(BaseModel):
    """Mixin handling Value encoding for attribute maps."""

    @field_validator("attributes", "computed", mode="before", check_fields=False)
    @classmethod
    def decode_attributes(cls, v: Any) -> Any:
        if v is None:
            return {}
        return decode_value(v)

    @field_serializer("attributes", "computed", check_fields=False)
    def encode_attributes(self, v: dict[str, Any]) -> dict[str, Any]:
        return encode_value(v)


# =============================================================================
# Desired state
# =============================================================================


class Lifecycle(BaseModel):
    """Per-resource lifecycle rules."""

    model_config = {"frozen": True, "extra": "forbid"}

    # Planning fails if the plan would destroy this resource
    prevent_destroy: bool = False

    # Replacement creates the new instance before destroying the old one
    create_before_destroy: bool = False

    # Attribute path patterns excluded from diffing
    ignore_changes: list[str] = Field(default_factory=list)

    # Attribute path patterns whose change forces replacement
    replace_triggered_by: list[str] = Field(default_factory=list)


def _parse_keys(v: Any) -> Any:
    if v is None:
        return []
    if isinstance(v, str | ResourceKey):
        v = [v]
    return [ResourceKey.parse(item) if isinstance(item, str) else item for item in v]


class Resource(_AttributesModel):
    """A single declaratively-managed unit."""

    model_config = {"frozen": True, "populate_by_name": True, "extra": "forbid"}

    kind: str
    name: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[ResourceKey] = Field(default_factory=list, alias="dependsOn")
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        return _check_segment(v, "kind")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _check_segment(v, "name")

    @field_validator("depends_on", mode="before")
    @classmethod
    def parse_depends_on(cls, v: Any) -> Any:
        return _parse_keys(v)

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(kind=self.kind, name=self.name)

    def references(self) -> Iterator[ResourceRef]:
        """Yield every reference in this resource's attributes."""
        yield from iter_refs(self.attributes)


# =============================================================================
# Recorded state
# =============================================================================


class StateRecord(_AttributesModel):
    """Last applied attributes and provider handle for one resource."""

    model_config = {"frozen": True}

    key: ResourceKey

    # Applied desired attributes with references resolved
    attributes: dict[str, Any] = Field(default_factory=dict)

    # Attributes assigned by the provider (ARNs, generated IDs, ...)
    computed: dict[str, Any] = Field(default_factory=dict)

    # Opaque provider handle (e.g. ARN or ID)
    handle: str | None = None

    # Dependencies at apply time, used to order deletes of removed resources
    dependencies: list[ResourceKey] = Field(default_factory=list)

    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("dependencies", mode="before")
    @classmethod
    def parse_dependencies(cls, v: Any) -> Any:
        return _parse_keys(v)


# =============================================================================
# Diff and plan
# =============================================================================


class Action(str, Enum):
    """Action computed for a resource."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "no-op"


ACTION_SYMBOLS: dict[Action, str] = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.DELETE: "-",
    Action.NOOP: " ",
}


class AttributeDiff(BaseModel):
    """A changed attribute path with its old and new values."""

    model_config = {"frozen": True}

    path: str
    old: Any = None
    new: Any = None
    requires_replace: bool = False

    @field_validator("old", "new", mode="before")
    @classmethod
    def decode_values(cls, v: Any) -> Any:
        return decode_value(v)

    @field_serializer("old", "new")
    def encode_values(self, v: Any) -> Any:
        return encode_value(v)

    def __str__(self) -> str:
        suffix = " (forces replacement)" if self.requires_replace else ""
        return f"{self.path}: {format_value(self.old)} -> {format_value(self.new)}{suffix}"


class DiffEntry(BaseModel):
    """Classification of one resource against recorded state."""

    model_config = {"frozen": True}

    key: ResourceKey
    action: Action
    attribute_diffs: list[AttributeDiff] = Field(default_factory=list)

    # Desired resource (unresolved); None for deletes
    desired: Resource | None = None

    # Prior-state snapshot; None for creates
    prior: StateRecord | None = None

    # Delete/Create half of a replacement
    replacement: bool = False

    @property
    def kind(self) -> str:
        return self.key.kind

    def describe(self) -> str:
        action = self.action.value
        if self.replacement:
            action = f"{action}, replace"
        return f"{ACTION_SYMBOLS[self.action]} {self.key} ({action})"


class Stage(BaseModel):
    """Entries that can execute without depending on each other."""

    model_config = {"frozen": True}

    index: int
    entries: list[DiffEntry] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)


class Plan(BaseModel):
    """Ordered stages of operations, immutable once produced."""

    model_config = {"frozen": True}

    stages: list[Stage] = Field(default_factory=list)
    destroy: bool = False
    targets: list[ResourceKey] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_empty(self) -> bool:
        return not any(stage.entries for stage in self.stages)

    def entries(self) -> Iterator[DiffEntry]:
        """Yield every entry in execution order."""
        for stage in self.stages:
            yield from stage.entries

    def stage_index(self, key: ResourceKey | str, action: Action | None = None) -> int:
        """Return the stage index of an entry.

        Raises:
            KeyError: If no matching entry exists.
        """
        key = ResourceKey.parse(key)
        for stage in self.stages:
            for entry in stage.entries:
                if entry.key == key and (action is None or entry.action == action):
                    return stage.index
        raise KeyError(f"No plan entry for {key}")

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in Action if a != Action.NOOP}
        for entry in self.entries():
            counts[entry.action.value] += 1
        return counts

    def render(self) -> str:
        """Render the plan as a human-readable listing for review."""
        if self.is_empty:
            return "No changes. Infrastructure matches the configuration."

        lines: list[str] = []
        for stage in self.stages:
            lines.append(f"Stage {stage.index + 1}:")
            for entry in stage.entries:
                lines.append(f"  {entry.describe()}")
                for attr in entry.attribute_diffs:
                    lines.append(f"      {attr}")
        counts = self.summary()
        lines.append(
            f"Plan: {counts['create']} to create, {counts['update']} to update, "
            f"{counts['delete']} to delete."
        )
        return "\n".join(lines)

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), indent=2, sort_keys=True)

    @classmethod
    def from_json(cls, data: str) -> Plan:
        return cls.model_validate_json(data)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.model_dump(mode="json"), sort_keys=False)

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_json() + "\n", encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> Plan:
        return cls.from_json(Path(path).read_text(encoding="utf-8"))


# =============================================================================
# Apply report
# =============================================================================


class ExecutionStatus(str, Enum):
    """Final outcome of one plan entry."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionResult(BaseModel):
    """Per-entry outcome."""

    model_config = {"frozen": True}

    key: ResourceKey
    action: Action
    status: ExecutionStatus
    stage: int
    attempts: int = 0
    replacement: bool = False
    error: str | None = None


class ApplyReport(BaseModel):
    """Summary of an apply run, ordered by plan position."""

    results: list[ExecutionResult] = Field(default_factory=list)

    # Drift conditions noticed during apply (orphaned records, vanished resources)
    drift: list[str] = Field(default_factory=list)

    cancelled: bool = False
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def success(self) -> bool:
        return not self.cancelled and all(
            r.status == ExecutionStatus.SUCCEEDED for r in self.results
        )

    def _with_status(self, status: ExecutionStatus) -> list[ExecutionResult]:
        return [r for r in self.results if r.status == status]

    @property
    def succeeded(self) -> list[ExecutionResult]:
        return self._with_status(ExecutionStatus.SUCCEEDED)

    @property
    def failed(self) -> list[ExecutionResult]:
        return self._with_status(ExecutionStatus.FAILED)

    @property
    def skipped(self) -> list[ExecutionResult]:
        return self._with_status(ExecutionStatus.SKIPPED)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def status_of(self, key: ResourceKey | str) -> ExecutionStatus:
        """Return the final status for a key.

        For replacements the worst of both halves is returned.

        Raises:
            KeyError: If the key is not in the report.
        """
        key = ResourceKey.parse(key)
        statuses = [r.status for r in self.results if r.key == key]
        if not statuses:
            raise KeyError(f"No result for {key}")
        for status in (ExecutionStatus.FAILED, ExecutionStatus.SKIPPED):
            if status in statuses:
                return status
        return ExecutionStatus.SUCCEEDED

    def summary(self) -> dict[str, int]:
        counts = {s.value: 0 for s in ExecutionStatus}
        for result in self.results:
            counts[result.status.value] += 1
        return counts

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), indent=2, sort_keys=True)

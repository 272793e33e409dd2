"""Desired-state document loading with validation.

A document is a YAML (or JSON) mapping with a ``resources`` list:

```yaml
resources:
  - kind: aws_vpc
    name: main
    attributes:
      cidr_block: 10.0.0.0/16
  - kind: aws_subnet
    name: public_a
    attributes:
      vpc_id: ${aws_vpc.main.id}
      cidr_block: 10.0.1.0/24
    lifecycle:
      create_before_destroy: true
```

References are written either as ``{"$ref": "kind.name.path"}`` or as a
string consisting of exactly ``${kind.name.path}``. File size and resource
count are bounded.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_DOCUMENT_SIZE_BYTES, MAX_RESOURCES_PER_DOCUMENT
from .errors import LoadError
from .models import Resource, ResourceRef, decode_value

logger = logging.getLogger(__name__)

INTERPOLATION_PATTERN = re.compile(r"^\$\{([^{}\s]+)\}$")


def _expand_interpolations(value: Any) -> Any:
    """Turn ``${kind.name.path}`` strings into ResourceRef values."""
    if isinstance(value, str):
        match = INTERPOLATION_PATTERN.match(value)
        if match:
            return ResourceRef.parse(match.group(1))
        return value
    if isinstance(value, dict):
        return {k: _expand_interpolations(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_interpolations(v) for v in value]
    return value


def parse_resources(data: Any, source: str = "<document>") -> list[Resource]:
    """Validate a parsed document into resources.

    Raises:
        LoadError: If the document is malformed or fails validation.
    """
    if not isinstance(data, dict):
        raise LoadError(f"Document must be a mapping: {source}")

    items = data.get("resources", [])
    if not isinstance(items, list):
        raise LoadError(f"'resources' must be a list: {source}")

    if len(items) > MAX_RESOURCES_PER_DOCUMENT:
        raise LoadError(
            f"Document declares {len(items)} resources, maximum is "
            f"{MAX_RESOURCES_PER_DOCUMENT}: {source}"
        )

    resources: list[Resource] = []
    errors: list[str] = []
    for position, item in enumerate(items):
        if not isinstance(item, dict):
            errors.append(f"  - resources.{position}: must be a mapping")
            continue

        item = dict(item)
        try:
            item["attributes"] = _expand_interpolations(decode_value(item.get("attributes") or {}))
        except ValueError as e:
            errors.append(f"  - resources.{position}.attributes: {e}")
            continue

        try:
            resources.append(Resource.model_validate(item))
        except ValidationError as e:
            # Format Pydantic validation errors for readability
            for error in e.errors():
                loc = ".".join(str(x) for x in error["loc"])
                errors.append(f"  - resources.{position}.{loc}: {error['msg']}")

    if errors:
        error_list = "\n".join(errors)
        raise LoadError(f"Validation failed for {source}:\n{error_list}")

    return resources


def load_resources(path: Path) -> list[Resource]:
    """Load and validate a desired-state document from disk.

    Raises:
        LoadError: If the file cannot be read, parsed or validated.
    """
    path = Path(path)
    if not path.exists():
        raise LoadError(f"Document not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise LoadError(f"Failed to stat document {path}: {e}") from e

    if file_size > MAX_DOCUMENT_SIZE_BYTES:
        raise LoadError(
            f"Document exceeds maximum size of {MAX_DOCUMENT_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise LoadError(f"Failed to read document {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise LoadError(f"Invalid YAML in {path}: {e}") from e

    resources = parse_resources(raw_data, source=str(path))
    logger.info("Loaded %d resources from %s", len(resources), path)
    return resources

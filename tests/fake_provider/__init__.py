"""Fake cloud provider for engine integration testing.

This package provides an in-memory stand-in for a cloud API so that plans
can be applied end to end without any network access.

Key Features:
- In-memory object store keyed by provider handle
- Deterministic handles and computed attributes
- Call recording (order, concurrency high-water mark)
- Error injection per resource: transient, fatal, gone, slow

Usage:
    from fake_provider import FakeCloud, FakeProvider

    cloud = FakeCloud()
    registry = ProviderRegistry()
    registry.register("*", FakeProvider(cloud))

    cloud.fail("aws_vpc.main", TransientExecutionError("throttled"), times=2)
    report = await engine.apply(plan)

    assert cloud.call_count("aws_vpc.main") == 3
"""

from .cloud import CallRecord, FakeCloud, FakeObject
from .provider import FakeProvider, ThrottledError

__all__ = [
    "CallRecord",
    "FakeCloud",
    "FakeObject",
    "FakeProvider",
    "ThrottledError",
]

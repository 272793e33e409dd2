"""Tests for the diff engine."""

import pytest

from provisioner.differ import (
    ReplaceRuleRegistry,
    compare_attributes,
    compute_diff,
    merge_ignored,
    values_equal,
)
from provisioner.graph import build_graph
from provisioner.models import UNKNOWN, Action, Lifecycle, Resource, ResourceKey, ResourceRef, StateRecord
from provisioner.state import InMemoryStateStore


def key(value: str) -> ResourceKey:
    return ResourceKey.parse(value)


def recorded(name: str, kind: str = "disk", handle: str | None = None, **attributes) -> StateRecord:
    return StateRecord(
        key=ResourceKey(kind=kind, name=name),
        attributes=attributes,
        handle=handle or f"{kind}-{name}",
    )


def store_with(*records: StateRecord) -> InMemoryStateStore:
    return InMemoryStateStore({r.key: r for r in records})


def by_key(entries) -> dict[ResourceKey, list]:
    grouped: dict[ResourceKey, list] = {}
    for entry in entries:
        grouped.setdefault(entry.key, []).append(entry)
    return grouped


class TestValuesEqual:
    def test_scalars(self) -> None:
        assert values_equal(1, 1)
        assert values_equal("a", "a")
        assert not values_equal(1, 2)

    def test_bool_is_not_int(self) -> None:
        assert not values_equal(True, 1)
        assert not values_equal(0, False)

    def test_structures(self) -> None:
        assert values_equal({"a": [1, {"b": 2}]}, {"a": [1, {"b": 2}]})
        assert not values_equal([1, 2], [2, 1])
        assert not values_equal({"a": 1}, {"a": 1, "b": 2})
        assert not values_equal([1], {"0": 1})

    def test_unknown_never_equal(self) -> None:
        assert not values_equal(UNKNOWN, UNKNOWN)
        assert not values_equal(UNKNOWN, "x")


class TestCompareAttributes:
    def test_changed_scalar(self) -> None:
        diffs = compare_attributes({"size": 2}, {"size": 3})

        assert len(diffs) == 1
        assert (diffs[0].path, diffs[0].old, diffs[0].new) == ("size", 2, 3)

    def test_nested_mapping_reports_leaf_paths(self) -> None:
        diffs = compare_attributes(
            {"tags": {"Name": "a", "Env": "dev"}},
            {"tags": {"Name": "a", "Env": "prod", "Owner": "ops"}},
        )

        assert [d.path for d in diffs] == ["tags.Env", "tags.Owner"]
        assert diffs[1].old is None

    def test_removed_attribute(self) -> None:
        diffs = compare_attributes({"size": 2, "iops": 100}, {"size": 2})

        assert [(d.path, d.old, d.new) for d in diffs] == [("iops", 100, None)]

    def test_lists_compared_whole(self) -> None:
        diffs = compare_attributes({"zones": ["a", "b"]}, {"zones": ["a", "c"]})

        assert [d.path for d in diffs] == ["zones"]


class TestMergeIgnored:
    def test_keeps_prior_for_ignored_path(self) -> None:
        merged = merge_ignored(
            {"size": 3, "tags": {"Name": "new", "Env": "prod"}},
            {"size": 2, "tags": {"Name": "old", "Env": "dev"}},
            ["tags.Name"],
        )

        assert merged == {"size": 3, "tags": {"Name": "old", "Env": "prod"}}

    def test_ignored_absent_in_prior_is_dropped(self) -> None:
        assert merge_ignored({"size": 3, "extra": 1}, {"size": 2}, ["extra"]) == {"size": 3}

    def test_no_patterns_returns_copy(self) -> None:
        desired = {"a": 1}
        merged = merge_ignored(desired, {"a": 2}, [])

        assert merged == desired
        assert merged is not desired


class TestComputeDiff:
    """Tests for compute_diff()."""

    def test_create_when_no_record(self) -> None:
        disk = Resource(kind="disk", name="d", attributes={"size": 2})
        entries = compute_diff(build_graph([disk]), InMemoryStateStore())

        assert [(e.key, e.action) for e in entries] == [(disk.key, Action.CREATE)]
        assert entries[0].attribute_diffs[0].new == 2
        assert entries[0].prior is None

    def test_noop_when_equal(self) -> None:
        disk = Resource(kind="disk", name="d", attributes={"size": 2})
        entries = compute_diff(build_graph([disk]), store_with(recorded("d", size=2)))

        assert entries[0].action == Action.NOOP
        assert entries[0].attribute_diffs == []

    def test_update_lists_exactly_changed_attribute(self) -> None:
        disk = Resource(kind="disk", name="d", attributes={"size": 3, "type": "ssd"})
        entries = compute_diff(build_graph([disk]), store_with(recorded("d", size=2, type="ssd")))

        assert entries[0].action == Action.UPDATE
        assert [(d.path, d.old, d.new) for d in entries[0].attribute_diffs] == [("size", 2, 3)]

    def test_delete_when_removed_from_config(self) -> None:
        entries = compute_diff(build_graph([]), store_with(recorded("old", size=1)))

        assert [(e.key, e.action) for e in entries] == [(key("disk.old"), Action.DELETE)]
        assert entries[0].desired is None
        assert entries[0].prior is not None

    def test_every_key_classified(self) -> None:
        resources = [
            Resource(kind="disk", name="new", attributes={"size": 1}),
            Resource(kind="disk", name="same", attributes={"size": 1}),
            Resource(kind="disk", name="changed", attributes={"size": 5}),
        ]
        store = store_with(
            recorded("same", size=1), recorded("changed", size=1), recorded("gone", size=1)
        )

        actions = {e.key.name: e.action for e in compute_diff(build_graph(resources), store)}

        assert actions == {
            "new": Action.CREATE,
            "same": Action.NOOP,
            "changed": Action.UPDATE,
            "gone": Action.DELETE,
        }

    def test_handle_reference_matches_recorded_handle(self) -> None:
        vpc = Resource(kind="vpc", name="main", attributes={"cidr": "10.0.0.0/16"})
        subnet = Resource(kind="subnet", name="a", attributes={"vpc_id": ResourceRef.parse("vpc.main")})
        store = store_with(
            recorded("main", kind="vpc", handle="vpc-123", cidr="10.0.0.0/16"),
            recorded("a", kind="subnet", vpc_id="vpc-123"),
        )

        entries = compute_diff(build_graph([vpc, subnet]), store)

        assert {e.action for e in entries} == {Action.NOOP}

    def test_reference_to_new_resource_is_unknown(self) -> None:
        vpc = Resource(kind="vpc", name="main")
        subnet = Resource(kind="subnet", name="a", attributes={"vpc_id": ResourceRef.parse("vpc.main")})
        store = store_with(recorded("a", kind="subnet", vpc_id="vpc-old"))

        grouped = by_key(compute_diff(build_graph([vpc, subnet]), store))

        subnet_entry = grouped[subnet.key][0]
        assert subnet_entry.action == Action.UPDATE
        assert subnet_entry.attribute_diffs[0].new is UNKNOWN

    def test_reference_to_computed_attribute(self) -> None:
        role = Resource(kind="role", name="r")
        fn = Resource(kind="function", name="f", attributes={"role_arn": ResourceRef.parse("role.r.arn")})
        role_record = StateRecord(key=role.key, computed={"arn": "arn:role/r"}, handle="r-1")
        store = store_with(role_record, recorded("f", kind="function", role_arn="arn:role/r"))

        entries = compute_diff(build_graph([role, fn]), store)

        assert {e.action for e in entries} == {Action.NOOP}

    def test_ignore_changes(self) -> None:
        disk = Resource(
            kind="disk",
            name="d",
            attributes={"size": 2, "tags": {"Name": "new"}},
            lifecycle=Lifecycle(ignore_changes=["tags"]),
        )
        store = store_with(recorded("d", size=2, tags={"Name": "old"}))

        entries = compute_diff(build_graph([disk]), store)

        assert entries[0].action == Action.NOOP

    def test_replace_rule_splits_entry(self) -> None:
        rules = ReplaceRuleRegistry()
        rules.register("disk", "zone")
        disk = Resource(kind="disk", name="d", attributes={"zone": "b", "size": 2})
        store = store_with(recorded("d", zone="a", size=2))

        entries = compute_diff(build_graph([disk]), store, rules)

        assert [(e.action, e.replacement) for e in entries] == [
            (Action.DELETE, True),
            (Action.CREATE, True),
        ]
        create = entries[1]
        assert create.attribute_diffs[0].requires_replace
        assert create.prior is not None

    def test_replace_triggered_by_lifecycle(self) -> None:
        disk = Resource(
            kind="disk",
            name="d",
            attributes={"image": "v2"},
            lifecycle=Lifecycle(replace_triggered_by=["image"]),
        )
        entries = compute_diff(build_graph([disk]), store_with(recorded("d", image="v1")))

        assert [e.action for e in entries] == [Action.DELETE, Action.CREATE]

    def test_replace_predicate(self) -> None:
        rules = ReplaceRuleRegistry()
        rules.register_predicate("disk", lambda path, old, new: path == "size" and new < old)
        disk = Resource(kind="disk", name="d", attributes={"size": 1})

        entries = compute_diff(build_graph([disk]), store_with(recorded("d", size=2)), rules)

        assert [e.action for e in entries] == [Action.DELETE, Action.CREATE]

    def test_replacement_makes_dependent_handles_unknown(self) -> None:
        rules = ReplaceRuleRegistry()
        rules.register("vpc", "cidr")
        vpc = Resource(kind="vpc", name="main", attributes={"cidr": "10.1.0.0/16"})
        subnet = Resource(kind="subnet", name="a", attributes={"vpc_id": ResourceRef.parse("vpc.main")})
        store = store_with(
            recorded("main", kind="vpc", handle="vpc-1", cidr="10.0.0.0/16"),
            recorded("a", kind="subnet", vpc_id="vpc-1"),
        )

        grouped = by_key(compute_diff(build_graph([vpc, subnet]), store, rules))

        assert grouped[subnet.key][0].action == Action.UPDATE
        assert grouped[subnet.key][0].attribute_diffs[0].new is UNKNOWN

    def test_destroy_mode_deletes_everything_recorded(self) -> None:
        disk = Resource(kind="disk", name="d", attributes={"size": 2})
        store = store_with(recorded("d", size=2), recorded("other", size=1))

        entries = compute_diff(build_graph([disk]), store, destroy=True)

        assert [(e.key.name, e.action) for e in entries] == [
            ("d", Action.DELETE),
            ("other", Action.DELETE),
        ]

    def test_does_not_mutate_state(self) -> None:
        disk = Resource(kind="disk", name="d", attributes={"size": 3})
        store = store_with(recorded("d", size=2))
        before = store.snapshot()

        compute_diff(build_graph([disk]), store)

        assert store.snapshot() == before

    @pytest.mark.parametrize("value", [True, 1])
    def test_type_change_is_update(self, value) -> None:
        disk = Resource(kind="disk", name="d", attributes={"encrypted": value})
        store = store_with(recorded("d", encrypted=1 if value is True else True))

        entries = compute_diff(build_graph([disk]), store)

        assert entries[0].action == Action.UPDATE

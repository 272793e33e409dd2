"""Tests for dependency-aware planning."""

import pytest

from provisioner.differ import ReplaceRuleRegistry, compute_diff
from provisioner.errors import PreventDestroyError
from provisioner.graph import build_graph
from provisioner.models import Action, Lifecycle, Resource, ResourceKey, ResourceRef, StateRecord
from provisioner.planner import build_plan
from provisioner.state import InMemoryStateStore


def key(value: str) -> ResourceKey:
    return ResourceKey.parse(value)


def ref(value: str) -> ResourceRef:
    return ResourceRef.parse(value)


def plan_for(resources, store=None, rules=None, targets=None, destroy=False):
    graph = build_graph(resources)
    diffs = compute_diff(graph, store or InMemoryStateStore(), rules, destroy=destroy)
    return build_plan(diffs, graph, targets=targets, destroy=destroy)


def record(value: str, dependencies=(), **attributes) -> StateRecord:
    k = key(value)
    return StateRecord(
        key=k,
        attributes=attributes,
        handle=f"{k.kind}-{k.name}",
        dependencies=list(dependencies),
    )


def store_with(*records: StateRecord) -> InMemoryStateStore:
    return InMemoryStateStore({r.key: r for r in records})


@pytest.fixture
def network() -> list[Resource]:
    return [
        Resource(kind="vpc", name="main", attributes={"cidr": "10.0.0.0/16"}),
        Resource(kind="subnet", name="a", attributes={"vpc_id": ref("vpc.main"), "cidr": "10.0.1.0/24"}),
        Resource(kind="subnet", name="b", attributes={"vpc_id": ref("vpc.main"), "cidr": "10.0.2.0/24"}),
        Resource(kind="instance", name="web", attributes={"subnet_id": ref("subnet.a")}),
    ]


class TestStages:
    """Tests for stage ordering."""

    def test_creates_follow_dependencies(self, network: list[Resource]) -> None:
        plan = plan_for(network)

        assert plan.stage_index("vpc.main") == 0
        assert plan.stage_index("subnet.a") == 1
        assert plan.stage_index("subnet.b") == 1
        assert plan.stage_index("instance.web") == 2
        assert plan.summary() == {"create": 4, "update": 0, "delete": 0}

    def test_independent_resources_share_stage(self) -> None:
        plan = plan_for([Resource(kind="bucket", name=n) for n in ("a", "b", "c")])

        assert len(plan.stages) == 1
        assert [e.key.name for e in plan.stages[0].entries] == ["a", "b", "c"]

    def test_noops_are_excluded(self, network: list[Resource]) -> None:
        store = store_with(record("vpc.main", cidr="10.0.0.0/16"))

        plan = plan_for(network, store)

        assert all(e.key != key("vpc.main") for e in plan.entries())
        assert plan.stage_index("subnet.a") == 0

    def test_deletes_run_dependents_first(self) -> None:
        store = store_with(
            record("vpc.main", cidr="10.0.0.0/16"),
            record("subnet.a", dependencies=["vpc.main"], vpc_id="vpc-main"),
            record("instance.web", dependencies=["subnet.a"], subnet_id="subnet-a"),
        )

        plan = plan_for([], store)

        assert plan.stage_index("instance.web") < plan.stage_index("subnet.a")
        assert plan.stage_index("subnet.a") < plan.stage_index("vpc.main")
        assert plan.summary()["delete"] == 3

    def test_removed_resource_outlives_dependent_update(self) -> None:
        store = store_with(
            record("vpc.old", cidr="10.0.0.0/16"),
            record("subnet.a", dependencies=["vpc.old"], vpc_id="vpc-old", cidr="10.0.1.0/24"),
        )
        resources = [Resource(kind="subnet", name="a", attributes={"vpc_id": "vpc-static", "cidr": "10.0.1.0/24"})]

        plan = plan_for(resources, store)

        assert plan.summary() == {"create": 0, "update": 1, "delete": 1}
        assert plan.stage_index("subnet.a", Action.UPDATE) < plan.stage_index("vpc.old", Action.DELETE)

    def test_removed_resource_under_replaced_parent(self) -> None:
        rules = ReplaceRuleRegistry()
        rules.register("vpc", "cidr")
        store = store_with(
            record("vpc.main", cidr="10.0.0.0/16"),
            record("subnet.old", dependencies=["vpc.main"], vpc_id="vpc-main"),
            record("instance.web", dependencies=["subnet.old"], subnet_id="subnet-old"),
        )
        resources = [
            Resource(kind="vpc", name="main", attributes={"cidr": "10.1.0.0/16"}),
            Resource(kind="instance", name="web", attributes={"subnet_id": ref("vpc.main")}),
        ]

        plan = plan_for(resources, store, rules)

        assert plan.stage_index("subnet.old", Action.DELETE) < plan.stage_index("vpc.main", Action.DELETE)
        assert plan.stage_index("vpc.main", Action.DELETE) < plan.stage_index("vpc.main", Action.CREATE)
        assert plan.stage_index("vpc.main", Action.CREATE) < plan.stage_index("instance.web", Action.UPDATE)

    def test_empty_plan(self) -> None:
        plan = plan_for([])

        assert plan.is_empty
        assert plan.stages == []

    def test_stages_are_deterministic(self, network: list[Resource]) -> None:
        first = plan_for(network)
        second = plan_for(list(reversed(network)))

        def layout(plan):
            return [[(str(e.key), e.action) for e in s.entries] for s in plan.stages]

        assert layout(first) == layout(second)


class TestReplacement:
    """Tests for replacement ordering."""

    @pytest.fixture
    def rules(self) -> ReplaceRuleRegistry:
        rules = ReplaceRuleRegistry()
        rules.register("vpc", "cidr")
        return rules

    @pytest.fixture
    def applied(self) -> InMemoryStateStore:
        return store_with(
            record("vpc.main", cidr="10.0.0.0/16"),
            record("subnet.a", dependencies=["vpc.main"], vpc_id="vpc-main", cidr="10.0.1.0/24"),
        )

    def test_destroy_before_create_by_default(self, rules, applied) -> None:
        resources = [
            Resource(kind="vpc", name="main", attributes={"cidr": "10.1.0.0/16"}),
            Resource(kind="subnet", name="a", attributes={"vpc_id": ref("vpc.main"), "cidr": "10.0.1.0/24"}),
        ]

        plan = plan_for(resources, applied, rules)

        delete_stage = plan.stage_index("vpc.main", Action.DELETE)
        create_stage = plan.stage_index("vpc.main", Action.CREATE)
        assert delete_stage < create_stage
        assert create_stage < plan.stage_index("subnet.a", Action.UPDATE)

    def test_default_replacement_removes_dependents_first(self, rules, applied) -> None:
        plan = plan_for([Resource(kind="vpc", name="main", attributes={"cidr": "10.1.0.0/16"})], applied, rules)

        subnet_stage = plan.stage_index("subnet.a", Action.DELETE)
        delete_stage = plan.stage_index("vpc.main", Action.DELETE)
        create_stage = plan.stage_index("vpc.main", Action.CREATE)
        assert subnet_stage < delete_stage < create_stage

    def test_create_before_destroy(self, rules, applied) -> None:
        resources = [
            Resource(
                kind="vpc",
                name="main",
                attributes={"cidr": "10.1.0.0/16"},
                lifecycle=Lifecycle(create_before_destroy=True),
            ),
            Resource(kind="subnet", name="a", attributes={"vpc_id": ref("vpc.main"), "cidr": "10.0.1.0/24"}),
        ]

        plan = plan_for(resources, applied, rules)

        create_stage = plan.stage_index("vpc.main", Action.CREATE)
        delete_stage = plan.stage_index("vpc.main", Action.DELETE)
        subnet_stage = plan.stage_index("subnet.a", Action.UPDATE)
        assert create_stage < subnet_stage < delete_stage


class TestLifecycleAndTargets:
    def test_prevent_destroy_blocks_plan(self) -> None:
        resources = [Resource(kind="db", name="prod", lifecycle=Lifecycle(prevent_destroy=True))]
        store = store_with(record("db.prod"))

        with pytest.raises(PreventDestroyError) as exc_info:
            plan_for(resources, store, destroy=True)

        assert exc_info.value.key == key("db.prod")

    def test_prevent_destroy_blocks_replacement(self) -> None:
        rules = ReplaceRuleRegistry()
        rules.register("db", "engine")
        resources = [
            Resource(
                kind="db",
                name="prod",
                attributes={"engine": "postgres"},
                lifecycle=Lifecycle(prevent_destroy=True),
            )
        ]

        with pytest.raises(PreventDestroyError):
            plan_for(resources, store_with(record("db.prod", engine="mysql")), rules)

    def test_target_pulls_in_dependencies(self, network: list[Resource]) -> None:
        plan = plan_for(network, targets=[key("instance.web")])

        assert {str(e.key) for e in plan.entries()} == {"vpc.main", "subnet.a", "instance.web"}
        assert plan.targets == [key("instance.web")]

    def test_destroy_target_pulls_in_dependents(self, network: list[Resource]) -> None:
        store = store_with(
            record("vpc.main", cidr="10.0.0.0/16"),
            record("subnet.a", dependencies=["vpc.main"]),
            record("subnet.b", dependencies=["vpc.main"]),
            record("instance.web", dependencies=["subnet.a"]),
        )

        plan = plan_for(network, store, targets=[key("subnet.a")], destroy=True)

        assert {str(e.key) for e in plan.entries()} == {"subnet.a", "instance.web"}
        assert plan.stage_index("instance.web") < plan.stage_index("subnet.a")
        assert plan.destroy

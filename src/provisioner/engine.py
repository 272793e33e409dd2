"""Plan/apply engine facade.

Wires the pipeline together:
1. Build the dependency graph (references, depends_on, cycle check)
2. Run registered invariants (fatal violations stop here)
3. Diff desired resources against recorded state
4. Order the diff into stages
5. Execute the stages against providers, recording state per resource

Steps 1-4 never call a provider or write state: any error there leaves
infrastructure and state untouched. The state store is opened before and
closed after each run.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .config import EngineConfig
from .differ import ReplaceRuleRegistry, compute_diff
from .errors import PlanningError
from .executor import CancelSignal, Executor
from .graph import build_graph
from .models import ApplyReport, Plan, Resource, ResourceKey
from .planner import build_plan
from .providers import ProviderRegistry
from .state import StateStore, state_session
from .validation import ValidatorRegistry, Violation, raise_for_violations

logger = logging.getLogger(__name__)


class Engine:
    """Declarative provisioning engine.

    Example:
        engine = Engine(state=FileStateStore(path), providers=registry)
        plan = engine.plan(resources)
        print(plan.render())
        report = await engine.apply(plan)
    """

    def __init__(
        self,
        state: StateStore,
        providers: ProviderRegistry,
        validators: ValidatorRegistry | None = None,
        replace_rules: ReplaceRuleRegistry | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._state = state
        self._providers = providers
        self._validators = validators or ValidatorRegistry()
        self._replace_rules = replace_rules or ReplaceRuleRegistry()
        self._config = config or EngineConfig()
        self._last_violations: list[Violation] = []

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def last_violations(self) -> list[Violation]:
        """Violations (including warnings) from the most recent plan()."""
        return list(self._last_violations)

    def plan(
        self,
        resources: Iterable[Resource],
        targets: Iterable[ResourceKey | str] | None = None,
        destroy: bool = False,
    ) -> Plan:
        """Compute a plan without side effects.

        Raises:
            GraphError: On duplicate keys, unresolved references or cycles.
            ValidationFailedError: On any fatal invariant violation.
            PlanningError: If a target is unknown or the plan cannot be ordered.
        """
        graph = build_graph(resources)

        self._last_violations = self._validators.validate(graph)
        raise_for_violations(self._last_violations)

        target_keys = [ResourceKey.parse(t) for t in targets or []]

        with state_session(self._state):
            recorded = set(self._state.keys())
            unknown = [str(t) for t in target_keys if t not in graph and t not in recorded]
            if unknown:
                raise PlanningError(f"Unknown target(s): {unknown}")

            diffs = compute_diff(graph, self._state, self._replace_rules, destroy=destroy)

        return build_plan(diffs, graph, targets=target_keys, destroy=destroy)

    async def apply(self, plan: Plan, cancel: CancelSignal | None = None) -> ApplyReport:
        """Execute a previously computed plan."""
        if plan.is_empty:
            logger.info("Plan is empty, nothing to apply")
            report = ApplyReport()
            report.finished_at = report.started_at
            return report

        with state_session(self._state):
            executor = Executor(self._state, self._providers, self._config)
            return await executor.apply(plan, cancel)

    async def converge(
        self,
        resources: Iterable[Resource],
        targets: Iterable[ResourceKey | str] | None = None,
        destroy: bool = False,
        cancel: CancelSignal | None = None,
    ) -> tuple[Plan, ApplyReport]:
        """Plan and immediately apply."""
        plan = self.plan(resources, targets=targets, destroy=destroy)
        report = await self.apply(plan, cancel)
        return plan, report

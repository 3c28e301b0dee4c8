"""Pipeline topology resolution.

Given an application identifier, the resolver returns its ordered stages
and, per stage, whether approval is required and who may approve. Topology
is read-only configuration from the orchestrator's point of view; it is
derived from the Application record in the Applications table.

Each tracked pull request adds a temporary pr-<number> stage on the
application's default account. PR stages sit outside the ordered chain:
a pull request update deploys to its own stage and nothing else.
"""

import logging
from dataclasses import dataclass, field
from typing import (
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

from src.conveyor.state.models import (
    Application,
    Trigger,
    TriggerKind,
    TriggerRule,
    TriggerRuleKind,
    pr_stage_name,
)
from src.conveyor.state.store import ApplicationStore


logger = logging.getLogger(__name__)

# Attempts made by set_pr_tracking before giving up on version conflicts
PR_TRACKING_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class StageDefinition:
    """One stage of a resolved pipeline.

    Attributes:
        name: Stage name, unique within the application.
        approval_required: Whether a human decision gates execution.
        approvers: Identities allowed to decide; empty means anyone.
        account: Name of the cloud account the stage deploys to.
    """

    name: str
    approval_required: bool = False
    approvers: Tuple[str, ...] = ()
    account: Optional[str] = None

    def may_approve(self, identity: str) -> bool:
        return not self.approvers or identity in self.approvers


@dataclass(frozen=True)
class PipelineTopology:
    """Ordered stages of one application plus its trigger configuration.

    Attributes:
        stages: The ordered chain; the first entry is the entry stage.
        triggers: Trigger rules selecting which pushes run which stages.
        pr_stages: One stage per tracked pull request, outside the chain.
    """

    org: str
    name: str
    stages: Tuple[StageDefinition, ...]
    triggers: Tuple[TriggerRule, ...] = field(default_factory=tuple)
    pr_stages: Tuple[StageDefinition, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.stages:
            raise ValueError(f"Pipeline {self.org}/{self.name} has no stages")
        names = [stage.name for stage in self.stages + self.pr_stages]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate stage names in {self.org}/{self.name}: {names}")
        known = set(stage.name for stage in self.stages)
        for rule in self.triggers:
            unknown = [n for n in rule.stage_names if n not in known]
            if unknown:
                raise ValueError(
                    f"Trigger rule of {self.org}/{self.name} names unknown stages: {unknown}"
                )

    @property
    def entry_stage(self) -> StageDefinition:
        return self.stages[0]

    def index_of(self, stage_name: str) -> Optional[int]:
        for index, stage in enumerate(self.stages):
            if stage.name == stage_name:
                return index
        return None

    def stage(self, stage_name: str) -> Optional[StageDefinition]:
        index = self.index_of(stage_name)
        if index is not None:
            return self.stages[index]
        return next((s for s in self.pr_stages if s.name == stage_name), None)

    def pr_stage(self, pr_number: int) -> Optional[StageDefinition]:
        return self.stage(pr_stage_name(pr_number))

    def _neighbour(
        self, stage_name: str, route: Optional[Sequence[str]], step: int
    ) -> Optional[StageDefinition]:
        if route is not None and stage_name in route:
            position = list(route).index(stage_name) + step
            if 0 <= position < len(route):
                return self.stage(route[position])
            return None

        index = self.index_of(stage_name)
        if index is None:
            return None
        position = index + step
        if 0 <= position < len(self.stages):
            return self.stages[position]
        return None

    def predecessor(
        self, stage_name: str, route: Optional[Sequence[str]] = None
    ) -> Optional[StageDefinition]:
        """Stage that must have succeeded before stage_name may run.

        With a route, neighbours come from the route instead of the full
        stage list. PR stages have no predecessor.
        """
        return self._neighbour(stage_name, route, -1)

    def successor(
        self, stage_name: str, route: Optional[Sequence[str]] = None
    ) -> Optional[StageDefinition]:
        return self._neighbour(stage_name, route, 1)

    def route_for(self, trigger: Trigger) -> Optional[Tuple[str, ...]]:
        """Select the stages a push or PR trigger deploys to.

        Pushes run through the union of the stage_names of every matching
        merge or tag rule, in stage order; a matching rule without
        stage_names selects every stage. A PR update deploys to its own
        pr-<number> stage when a matching pr rule has deploy set and the
        pull request is tracked. An application without trigger rules runs
        every push through all stages and deploys every tracked PR.

        Returns:
            The ordered stage names, or None if the trigger selects nothing.
        """
        if trigger.kind == TriggerKind.PR_UPDATE:
            if trigger.pr_number is None:
                return None
            if self.triggers and not any(
                rule.deploy for rule in self.triggers if rule.matches(trigger)
            ):
                return None
            stage = self.pr_stage(trigger.pr_number)
            return (stage.name,) if stage is not None else None

        all_stages = tuple(stage.name for stage in self.stages)
        if not self.triggers:
            return all_stages

        selected = set()
        matched = False
        for rule in self.triggers:
            if rule.kind == TriggerRuleKind.PR or not rule.matches(trigger):
                continue
            matched = True
            if not rule.stage_names:
                return all_stages
            selected.update(rule.stage_names)

        if not matched:
            return None
        return tuple(name for name in all_stages if name in selected)

    def accepts(self, trigger: Trigger) -> bool:
        """Check a push or PR trigger against the trigger configuration.

        Other trigger kinds are never filtered.
        """
        if trigger.kind not in (TriggerKind.PUSH, TriggerKind.PR_UPDATE):
            return True
        return self.route_for(trigger) is not None


def topology_from_application(application: Application) -> PipelineTopology:
    """Derive a PipelineTopology from an Application record.

    A stage requires approval if it sets approval_required or names an
    approval group. Its approvers are its explicit approvers followed by
    the group's members.

    Tracked pull requests get a pr-<number> stage on the default account.
    Without a default account no PR stages exist and PR updates are ignored.

    Raises:
        ValueError: If the application has no stages, names an unknown
                    approval group, or has a trigger rule naming an
                    unknown stage.
    """
    stages = []
    for config in application.stages:
        approvers: List[str] = list(config.approvers)
        if config.approval_group is not None:
            if config.approval_group not in application.approval_groups:
                raise ValueError(
                    f"Stage {config.name!r} of {application.hash_key} references "
                    f"unknown approval group {config.approval_group!r}"
                )
            approvers.extend(
                member
                for member in application.approval_groups[config.approval_group]
                if member not in approvers
            )
        stages.append(
            StageDefinition(
                name=config.name,
                approval_required=config.approval_required
                or config.approval_group is not None,
                approvers=tuple(approvers),
                account=config.account,
            )
        )

    pr_stages = []
    default_account = application.default_account()
    if default_account is not None:
        pr_stages = [
            StageDefinition(name=pr_stage_name(number), account=default_account.name)
            for number in application.tracked_prs
        ]

    return PipelineTopology(
        org=application.org,
        name=application.name,
        stages=tuple(stages),
        triggers=tuple(application.triggers),
        pr_stages=tuple(pr_stages),
    )


@runtime_checkable
class TopologyResolver(Protocol):
    """Resolves (org, name) to a pipeline topology."""

    async def resolve(self, org: str, name: str) -> Optional[PipelineTopology]:
        """Return the topology, or None if the application is unknown."""
        ...


class ApplicationTopologyResolver:
    """Resolves topology from Application records in an ApplicationStore."""

    def __init__(self, applications: ApplicationStore):
        self.applications = applications

    async def resolve(self, org: str, name: str) -> Optional[PipelineTopology]:
        application = await self.applications.get(org, name)
        if application is None:
            return None
        return topology_from_application(application)


class StaticTopologyResolver:
    """Serves a fixed set of topologies, keyed by (org, name)."""

    def __init__(self, topologies: Iterable[PipelineTopology] = ()):
        self._topologies: Dict[Tuple[str, str], PipelineTopology] = {
            (t.org, t.name): t for t in topologies
        }

    def register(self, topology: PipelineTopology) -> None:
        self._topologies[(topology.org, topology.name)] = topology

    async def resolve(self, org: str, name: str) -> Optional[PipelineTopology]:
        return self._topologies.get((org, name))


async def set_pr_tracking(
    applications: ApplicationStore,
    org: str,
    name: str,
    pr_number: int,
    tracked: bool,
) -> bool:
    """Add or remove a pull request from an application's tracked PRs.

    Uses optimistic locking and re-reads on version conflicts.

    Returns:
        True if the record now reflects the requested state, False if the
        application is unknown or the update kept conflicting.
    """
    for _ in range(PR_TRACKING_MAX_ATTEMPTS):
        application = await applications.get(org, name)
        if application is None:
            logger.warning(
                "Cannot track pull request for unknown application",
                extra={"application": f"{org}/{name}", "pr_number": pr_number},
            )
            return False

        if (pr_number in application.tracked_prs) == tracked:
            return True

        if tracked:
            tracked_prs = application.tracked_prs + [pr_number]
        else:
            tracked_prs = [n for n in application.tracked_prs if n != pr_number]

        updated = application.model_copy(
            update={"tracked_prs": tracked_prs, "version": application.version + 1}
        )
        if await applications.update_with_version(updated):
            logger.info(
                "Updated tracked pull requests",
                extra={
                    "application": f"{org}/{name}",
                    "pr_number": pr_number,
                    "tracked": tracked,
                },
            )
            return True

    logger.error(
        "Gave up updating tracked pull requests after version conflicts",
        extra={"application": f"{org}/{name}", "pr_number": pr_number},
    )
    return False

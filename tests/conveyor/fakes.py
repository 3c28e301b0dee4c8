"""Shared test doubles and factories for the conveyor tests."""

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

from src.conveyor.approval import ApprovalGate
from src.conveyor.executor import ArtifactLocation, ExecutionResult
from src.conveyor.notifier import Notification, NotificationKind, Notifier
from src.conveyor.orchestrator import StageOrchestrator
from src.conveyor.state.models import DeploymentKey, Trigger, TriggerKind, pr_stage_name
from src.conveyor.state.store import InMemoryDeploymentStore
from src.conveyor.topology import PipelineTopology, StageDefinition, StaticTopologyResolver


def run_async(coro):
    return asyncio.run(coro)


async def no_sleep(delay: float) -> None:
    return None


class RecordingNotifier(Notifier):
    """Notifier that keeps every notification in memory."""

    def __init__(self, fail: bool = False) -> None:
        self.notifications: List[Notification] = []
        self.fail = fail

    async def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)
        if self.fail:
            raise RuntimeError("chat integration down")

    def kinds(self) -> List[NotificationKind]:
        return [n.kind for n in self.notifications]

    def of_kind(self, kind: NotificationKind) -> List[Notification]:
        return [n for n in self.notifications if n.kind == kind]


Outcome = Union[ExecutionResult, Exception]


class ScriptedExecutor:
    """Executor that replays scripted outcomes.

    Each call pops the next outcome; exceptions are raised and results are
    returned. When the script is exhausted every call succeeds. If a
    release event is given, calls block until it is set.
    """

    def __init__(
        self,
        outcomes: Sequence[Outcome] = (),
        release: Optional[asyncio.Event] = None,
    ) -> None:
        self.outcomes = list(outcomes)
        self.release = release
        self.calls: List[Tuple[str, str, str, str, ArtifactLocation]] = []

    async def execute(
        self,
        org: str,
        name: str,
        stage_name: str,
        sha: str,
        artifacts: ArtifactLocation,
    ) -> ExecutionResult:
        self.calls.append((org, name, stage_name, sha, artifacts))
        if self.release is not None:
            await self.release.wait()
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return ExecutionResult(success=True)

    def stages_called(self) -> List[str]:
        return [call[2] for call in self.calls]


class InterleavingDeploymentStore(InMemoryDeploymentStore):
    """In-memory store that yields to the event loop after every read.

    Lets concurrent advances both observe the same snapshot before either
    writes, which is the window conditional writes must protect.
    """

    async def get(self, key: DeploymentKey):
        result = await super().get(key)
        await asyncio.sleep(0)
        return result


def make_topology(
    stages: Sequence[Union[str, Tuple[str, bool], StageDefinition]] = (
        "dev",
        ("prod", True),
    ),
    org: str = "acme",
    name: str = "widgets",
    triggers=(),
    pr_numbers: Sequence[int] = (),
) -> PipelineTopology:
    """Build a topology from stage names, (name, approval_required) or definitions.

    Each entry of pr_numbers adds a pr-<number> stage on the "sandbox" account.
    """
    definitions = []
    for stage in stages:
        if isinstance(stage, StageDefinition):
            definitions.append(stage)
        elif isinstance(stage, tuple):
            definitions.append(StageDefinition(name=stage[0], approval_required=stage[1]))
        else:
            definitions.append(StageDefinition(name=stage))
    pr_stages = tuple(
        StageDefinition(name=pr_stage_name(number), account="sandbox") for number in pr_numbers
    )
    return PipelineTopology(
        org=org,
        name=name,
        stages=tuple(definitions),
        triggers=tuple(triggers),
        pr_stages=pr_stages,
    )


def make_trigger(
    sha: str = "abc123",
    kind: TriggerKind = TriggerKind.PUSH,
    stage_name: Optional[str] = None,
    org: str = "acme",
    name: str = "widgets",
    ref: Optional[str] = "refs/heads/main",
    initiator: Optional[str] = None,
    pr_number: Optional[int] = None,
    source_branch: Optional[str] = None,
) -> Trigger:
    return Trigger(
        kind=kind,
        org=org,
        name=name,
        sha=sha,
        stage_name=stage_name,
        ref=ref,
        source_branch=source_branch,
        pr_number=pr_number,
        initiator=initiator,
    )


def key_for(stage_name: str, sha: str = "abc123", org: str = "acme", name: str = "widgets") -> DeploymentKey:
    return DeploymentKey(org=org, name=name, stage_name=stage_name, sha=sha)


@dataclass
class Pipeline:
    """A fully wired orchestrator with in-memory collaborators."""

    orchestrator: StageOrchestrator
    gate: ApprovalGate
    store: InMemoryDeploymentStore
    notifier: RecordingNotifier
    executor: ScriptedExecutor
    resolver: StaticTopologyResolver


def build_pipeline(
    topology: Optional[PipelineTopology] = None,
    executor: Optional[ScriptedExecutor] = None,
    store: Optional[InMemoryDeploymentStore] = None,
    notifier: Optional[RecordingNotifier] = None,
    wire_gate_to_orchestrator: bool = True,
    **orchestrator_kwargs,
) -> Pipeline:
    topology = topology or make_topology()
    resolver = StaticTopologyResolver([topology])
    store = store if store is not None else InMemoryDeploymentStore()
    notifier = notifier if notifier is not None else RecordingNotifier()
    executor = executor if executor is not None else ScriptedExecutor()

    gate = ApprovalGate(store=store, topology=resolver, notifier=notifier)
    orchestrator_kwargs.setdefault("sleep", no_sleep)
    orchestrator = StageOrchestrator(
        store=store,
        topology=resolver,
        gate=gate,
        executor=executor,
        notifier=notifier,
        **orchestrator_kwargs,
    )
    if wire_gate_to_orchestrator:
        gate.set_trigger_sink(orchestrator.advance)

    return Pipeline(
        orchestrator=orchestrator,
        gate=gate,
        store=store,
        notifier=notifier,
        executor=executor,
        resolver=resolver,
    )

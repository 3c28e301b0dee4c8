"""Unit tests for topology resolution and pull request tracking."""

import pytest

from src.conveyor.state.models import (
    Account,
    Application,
    StageConfig,
    TriggerKind,
    TriggerRule,
    TriggerRuleKind,
)
from src.conveyor.state.store import InMemoryApplicationStore
from src.conveyor.topology import (
    PR_TRACKING_MAX_ATTEMPTS,
    ApplicationTopologyResolver,
    PipelineTopology,
    StageDefinition,
    StaticTopologyResolver,
    TopologyResolver,
    set_pr_tracking,
    topology_from_application,
)
from tests.conveyor.fakes import make_topology, make_trigger, run_async


def _make_application(**changes) -> Application:
    fields = dict(
        org="acme",
        name="widgets",
        approval_groups={"release-managers": ["alice", "bob"]},
        stages=[
            StageConfig(name="dev"),
            StageConfig(name="staging", approval_required=True),
            StageConfig(name="prod", approvers=["carol", "alice"], approval_group="release-managers"),
        ],
    )
    fields.update(changes)
    return Application(**fields)


class ConflictingApplicationStore(InMemoryApplicationStore):
    """Application store whose first N versioned updates report a conflict."""

    def __init__(self, applications, conflicts):
        super().__init__(applications)
        self.conflicts = conflicts
        self.update_calls = 0

    async def update_with_version(self, application):
        self.update_calls += 1
        if self.update_calls <= self.conflicts:
            return False
        return await super().update_with_version(application)


# ---------------------------------------------------------------------------
# PipelineTopology
# ---------------------------------------------------------------------------


def test_stage_navigation():
    topology = make_topology(stages=("dev", "staging", "prod"))

    assert topology.entry_stage.name == "dev"
    assert topology.predecessor("dev") is None
    assert topology.predecessor("prod").name == "staging"
    assert topology.successor("dev").name == "staging"
    assert topology.successor("prod") is None
    assert topology.stage("qa") is None
    assert topology.successor("qa") is None
    assert topology.index_of("prod") == 2


def test_topology_requires_stages():
    with pytest.raises(ValueError):
        PipelineTopology(org="acme", name="widgets", stages=())


def test_topology_rejects_duplicate_stage_names():
    with pytest.raises(ValueError):
        make_topology(stages=("dev", "dev"))


def test_topology_without_rules_accepts_every_push_and_tracked_pr():
    topology = make_topology(pr_numbers=[42])

    assert topology.accepts(make_trigger(ref="refs/heads/anything"))
    assert topology.accepts(make_trigger(kind=TriggerKind.PR_UPDATE, ref=None, pr_number=42))
    assert not topology.accepts(make_trigger(kind=TriggerKind.PR_UPDATE, ref=None, pr_number=7))


def test_rules_filter_push_and_pr_triggers_only():
    topology = make_topology(triggers=[TriggerRule(kind=TriggerRuleKind.TAG, pattern="semver")])

    assert topology.accepts(make_trigger(ref="refs/tags/v2.0.0"))
    assert not topology.accepts(make_trigger(ref="refs/heads/main"))
    assert not topology.accepts(make_trigger(kind=TriggerKind.PR_UPDATE, ref="refs/heads/x"))
    assert topology.accepts(make_trigger(kind=TriggerKind.MANUAL, stage_name="dev", ref=None))


def test_stage_without_approvers_accepts_anyone():
    stage = StageDefinition(name="prod", approval_required=True)

    assert stage.may_approve("anyone")
    assert not StageDefinition(name="prod", approvers=("alice",)).may_approve("bob")


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def test_push_without_rules_routes_through_every_stage():
    topology = make_topology(stages=("dev", "staging", "prod"))

    assert topology.route_for(make_trigger()) == ("dev", "staging", "prod")


def test_merge_rule_selects_its_stages_in_stage_order():
    topology = make_topology(
        stages=("dev", "staging", "prod"),
        triggers=[
            TriggerRule(kind=TriggerRuleKind.MERGE, pattern="main", stage_names=["prod", "dev"]),
            TriggerRule(kind=TriggerRuleKind.TAG, pattern="semver", stage_names=["prod"]),
        ],
    )

    assert topology.route_for(make_trigger(ref="refs/heads/main")) == ("dev", "prod")
    assert topology.route_for(make_trigger(ref="refs/tags/v1.0.0")) == ("prod",)
    assert topology.route_for(make_trigger(ref="refs/heads/feature")) is None


def test_overlapping_rules_select_the_union_of_their_stages():
    topology = make_topology(
        stages=("dev", "staging", "prod"),
        triggers=[
            TriggerRule(kind=TriggerRuleKind.MERGE, pattern="main", stage_names=["staging"]),
            TriggerRule(kind=TriggerRuleKind.MERGE, pattern="ma.*", stage_names=["dev"]),
        ],
    )

    assert topology.route_for(make_trigger(ref="refs/heads/main")) == ("dev", "staging")


def test_matching_rule_without_stage_names_selects_every_stage():
    topology = make_topology(
        stages=("dev", "prod"),
        triggers=[
            TriggerRule(kind=TriggerRuleKind.MERGE, pattern="main", stage_names=["prod"]),
            TriggerRule(kind=TriggerRuleKind.MERGE),
        ],
    )

    assert topology.route_for(make_trigger(ref="refs/heads/main")) == ("dev", "prod")


def test_merge_rule_with_from_branch_needs_a_matching_source_branch():
    topology = make_topology(
        stages=("dev", "prod"),
        triggers=[
            TriggerRule(
                kind=TriggerRuleKind.MERGE,
                pattern="main",
                from_branch="release/.*",
                stage_names=["prod"],
            )
        ],
    )

    merged = make_trigger(ref="refs/heads/main", source_branch="release/2.1")
    assert topology.route_for(merged) == ("prod",)
    assert topology.route_for(make_trigger(ref="refs/heads/main", source_branch="feature")) is None
    assert topology.route_for(make_trigger(ref="refs/heads/main")) is None


def test_pr_update_routes_to_its_own_stage():
    topology = make_topology(
        triggers=[
            TriggerRule(kind=TriggerRuleKind.MERGE, pattern="main"),
            TriggerRule(kind=TriggerRuleKind.PR),
        ],
        pr_numbers=[42],
    )

    pr = make_trigger(kind=TriggerKind.PR_UPDATE, ref="refs/heads/feature", pr_number=42)
    assert topology.route_for(pr) == ("pr-42",)
    assert topology.pr_stage(42).account == "sandbox"


def test_pr_update_is_ignored_without_deploying_pr_rule():
    pr = make_trigger(kind=TriggerKind.PR_UPDATE, ref="refs/heads/feature", pr_number=42)

    no_pr_rule = make_topology(
        triggers=[TriggerRule(kind=TriggerRuleKind.MERGE)], pr_numbers=[42]
    )
    build_only = make_topology(
        triggers=[TriggerRule(kind=TriggerRuleKind.PR, deploy=False)], pr_numbers=[42]
    )

    assert no_pr_rule.route_for(pr) is None
    assert build_only.route_for(pr) is None


def test_pr_stages_stand_outside_the_chain():
    topology = make_topology(stages=("dev", "prod"), pr_numbers=[42])

    assert topology.stage("pr-42") is not None
    assert topology.index_of("pr-42") is None
    assert topology.predecessor("pr-42") is None
    assert topology.successor("pr-42") is None
    assert topology.successor("dev").name == "prod"


def test_route_overrides_stage_order_for_navigation():
    topology = make_topology(stages=("dev", "staging", "prod"))
    route = ("dev", "prod")

    assert topology.predecessor("prod", route).name == "dev"
    assert topology.successor("dev", route).name == "prod"
    assert topology.successor("prod", route) is None
    # A stage off the route falls back to the full chain
    assert topology.predecessor("staging", route).name == "dev"


def test_rule_naming_unknown_stage_is_rejected():
    with pytest.raises(ValueError):
        make_topology(
            stages=("dev",),
            triggers=[TriggerRule(kind=TriggerRuleKind.MERGE, stage_names=["qa"])],
        )


# ---------------------------------------------------------------------------
# topology_from_application
# ---------------------------------------------------------------------------


def test_topology_from_application_preserves_order_and_gates():
    topology = topology_from_application(_make_application())

    assert [s.name for s in topology.stages] == ["dev", "staging", "prod"]
    assert [s.approval_required for s in topology.stages] == [False, True, True]


def test_approval_group_members_join_explicit_approvers():
    prod = topology_from_application(_make_application()).stage("prod")

    assert prod.approvers == ("carol", "alice", "bob")


def test_unknown_approval_group_is_rejected():
    application = _make_application(
        stages=[StageConfig(name="prod", approval_group="nobody")]
    )

    with pytest.raises(ValueError):
        topology_from_application(application)


def test_application_without_stages_is_rejected():
    with pytest.raises(ValueError):
        topology_from_application(_make_application(stages=[]))


def test_trigger_rules_carry_over():
    application = _make_application(triggers=[TriggerRule(kind=TriggerRuleKind.MERGE, pattern="main")])

    topology = topology_from_application(application)

    assert topology.triggers == (TriggerRule(kind=TriggerRuleKind.MERGE, pattern="main"),)


def test_tracked_prs_get_stages_on_the_default_account():
    application = _make_application(
        accounts=[
            Account(name="production", account_id="111111111111"),
            Account(name="sandbox", account_id="222222222222", is_default=True),
        ],
        tracked_prs=[42, 43],
    )

    topology = topology_from_application(application)

    assert [s.name for s in topology.pr_stages] == ["pr-42", "pr-43"]
    assert topology.pr_stage(43).account == "sandbox"
    assert topology.pr_stage(43).approval_required is False


def test_tracked_prs_without_default_account_get_no_stages():
    topology = topology_from_application(_make_application(tracked_prs=[42]))

    assert topology.pr_stages == ()
    assert not topology.accepts(
        make_trigger(kind=TriggerKind.PR_UPDATE, ref=None, pr_number=42)
    )


def test_rule_with_unknown_stage_name_is_rejected():
    application = _make_application(
        triggers=[TriggerRule(kind=TriggerRuleKind.TAG, stage_names=["qa"])]
    )

    with pytest.raises(ValueError):
        topology_from_application(application)


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def test_application_resolver_reads_store():
    resolver = ApplicationTopologyResolver(InMemoryApplicationStore([_make_application()]))

    topology = run_async(resolver.resolve("acme", "widgets"))

    assert topology.stage("prod").approval_required is True
    assert run_async(resolver.resolve("acme", "gadgets")) is None


def test_static_resolver_register():
    resolver = StaticTopologyResolver()
    assert run_async(resolver.resolve("acme", "widgets")) is None

    resolver.register(make_topology())

    assert run_async(resolver.resolve("acme", "widgets")).entry_stage.name == "dev"


def test_resolvers_satisfy_protocol():
    assert isinstance(StaticTopologyResolver(), TopologyResolver)
    assert isinstance(ApplicationTopologyResolver(InMemoryApplicationStore()), TopologyResolver)


# ---------------------------------------------------------------------------
# set_pr_tracking
# ---------------------------------------------------------------------------


def test_tracking_adds_and_removes_pr():
    store = InMemoryApplicationStore([_make_application()])

    assert run_async(set_pr_tracking(store, "acme", "widgets", 42, tracked=True)) is True
    application = run_async(store.get("acme", "widgets"))
    assert application.tracked_prs == [42]
    assert application.version == 2

    assert run_async(set_pr_tracking(store, "acme", "widgets", 42, tracked=False)) is True
    application = run_async(store.get("acme", "widgets"))
    assert application.tracked_prs == []
    assert application.version == 3


def test_tracking_is_idempotent():
    store = InMemoryApplicationStore([_make_application(tracked_prs=[42])])

    assert run_async(set_pr_tracking(store, "acme", "widgets", 42, tracked=True)) is True
    assert run_async(store.get("acme", "widgets")).version == 1


def test_tracking_unknown_application_fails():
    store = InMemoryApplicationStore()

    assert run_async(set_pr_tracking(store, "acme", "widgets", 42, tracked=True)) is False


def test_tracking_retries_version_conflicts():
    store = ConflictingApplicationStore([_make_application()], conflicts=2)

    assert run_async(set_pr_tracking(store, "acme", "widgets", 7, tracked=True)) is True
    assert store.update_calls == 3
    assert run_async(store.get("acme", "widgets")).tracked_prs == [7]


def test_tracking_gives_up_after_repeated_conflicts():
    store = ConflictingApplicationStore([_make_application()], conflicts=PR_TRACKING_MAX_ATTEMPTS)

    assert run_async(set_pr_tracking(store, "acme", "widgets", 7, tracked=True)) is False
    assert store.update_calls == PR_TRACKING_MAX_ATTEMPTS

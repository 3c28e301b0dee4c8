"""Unit tests for the PostgreSQL stores.

asyncpg is replaced by mocks: the pool hands out a connection whose
execute/fetch methods are AsyncMocks, so the tests assert the SQL
parameters and the translation of results and driver errors into store
errors without a database.
"""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from src.conveyor.errors import ConditionFailedError, StoreUnavailableError
from src.conveyor.state.models import (
    Application,
    ApprovalStatus,
    Deployment,
    FailureCause,
    StageConfig,
)
from src.conveyor.state.repository import (
    PostgresStore,
    build_condition,
    row_to_deployment,
)
from tests.conveyor.fakes import key_for, make_trigger, run_async


CREATED = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _make_deployment(**changes) -> Deployment:
    fields = dict(
        org="acme",
        name="widgets",
        stage_name="dev",
        sha="abc123",
        trigger=make_trigger(),
        approval_status=ApprovalStatus.NOT_NEEDED,
        is_deploying=True,
        attempts=1,
        created_at=CREATED,
        updated_at=CREATED,
    )
    fields.update(changes)
    return Deployment(**fields)


def _row_for(deployment: Deployment) -> dict:
    return {
        "org": deployment.org,
        "name": deployment.name,
        "stage_name": deployment.stage_name,
        "sha": deployment.sha,
        "is_deploying": deployment.is_deploying,
        "was_success": deployment.was_success,
        "artifact_bucket": deployment.artifact_bucket,
        "artifact_folder": deployment.artifact_folder,
        "trigger": deployment.trigger.model_dump_json(),
        "caused_by": deployment.caused_by,
        "approval_status": deployment.approval_status.value,
        "approved_by": deployment.approved_by,
        "failure_cause": deployment.failure_cause.value if deployment.failure_cause else None,
        "attempts": deployment.attempts,
        "created_at": deployment.created_at.replace(tzinfo=None),
        "updated_at": deployment.updated_at.replace(tzinfo=None),
        "decided_at": deployment.decided_at.replace(tzinfo=None)
        if deployment.decided_at
        else None,
    }


@pytest.fixture
def conn():
    connection = MagicMock()
    connection.execute = AsyncMock(return_value="INSERT 0 1")
    connection.fetchrow = AsyncMock(return_value=None)
    connection.fetch = AsyncMock(return_value=[])
    connection.fetchval = AsyncMock(return_value=1)
    return connection


@pytest.fixture
def store(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.close = AsyncMock()
    postgres = PostgresStore("postgresql://conveyor@localhost/conveyor")
    postgres._pool = pool
    return postgres


# ---------------------------------------------------------------------------
# build_condition / row_to_deployment
# ---------------------------------------------------------------------------


def test_build_condition_numbers_parameters_from_offset():
    condition, params = build_condition(
        {"is_deploying": False, "attempts": 2, "approval_status": ApprovalStatus.PENDING},
        18,
    )

    assert condition == "is_deploying = $18 AND attempts = $19 AND approval_status = $20"
    assert params == [False, 2, "Pending"]


def test_build_condition_compares_none_with_is_null():
    condition, params = build_condition({"was_success": None, "attempts": 0}, 18)

    assert condition == "was_success IS NULL AND attempts = $18"
    assert params == [0]


def test_build_condition_rejects_unknown_columns():
    with pytest.raises(ValueError):
        build_condition({"sha": "abc123"}, 18)


def test_build_condition_accepts_last_update_time():
    condition, params = build_condition({"is_deploying": True, "updated_at": CREATED}, 19)

    assert condition == "is_deploying = $19 AND updated_at = $20"
    assert params == [True, CREATED]


def test_row_to_deployment_restores_decision_time():
    decided = datetime(2024, 1, 2, 9, 30, tzinfo=timezone.utc)
    deployment = _make_deployment(
        approval_status=ApprovalStatus.APPROVED, approved_by="alice", decided_at=decided
    )

    restored = row_to_deployment(_row_for(deployment))

    assert restored.decided_at == decided
    assert restored.decided_at.tzinfo is not None
    assert row_to_deployment(_row_for(_make_deployment())).decided_at is None


def test_row_to_deployment_restores_types_and_utc():
    deployment = _make_deployment(
        is_deploying=False,
        was_success=False,
        failure_cause=FailureCause.EXECUTOR_TIMEOUT,
    )

    restored = row_to_deployment(_row_for(deployment))

    assert restored.failure_cause == FailureCause.EXECUTOR_TIMEOUT
    assert restored.approval_status == ApprovalStatus.NOT_NEEDED
    assert restored.trigger.is_equivalent(deployment.trigger)
    assert restored.created_at.tzinfo is not None
    assert restored.created_at == CREATED


# ---------------------------------------------------------------------------
# Deployments
# ---------------------------------------------------------------------------


def test_get_returns_none_when_missing(store, conn):
    assert run_async(store.deployments.get(key_for("dev"))) is None

    args = conn.fetchrow.await_args.args
    assert args[1:] == ("acme#widgets#dev", "abc123")


def test_get_returns_deployment(store, conn):
    deployment = _make_deployment()
    conn.fetchrow.return_value = _row_for(deployment)

    fetched = run_async(store.deployments.get(key_for("dev")))

    assert fetched.key == deployment.key
    assert fetched.is_deploying is True


def test_insert_when_expected_is_none(store, conn):
    run_async(store.deployments.put_if_absent_or_matches(_make_deployment()))

    sql = conn.execute.await_args.args[0]
    params = conn.execute.await_args.args[1:]
    assert "INSERT INTO deployments" in sql
    assert "ON CONFLICT (hash_key, sha) DO NOTHING" in sql
    assert params[0] == "acme#widgets#dev"
    assert params[1] == "abc123"
    assert params[11] == "NotNeeded"
    assert len(params) == 18


def test_get_in_flight_selects_deploying_record_of_stage(store, conn):
    deployment = _make_deployment(sha="old")
    conn.fetchrow.return_value = _row_for(deployment)

    holder = run_async(store.deployments.get_in_flight("acme", "widgets", "dev"))

    sql = conn.fetchrow.await_args.args[0]
    assert "WHERE hash_key = $1 AND is_deploying" in sql
    assert conn.fetchrow.await_args.args[1:] == ("acme#widgets#dev",)
    assert holder.sha == "old"


def test_get_in_flight_returns_none_when_stage_is_idle(store, conn):
    assert run_async(store.deployments.get_in_flight("acme", "widgets", "dev")) is None


def test_insert_writes_decision_time_last(store, conn):
    decided = datetime(2024, 1, 2, 9, 30, tzinfo=timezone.utc)

    run_async(
        store.deployments.put_if_absent_or_matches(_make_deployment(decided_at=decided))
    )

    assert conn.execute.await_args.args[18] == decided


def test_insert_conflict_raises_condition_failed(store, conn):
    conn.execute.return_value = "INSERT 0 0"

    with pytest.raises(ConditionFailedError) as exc_info:
        run_async(store.deployments.put_if_absent_or_matches(_make_deployment()))

    assert exc_info.value.key == "acme#widgets#dev#abc123"
    assert exc_info.value.expected is None


def test_conditional_update_appends_condition_parameters(store, conn):
    conn.execute.return_value = "UPDATE 1"

    run_async(
        store.deployments.put_if_absent_or_matches(
            _make_deployment(), {"is_deploying": False, "attempts": 0}
        )
    )

    sql = conn.execute.await_args.args[0]
    params = conn.execute.await_args.args[1:]
    assert "UPDATE deployments" in sql
    assert "is_deploying = $19 AND attempts = $20" in sql
    assert params[18:] == (False, 0)


def test_conditional_update_without_match_raises_condition_failed(store, conn):
    conn.execute.return_value = "UPDATE 0"

    with pytest.raises(ConditionFailedError) as exc_info:
        run_async(
            store.deployments.put_if_absent_or_matches(
                _make_deployment(), {"approval_status": ApprovalStatus.PENDING}
            )
        )

    assert exc_info.value.expected == {"approval_status": ApprovalStatus.PENDING}


def test_in_flight_index_violation_raises_condition_failed(store, conn):
    conn.execute.side_effect = asyncpg.UniqueViolationError(
        'duplicate key value violates unique constraint "deployments_one_in_flight"'
    )

    with pytest.raises(ConditionFailedError) as exc_info:
        run_async(store.deployments.put_if_absent_or_matches(_make_deployment()))

    assert "already deploying" in exc_info.value.message


def test_driver_errors_raise_store_unavailable(store, conn):
    conn.execute.side_effect = ConnectionResetError("connection reset by peer")

    with pytest.raises(StoreUnavailableError) as exc_info:
        run_async(
            store.deployments.put_if_absent_or_matches(
                _make_deployment(), {"is_deploying": True, "attempts": 1}
            )
        )

    assert isinstance(exc_info.value.original_error, ConnectionResetError)


def test_get_errors_raise_store_unavailable(store, conn):
    conn.fetchrow.side_effect = OSError("network unreachable")

    with pytest.raises(StoreUnavailableError):
        run_async(store.deployments.get(key_for("dev")))


def test_list_for_application_maps_rows(store, conn):
    conn.fetch.return_value = [
        _row_for(_make_deployment(stage_name="dev")),
        _row_for(_make_deployment(stage_name="prod", is_deploying=False)),
    ]

    deployments = run_async(store.deployments.list_for_application("acme", "widgets"))

    assert [d.stage_name for d in deployments] == ["dev", "prod"]
    assert conn.fetch.await_args.args[1:] == ("acme", "widgets")


def test_unconnected_store_raises_store_unavailable():
    postgres = PostgresStore("postgresql://conveyor@localhost/conveyor")

    with pytest.raises(StoreUnavailableError):
        run_async(postgres.deployments.get(key_for("dev")))


# ---------------------------------------------------------------------------
# Applications
# ---------------------------------------------------------------------------


def _make_application(**changes) -> Application:
    fields = dict(
        org="acme",
        name="widgets",
        approval_groups={"release": ["alice"]},
        stages=[StageConfig(name="dev"), StageConfig(name="prod", approval_group="release")],
        created_at=CREATED,
        updated_at=CREATED,
    )
    fields.update(changes)
    return Application(**fields)


def test_application_get_parses_config_document(store, conn):
    application = _make_application(tracked_prs=[12])
    conn.fetchrow.return_value = {
        "org": "acme",
        "name": "widgets",
        "config": store.applications._config(application),
        "version": 3,
        "created_at": CREATED,
        "updated_at": CREATED,
    }

    fetched = run_async(store.applications.get("acme", "widgets"))

    assert fetched.version == 3
    assert fetched.tracked_prs == [12]
    assert [s.name for s in fetched.stages] == ["dev", "prod"]
    assert fetched.approval_groups == {"release": ["alice"]}


def test_application_put_upserts(store, conn):
    run_async(store.applications.put(_make_application()))

    sql = conn.execute.await_args.args[0]
    params = conn.execute.await_args.args[1:]
    assert "ON CONFLICT (hash_key) DO UPDATE" in sql
    assert params[0] == "acme#widgets"
    config = json.loads(params[3])
    assert set(config) == {"accounts", "approval_groups", "triggers", "tracked_prs", "stages"}


def test_application_update_checks_previous_version(store, conn):
    conn.execute.return_value = "UPDATE 1"

    assert run_async(store.applications.update_with_version(_make_application(version=4))) is True
    assert conn.execute.await_args.args[-1] == 3


def test_application_update_conflict_returns_false(store, conn):
    conn.execute.return_value = "UPDATE 0"

    assert run_async(store.applications.update_with_version(_make_application(version=2))) is False


# ---------------------------------------------------------------------------
# Pool lifecycle
# ---------------------------------------------------------------------------


def test_health_check(store, conn):
    assert run_async(store.health_check()) is True

    conn.fetchval.side_effect = OSError("down")
    assert run_async(store.health_check()) is False


def test_disconnect_closes_pool(store):
    pool = store._pool

    run_async(store.disconnect())

    pool.close.assert_awaited_once()
    with pytest.raises(StoreUnavailableError):
        store.pool


def test_connect_failure_raises_store_unavailable(monkeypatch):
    monkeypatch.setattr(
        asyncpg, "create_pool", AsyncMock(side_effect=OSError("connection refused"))
    )
    postgres = PostgresStore("postgresql://conveyor@localhost/conveyor")

    with pytest.raises(StoreUnavailableError):
        run_async(postgres.connect())

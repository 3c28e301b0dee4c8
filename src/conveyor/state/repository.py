"""PostgreSQL implementation of the Deployment and Application stores.

This module implements the DeploymentStore and ApplicationStore protocols
using asyncpg. It provides:
- Connection pooling shared by both tables
- Conditional writes (insert-if-absent, update-where-fields-match)
- The per-stage deploying mutex via a partial unique index
- Optimistic locking of application records via a version column

Source:
- migrations/001_conveyor_state.sql (schema definition)
- src/conveyor/state/store.py (store protocols)
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

import asyncpg

from src.conveyor.errors import ConditionFailedError, StoreUnavailableError
from src.conveyor.state.models import (
    Application,
    ApprovalStatus,
    Deployment,
    DeploymentKey,
    FailureCause,
    Trigger,
    application_hash_key,
    deployment_hash_key,
)


logger = logging.getLogger(__name__)


# Deployment fields that may appear in a conditional write's expected mapping
CONDITION_COLUMNS = frozenset(
    {
        "is_deploying",
        "was_success",
        "approval_status",
        "approved_by",
        "failure_cause",
        "attempts",
        "caused_by",
        "artifact_bucket",
        "artifact_folder",
        "updated_at",
    }
)

_DEPLOYMENT_COLUMNS = """
    org,
    name,
    stage_name,
    sha,
    is_deploying,
    was_success,
    artifact_bucket,
    artifact_folder,
    trigger,
    caused_by,
    approval_status,
    approved_by,
    failure_cause,
    attempts,
    created_at,
    updated_at,
    decided_at
"""


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_db(value: Any) -> Any:
    if isinstance(value, (ApprovalStatus, FailureCause)):
        return value.value
    return value


def _load_json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def build_condition(
    expected: Mapping[str, Any], first_param: int
) -> Tuple[str, List[Any]]:
    """Translate an expected-values mapping into a SQL predicate.

    None values compare with IS NULL. Parameters are numbered from
    first_param.

    Raises:
        ValueError: If a field is not a conditionable column.
    """
    clauses = []
    params: List[Any] = []
    for field, value in expected.items():
        if field not in CONDITION_COLUMNS:
            raise ValueError(f"Cannot condition on field: {field}")
        if value is None:
            clauses.append(f"{field} IS NULL")
        else:
            params.append(_to_db(value))
            clauses.append(f"{field} = ${first_param + len(params) - 1}")
    return " AND ".join(clauses) if clauses else "TRUE", params


def row_to_deployment(row: Mapping[str, Any]) -> Deployment:
    return Deployment(
        org=row["org"],
        name=row["name"],
        stage_name=row["stage_name"],
        sha=row["sha"],
        is_deploying=row["is_deploying"],
        was_success=row["was_success"],
        artifact_bucket=row["artifact_bucket"],
        artifact_folder=row["artifact_folder"],
        trigger=Trigger.model_validate(_load_json(row["trigger"])),
        caused_by=row["caused_by"],
        approval_status=ApprovalStatus(row["approval_status"]),
        approved_by=row["approved_by"],
        failure_cause=FailureCause(row["failure_cause"]) if row["failure_cause"] else None,
        attempts=row["attempts"],
        created_at=_utc(row["created_at"]),
        updated_at=_utc(row["updated_at"]),
        decided_at=_utc(row["decided_at"]) if row["decided_at"] else None,
    )


class PostgresStore:
    """PostgreSQL-backed DeploymentStore and ApplicationStore.

    The two protocol views share one connection pool; use the
    deployments and applications attributes to pass each view to the
    component that needs it.

    The repository expects migrations/001_conveyor_state.sql to be applied
    before use.

    Example:
        >>> async with PostgresStore("postgresql://...") as store:
        ...     deployment = await store.deployments.get(key)
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None
        self.deployments = PostgresDeploymentStore(self)
        self.applications = PostgresApplicationStore(self)

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool, raising if not connected.

        Raises:
            StoreUnavailableError: If the pool is not initialized.
        """
        if self._pool is None:
            raise StoreUnavailableError(
                "Database pool not initialized. Call connect() first."
            )
        return self._pool

    async def connect(self) -> None:
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            logger.info("PostgreSQL connection pool established")
        except Exception as e:
            logger.error(
                "Failed to connect to PostgreSQL",
                extra={"error": str(e)},
            )
            raise StoreUnavailableError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "PostgresStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> bool:
        """Check if the database connection is healthy."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.warning(
                "Database health check failed",
                extra={"error": str(e)},
            )
            return False


class PostgresDeploymentStore:
    """DeploymentStore view over a PostgresStore.

    Conditional writes map onto single statements:
    - expected=None: INSERT ... ON CONFLICT DO NOTHING
    - expected mapping: UPDATE ... WHERE <fields match>

    A write that sets is_deploying while another sha of the same stage is
    deploying violates deployments_one_in_flight and is reported as
    ConditionFailedError.
    """

    def __init__(self, store: PostgresStore):
        self._store = store

    async def get(self, key: DeploymentKey) -> Optional[Deployment]:
        try:
            async with self._store.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {_DEPLOYMENT_COLUMNS}
                    FROM deployments
                    WHERE hash_key = $1 AND sha = $2
                    """,
                    key.hash_key,
                    key.sha,
                )
        except Exception as e:
            logger.error(
                "Failed to get deployment",
                extra={"deployment_id": str(key), "error": str(e)},
            )
            raise StoreUnavailableError(
                f"Failed to get deployment: {e}",
                original_error=e,
            ) from e

        return row_to_deployment(row) if row is not None else None

    async def get_in_flight(
        self, org: str, name: str, stage_name: str
    ) -> Optional[Deployment]:
        hash_key = deployment_hash_key(org, name, stage_name)
        try:
            async with self._store.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {_DEPLOYMENT_COLUMNS}
                    FROM deployments
                    WHERE hash_key = $1 AND is_deploying
                    LIMIT 1
                    """,
                    hash_key,
                )
        except Exception as e:
            logger.error(
                "Failed to get in-flight deployment",
                extra={"stage": hash_key, "error": str(e)},
            )
            raise StoreUnavailableError(
                f"Failed to get in-flight deployment: {e}",
                original_error=e,
            ) from e

        return row_to_deployment(row) if row is not None else None

    async def put_if_absent_or_matches(
        self,
        deployment: Deployment,
        expected: Optional[Mapping[str, Any]] = None,
    ) -> None:
        values = [
            deployment.hash_key,
            deployment.sha,
            deployment.org,
            deployment.name,
            deployment.stage_name,
            deployment.is_deploying,
            deployment.was_success,
            deployment.artifact_bucket,
            deployment.artifact_folder,
            deployment.trigger.model_dump_json(),
            deployment.caused_by,
            deployment.approval_status.value,
            deployment.approved_by,
            _to_db(deployment.failure_cause),
            deployment.attempts,
            deployment.created_at,
            deployment.updated_at,
            deployment.decided_at,
        ]

        try:
            async with self._store.pool.acquire() as conn:
                if expected is None:
                    result = await conn.execute(
                        f"""
                        INSERT INTO deployments (hash_key, {_DEPLOYMENT_COLUMNS})
                        VALUES ($1, $3, $4, $5, $2, $6, $7, $8, $9, $10,
                                $11, $12, $13, $14, $15, $16, $17, $18)
                        ON CONFLICT (hash_key, sha) DO NOTHING
                        """,
                        *values,
                    )
                else:
                    condition, params = build_condition(expected, len(values) + 1)
                    result = await conn.execute(
                        f"""
                        UPDATE deployments
                        SET
                            is_deploying = $6,
                            was_success = $7,
                            artifact_bucket = $8,
                            artifact_folder = $9,
                            trigger = $10,
                            caused_by = $11,
                            approval_status = $12,
                            approved_by = $13,
                            failure_cause = $14,
                            attempts = $15,
                            created_at = $16,
                            updated_at = $17,
                            decided_at = $18
                        WHERE hash_key = $1 AND sha = $2
                          AND org = $3 AND name = $4 AND stage_name = $5
                          AND {condition}
                        """,
                        *values,
                        *params,
                    )
        except asyncpg.UniqueViolationError as e:
            logger.warning(
                "Stage already deploying another commit",
                extra={"deployment_id": deployment.deployment_id, "error": str(e)},
            )
            raise ConditionFailedError(
                deployment.deployment_id,
                dict(expected) if expected is not None else None,
                message=f"Stage {deployment.hash_key} is already deploying",
            ) from e
        except Exception as e:
            logger.error(
                "Failed to write deployment",
                extra={"deployment_id": deployment.deployment_id, "error": str(e)},
            )
            raise StoreUnavailableError(
                f"Failed to write deployment: {e}",
                original_error=e,
            ) from e

        rows_affected = int(result.split()[-1])
        if rows_affected == 0:
            raise ConditionFailedError(
                deployment.deployment_id,
                dict(expected) if expected is not None else None,
            )

        logger.debug(
            "Stored deployment",
            extra={
                "deployment_id": deployment.deployment_id,
                "is_deploying": deployment.is_deploying,
                "approval_status": deployment.approval_status.value,
            },
        )

    async def list_for_application(self, org: str, name: str) -> List[Deployment]:
        try:
            async with self._store.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {_DEPLOYMENT_COLUMNS}
                    FROM deployments
                    WHERE org = $1 AND name = $2
                    ORDER BY MIN(seq) OVER (PARTITION BY hash_key), seq
                    """,
                    org,
                    name,
                )
        except Exception as e:
            logger.error(
                "Failed to list deployments",
                extra={"application": application_hash_key(org, name), "error": str(e)},
            )
            raise StoreUnavailableError(
                f"Failed to list deployments: {e}",
                original_error=e,
            ) from e

        return [row_to_deployment(row) for row in rows]

    async def health_check(self) -> bool:
        return await self._store.health_check()


class PostgresApplicationStore:
    """ApplicationStore view over a PostgresStore.

    The application's configuration (accounts, approval groups, trigger
    rules, tracked PRs and stages) is stored as one JSONB document.
    """

    def __init__(self, store: PostgresStore):
        self._store = store

    @staticmethod
    def _config(application: Application) -> str:
        return application.model_dump_json(
            include={"accounts", "approval_groups", "triggers", "tracked_prs", "stages"}
        )

    @staticmethod
    def _from_row(row: Mapping[str, Any]) -> Application:
        config: Dict[str, Any] = _load_json(row["config"])
        return Application(
            org=row["org"],
            name=row["name"],
            version=row["version"],
            created_at=_utc(row["created_at"]),
            updated_at=_utc(row["updated_at"]),
            **config,
        )

    async def get(self, org: str, name: str) -> Optional[Application]:
        try:
            async with self._store.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT org, name, config, version, created_at, updated_at
                    FROM applications
                    WHERE hash_key = $1
                    """,
                    application_hash_key(org, name),
                )
        except Exception as e:
            raise StoreUnavailableError(
                f"Failed to get application: {e}",
                original_error=e,
            ) from e

        return self._from_row(row) if row is not None else None

    async def put(self, application: Application) -> None:
        try:
            async with self._store._transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO applications (
                        hash_key, org, name, config, version, created_at, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                    ON CONFLICT (hash_key) DO UPDATE SET
                        config = EXCLUDED.config,
                        version = EXCLUDED.version,
                        updated_at = EXCLUDED.updated_at
                    """,
                    application.hash_key,
                    application.org,
                    application.name,
                    self._config(application),
                    application.version,
                    application.created_at,
                    application.updated_at,
                )
        except Exception as e:
            logger.error(
                "Failed to save application",
                extra={"application": application.hash_key, "error": str(e)},
            )
            raise StoreUnavailableError(
                f"Failed to save application: {e}",
                original_error=e,
            ) from e

        logger.info(
            "Saved application",
            extra={"application": application.hash_key, "version": application.version},
        )

    async def update_with_version(self, application: Application) -> bool:
        expected_version = application.version - 1

        try:
            async with self._store._transaction() as conn:
                result = await conn.execute(
                    """
                    UPDATE applications
                    SET config = $2, version = $3, updated_at = $4
                    WHERE hash_key = $1 AND version = $5
                    """,
                    application.hash_key,
                    self._config(application),
                    application.version,
                    application.updated_at,
                    expected_version,
                )
        except Exception as e:
            raise StoreUnavailableError(
                f"Failed to update application: {e}",
                original_error=e,
            ) from e

        if int(result.split()[-1]) == 0:
            logger.warning(
                "Version conflict during application update",
                extra={
                    "application": application.hash_key,
                    "expected_version": expected_version,
                },
            )
            return False
        return True

    async def list_applications(self) -> List[Application]:
        try:
            async with self._store.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT org, name, config, version, created_at, updated_at
                    FROM applications
                    ORDER BY hash_key
                    """
                )
        except Exception as e:
            raise StoreUnavailableError(
                f"Failed to list applications: {e}",
                original_error=e,
            ) from e

        return [self._from_row(row) for row in rows]

    async def health_check(self) -> bool:
        return await self._store.health_check()

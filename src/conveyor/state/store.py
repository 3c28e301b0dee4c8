"""Deployment Record Store interfaces and the in-process implementation.

The orchestrator and the approval gate coordinate exclusively through the
store's conditional writes; there are no external locks. A write either
inserts a record that does not exist yet (expected=None) or replaces a
record whose current field values equal the expected mapping. Independently
of the expected mapping, a write that sets is_deploying is rejected while
another commit of the same (org, name, stage) is deploying.

The PostgreSQL implementation lives in repository.py.
"""

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

from src.conveyor.errors import ConditionFailedError
from src.conveyor.state.models import (
    Application,
    Deployment,
    DeploymentKey,
    application_hash_key,
    deployment_hash_key,
)


logger = logging.getLogger(__name__)


def matches_expected(current: Deployment, expected: Mapping[str, Any]) -> bool:
    """Check whether a record's fields equal every expected prior value."""
    return all(getattr(current, field) == value for field, value in expected.items())


@runtime_checkable
class DeploymentStore(Protocol):
    """Protocol for the Deployments table.

    Implementations must make put_if_absent_or_matches atomic with respect
    to every other write for the same (org, name, stage_name).
    """

    async def get(self, key: DeploymentKey) -> Optional[Deployment]:
        """Get a deployment by key.

        Returns:
            The deployment if found, None otherwise.
        """
        ...

    async def put_if_absent_or_matches(
        self,
        deployment: Deployment,
        expected: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Conditionally write a deployment.

        Args:
            deployment: The full record to write.
            expected: None to insert only if absent; otherwise a mapping of
                      field name to the value the stored record must have.

        Raises:
            ConditionFailedError: If the condition does not hold.
            StoreUnavailableError: If the outcome cannot be confirmed.
        """
        ...

    async def get_in_flight(
        self, org: str, name: str, stage_name: str
    ) -> Optional[Deployment]:
        """Return the record currently holding the stage mutex, if any."""
        ...

    async def list_for_application(self, org: str, name: str) -> List[Deployment]:
        """List deployments of an application, grouped by stage."""
        ...

    async def health_check(self) -> bool:
        ...


@runtime_checkable
class ApplicationStore(Protocol):
    """Protocol for the Applications table."""

    async def get(self, org: str, name: str) -> Optional[Application]:
        ...

    async def put(self, application: Application) -> None:
        """Create or replace an application record."""
        ...

    async def update_with_version(self, application: Application) -> bool:
        """Update an application with optimistic locking.

        The caller increments application.version; the write succeeds only
        when the stored version equals application.version - 1.

        Returns:
            True if the update succeeded, False on version conflict.
        """
        ...

    async def list_applications(self) -> List[Application]:
        ...


class InMemoryDeploymentStore:
    """Single-process DeploymentStore backed by dictionaries.

    All writes are serialized by one asyncio.Lock, which makes each
    conditional write atomic for concurrent tasks on the same event loop.
    Records are kept per hash key in insertion order.
    """

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Deployment]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: DeploymentKey) -> Optional[Deployment]:
        deployment = self._records.get(key.hash_key, {}).get(key.sha)
        return deployment.model_copy() if deployment is not None else None

    async def put_if_absent_or_matches(
        self,
        deployment: Deployment,
        expected: Optional[Mapping[str, Any]] = None,
    ) -> None:
        async with self._lock:
            partition = self._records.get(deployment.hash_key, {})
            current = partition.get(deployment.sha)

            if expected is None:
                if current is not None:
                    raise ConditionFailedError(deployment.deployment_id)
            elif current is None or not matches_expected(current, expected):
                raise ConditionFailedError(deployment.deployment_id, dict(expected))

            if deployment.is_deploying:
                for sha, other in partition.items():
                    if sha != deployment.sha and other.is_deploying:
                        raise ConditionFailedError(
                            deployment.deployment_id,
                            dict(expected) if expected is not None else None,
                            message=(
                                f"Stage {deployment.hash_key} is already deploying "
                                f"{other.sha}"
                            ),
                        )

            self._records.setdefault(deployment.hash_key, {})[
                deployment.sha
            ] = deployment.model_copy()

        logger.debug(
            "Stored deployment",
            extra={
                "deployment_id": deployment.deployment_id,
                "is_deploying": deployment.is_deploying,
                "approval_status": deployment.approval_status.value,
            },
        )

    async def get_in_flight(
        self, org: str, name: str, stage_name: str
    ) -> Optional[Deployment]:
        partition = self._records.get(deployment_hash_key(org, name, stage_name), {})
        for deployment in partition.values():
            if deployment.is_deploying:
                return deployment.model_copy()
        return None

    async def list_for_application(self, org: str, name: str) -> List[Deployment]:
        prefix = application_hash_key(org, name) + "#"
        return [
            deployment.model_copy()
            for hash_key, partition in self._records.items()
            if hash_key.startswith(prefix)
            for deployment in partition.values()
        ]

    async def list_for_stage(
        self, org: str, name: str, stage_name: str
    ) -> List[Deployment]:
        partition = self._records.get(deployment_hash_key(org, name, stage_name), {})
        return [deployment.model_copy() for deployment in partition.values()]

    async def health_check(self) -> bool:
        return True


class InMemoryApplicationStore:
    """Single-process ApplicationStore backed by a dictionary."""

    def __init__(self, applications: Optional[List[Application]] = None) -> None:
        self._applications: Dict[str, Application] = {}
        self._lock = asyncio.Lock()
        for application in applications or []:
            self._applications[application.hash_key] = application

    async def get(self, org: str, name: str) -> Optional[Application]:
        application = self._applications.get(application_hash_key(org, name))
        return application.model_copy(deep=True) if application is not None else None

    async def put(self, application: Application) -> None:
        async with self._lock:
            self._applications[application.hash_key] = application.model_copy(deep=True)

    async def update_with_version(self, application: Application) -> bool:
        async with self._lock:
            current = self._applications.get(application.hash_key)
            if current is None or current.version != application.version - 1:
                logger.warning(
                    "Version conflict during application update",
                    extra={
                        "application": application.hash_key,
                        "expected_version": application.version - 1,
                    },
                )
                return False
            self._applications[application.hash_key] = application.model_copy(deep=True)
            return True

    async def list_applications(self) -> List[Application]:
        return [a.model_copy(deep=True) for a in self._applications.values()]

    async def health_check(self) -> bool:
        return True

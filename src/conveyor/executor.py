"""Build/Deploy Executor port.

The orchestrator hands each stage execution to an executor and waits for
its result. The executor itself (build system, deploy tooling) is external;
this module defines the port plus an HTTP client adapter.

Artifact location convention:
    bucket: configured artifact bucket
    folder: "{org}/{name}/{sha}"
"""

import logging
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, Field, ValidationError

from src.conveyor.errors import ExecutorError, ExecutorTimeoutError, ExecutorTransientError


logger = logging.getLogger(__name__)


class ArtifactLocation(BaseModel):
    """Where a commit's build outputs live. Opaque to the orchestrator."""

    bucket: Optional[str] = None
    folder: str


def artifact_location(bucket: Optional[str], org: str, name: str, sha: str) -> ArtifactLocation:
    """Build the conventional artifact location for a commit.

    Example:
        >>> artifact_location("builds", "acme", "widgets", "abc123").folder
        'acme/widgets/abc123'
    """
    return ArtifactLocation(bucket=bucket, folder=f"{org}/{name}/{sha}")


class ExecutionResult(BaseModel):
    """Outcome of one stage execution.

    Attributes:
        success: Whether the build/deploy succeeded.
        artifact_bucket: Bucket holding the build outputs, if any.
        artifact_folder: Folder holding the build outputs, if any.
        detail: Free-form message from the executor (log link, error).
    """

    success: bool
    artifact_bucket: Optional[str] = None
    artifact_folder: Optional[str] = None
    detail: Optional[str] = Field(default=None, max_length=2000)


@runtime_checkable
class Executor(Protocol):
    """Outbound port that runs a stage for a commit."""

    async def execute(
        self,
        org: str,
        name: str,
        stage_name: str,
        sha: str,
        artifacts: ArtifactLocation,
    ) -> ExecutionResult:
        """Run the stage and wait for completion.

        Raises:
            ExecutorTransientError: For failures worth retrying.
            ExecutorTimeoutError: If the executor reports a timeout.
            ExecutorError: For other executor failures.
        """
        ...


class HttpExecutorClient:
    """Executor adapter that calls an executor service over HTTP.

    POSTs the execution request as JSON to "{base_url}/executions" and
    expects an ExecutionResult body in reply.

    Error mapping:
    - Transport errors, connect and pool timeouts, and 5xx/429 responses:
      ExecutorTransientError
    - Read and write timeouts: ExecutorTimeoutError
    - Other 4xx responses and malformed bodies: ExecutorError

    Attributes:
        base_url: Root URL of the executor service.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 1800.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def execute(
        self,
        org: str,
        name: str,
        stage_name: str,
        sha: str,
        artifacts: ArtifactLocation,
    ) -> ExecutionResult:
        request: Dict[str, Any] = {
            "org": org,
            "name": name,
            "stage_name": stage_name,
            "sha": sha,
            "artifact_bucket": artifacts.bucket,
            "artifact_folder": artifacts.folder,
        }
        deployment_id = f"{org}#{name}#{stage_name}#{sha}"

        try:
            response = await self.client.post(
                f"{self.base_url}/executions",
                json=request,
            )
        except (httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            # The request never reached the executor
            raise ExecutorTransientError(f"Executor unreachable: {e}") from e
        except httpx.TimeoutException as e:
            raise ExecutorTimeoutError(deployment_id, self.timeout) from e
        except httpx.TransportError as e:
            raise ExecutorTransientError(f"Executor unreachable: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise ExecutorTransientError(
                f"Executor returned {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            logger.error(
                "Executor rejected request",
                extra={
                    "deployment_id": deployment_id,
                    "status_code": response.status_code,
                    "response_body": response.text[:500],
                },
            )
            raise ExecutorError(
                f"Executor rejected request with {response.status_code}"
            )

        try:
            return ExecutionResult.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ExecutorError(f"Malformed executor response: {e}") from e

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

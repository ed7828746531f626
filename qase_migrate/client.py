"""Qase API client wrapper with health checks and error classification."""

import asyncio
import json
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import httpx
import structlog

from qase_migrate.config import MigrationConfig, WorkspaceConfig
from qase_migrate.exceptions import (
    AuthenticationError,
    ClientError,
    MalformedResponseError,
    NetworkError,
    NotFoundError,
    QaseAPIError,
    QaseConnectionError,
    RateLimitError,
    ServerError,
)
from qase_migrate.models import BulkItem, Case, CustomField, Run, SourceRecord

logger = structlog.get_logger(__name__)

RESULTS_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class QaseClient:
    """Thin async wrapper around the Qase REST API v1 for one project.

    Provides:
    - Health checks and connectivity validation
    - Classification of HTTP failures into retryable and permanent errors
    - Unwrapping of the ``{"status": ..., "result": ...}`` envelope
    - Structured logging
    - Connection pooling
    """

    def __init__(
        self,
        workspace_config: WorkspaceConfig,
        migration_config: MigrationConfig,
        workspace_name: str = "unknown",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the Qase client wrapper.

        Args:
            workspace_config: Workspace configuration with API token, URL and project.
            migration_config: Migration configuration with timeout settings.
            workspace_name: Human-readable name for this workspace (source/target).
            transport: Optional httpx transport, used to plug in a mock service.
        """
        self.workspace_config = workspace_config
        self.migration_config = migration_config
        self.workspace_name = workspace_name
        self.project = workspace_config.project
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None
        self._request_count = 0
        self._logger = logger.bind(
            workspace=workspace_name,
            url=workspace_config.base_url,
            project=workspace_config.project,
        )

    async def __aenter__(self) -> "QaseClient":
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def connect(self) -> None:
        """Open the HTTP connection pool and check the project is reachable.

        Raises:
            QaseConnectionError: If connection fails.
        """
        if self._http_client is not None:
            return

        try:
            self._logger.info("Connecting to Qase API")

            self._http_client = httpx.AsyncClient(
                base_url=self.workspace_config.base_url,
                timeout=httpx.Timeout(self.migration_config.request_timeout),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
                headers={
                    "X-Token": self.workspace_config.api_token,
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                },
                transport=self._transport,
            )

            await self.health_check()

            self._logger.info("Successfully connected to Qase API")

        except Exception as e:
            self._logger.error("Failed to connect to Qase API", error=str(e))
            await self.close()
            raise QaseConnectionError(
                f"Failed to connect to {self.workspace_name}: {e}"
            ) from e

    async def close(self) -> None:
        """Close the HTTP connection pool."""
        if self._http_client is not None:
            try:
                await self._http_client.aclose()
            except Exception as e:
                self._logger.warning("Error closing HTTP client", error=str(e))
            finally:
                self._http_client = None

            self._logger.info("Closed connection to Qase API")

    @property
    def http(self) -> httpx.AsyncClient:
        """Get the underlying HTTP client.

        Raises:
            QaseConnectionError: If not connected.
        """
        if self._http_client is None:
            raise QaseConnectionError(f"Not connected to {self.workspace_name}")
        return self._http_client

    async def health_check(self) -> dict[str, Any]:
        """Perform health check by reading the configured project.

        Returns:
            Health check response data.

        Raises:
            QaseConnectionError: If health check fails.
        """
        try:
            project = await self.request("GET", f"/v1/project/{self.project}")

            health_data = {
                "status": "healthy",
                "url": self.workspace_config.base_url,
                "project": self.project,
                "project_title": project.get("title") if isinstance(project, dict) else None,
            }

            self._logger.debug("Health check passed", health_data=health_data)
            return health_data

        except Exception as e:
            self._logger.error("Health check failed", error=str(e))
            raise QaseConnectionError(
                f"Health check failed for {self.workspace_name}: {e}"
            ) from e

    async def request(
        self,
        method: str,
        path: str,
        params: Any = None,
        json_data: dict[str, Any] | None = None,
    ) -> Any:
        """Make a request and return the ``result`` member of the envelope.

        Raises:
            NetworkError: On transport failures.
            RateLimitError: On HTTP 429.
            ServerError: On HTTP 5xx.
            ClientError: On other HTTP 4xx.
            MalformedResponseError: If the body is not a JSON envelope.
            QaseAPIError: If the envelope reports ``status: false``.
        """
        self._request_count += 1
        request_id = f"req_{self._request_count}"

        self._logger.debug(
            "Making API request",
            request_id=request_id,
            method=method,
            path=path,
            params=params,
            has_json_data=json_data is not None,
        )

        try:
            response = await self.http.request(
                method, path, params=params, json=json_data
            )
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

        self._logger.debug(
            "API request completed",
            request_id=request_id,
            status_code=response.status_code,
            response_size=len(response.content),
        )

        _raise_for_status(response)

        try:
            body = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedResponseError(
                "Response is not valid JSON",
                status_code=response.status_code,
                response_text=response.text,
            ) from e

        if not isinstance(body, dict) or "status" not in body:
            raise MalformedResponseError(
                "Response is missing the status envelope",
                status_code=response.status_code,
                response_text=response.text,
            )
        if not body["status"]:
            raise QaseAPIError(
                body.get("errorMessage") or f"{method} {path} reported failure",
                status_code=response.status_code,
                response_text=response.text,
            )
        return body.get("result")

    async def list_results(
        self,
        limit: int,
        offset: int,
        *,
        from_end_time: datetime | None = None,
        run_ids: list[int] | None = None,
    ) -> list[SourceRecord]:
        """List one page of results in the project."""
        params: list[tuple[str, Any]] = [("limit", limit), ("offset", offset)]
        if from_end_time is not None:
            params.append(("from_end_time", from_end_time.strftime(RESULTS_DATE_FORMAT)))
        for run_id in run_ids or []:
            params.append(("run_id[]", run_id))

        result = await self.request("GET", f"/v1/result/{self.project}", params=params)
        return [SourceRecord.model_validate(entity) for entity in _entities(result)]

    async def list_cases(self, limit: int, offset: int) -> list[Case]:
        """List one page of cases in the project."""
        result = await self.request(
            "GET",
            f"/v1/case/{self.project}",
            params={"limit": limit, "offset": offset},
        )
        return [Case.model_validate(entity) for entity in _entities(result)]

    async def list_runs(
        self,
        limit: int,
        offset: int,
        *,
        from_start_time: datetime | None = None,
    ) -> list[Run]:
        """List one page of runs in the project."""
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if from_start_time is not None:
            params["from_start_time"] = int(from_start_time.timestamp())

        result = await self.request("GET", f"/v1/run/{self.project}", params=params)
        return [Run.model_validate(entity) for entity in _entities(result)]

    async def get_run(self, run_id: int) -> Run:
        """Fetch a single run by id."""
        result = await self.request("GET", f"/v1/run/{self.project}/{run_id}")
        return Run.model_validate(result)

    async def create_run(self, title: str, description: str) -> Run:
        """Create a run and return it as stored by the service."""
        result = await self.request(
            "POST",
            f"/v1/run/{self.project}",
            json_data={"title": title, "description": description, "include": "cases"},
        )
        if not isinstance(result, dict) or "id" not in result:
            raise MalformedResponseError("Run creation response has no id")

        run = await self.get_run(int(result["id"]))
        self._logger.info("Created run", run_id=run.id, title=run.title)
        return run

    async def create_results_bulk(self, run_id: int, items: list[BulkItem]) -> list[bool]:
        """Create results in a run in one request.

        Returns:
            One success flag per item. When the service does not report per-item
            flags, every item is taken as created.
        """
        result = await self.request(
            "POST",
            f"/v1/result/{self.project}/{run_id}/bulk",
            json_data={"results": [item.to_payload() for item in items]},
        )

        bulk = result.get("bulk") if isinstance(result, dict) else None
        if not isinstance(bulk, list) or len(bulk) != len(items):
            return [True] * len(items)
        return [bool(entry.get("status", True)) for entry in bulk]

    async def list_custom_fields(self, limit: int, offset: int) -> list[CustomField]:
        """List one page of custom field definitions."""
        result = await self.request(
            "GET", "/v1/custom_field", params={"limit": limit, "offset": offset}
        )
        return [CustomField.model_validate(entity) for entity in _entities(result)]

    async def create_custom_field(
        self,
        title: str,
        field_type: str = "number",
        placeholder: str | None = None,
    ) -> int:
        """Create a case custom field visible in this project and return its id."""
        payload: dict[str, Any] = {
            "title": title,
            "entity": 0,
            "type": field_type,
            "is_filterable": True,
            "is_visible": True,
            "is_required": False,
            "is_enabled_for_all_projects": False,
            "projects_codes": [self.project],
        }
        if placeholder:
            payload["placeholder"] = placeholder

        result = await self.request("POST", "/v1/custom_field", json_data=payload)
        if not isinstance(result, dict) or "id" not in result:
            raise MalformedResponseError("Custom field creation response has no id")
        return int(result["id"])


def _entities(result: Any) -> list[dict[str, Any]]:
    if not isinstance(result, dict):
        raise MalformedResponseError("List response has no result object")
    entities = result.get("entities")
    if entities is None:
        return []
    if not isinstance(entities, list):
        raise MalformedResponseError("List response entities is not a list")
    return entities


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return

    status = response.status_code
    text = response.text
    if status == 429:
        raise RateLimitError(
            "Rate limit exceeded",
            status_code=status,
            response_text=text,
            retry_after=_retry_after(response),
        )
    if status == 401:
        raise AuthenticationError("Authentication failed", status, text)
    if status == 404:
        raise NotFoundError("Not found", status, text)
    if 400 <= status < 500:
        raise ClientError(f"Client error: {status}", status, text)
    if status >= 500:
        raise ServerError(f"Server error: {status}", status, text)
    raise QaseAPIError(f"Unexpected status: {status}", status, text)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


@asynccontextmanager
async def create_client_pair(
    source_config: WorkspaceConfig,
    target_config: WorkspaceConfig,
    migration_config: MigrationConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncGenerator[tuple[QaseClient, QaseClient], None]:
    """Create a pair of connected Qase clients for source and target.

    Args:
        source_config: Source workspace configuration.
        target_config: Target workspace configuration.
        migration_config: Migration configuration.
        transport: Optional httpx transport shared by both clients.

    Yields:
        Tuple of (source_client, target_client).

    Raises:
        QaseConnectionError: If either client fails to connect.
    """
    source_client = QaseClient(source_config, migration_config, "source", transport)
    target_client = QaseClient(target_config, migration_config, "target", transport)

    try:
        await asyncio.gather(
            source_client.connect(),
            target_client.connect(),
        )

        logger.info(
            "Successfully connected to both workspaces",
            source_project=source_config.project,
            target_project=target_config.project,
        )

        yield source_client, target_client

    finally:
        await asyncio.gather(
            source_client.close(),
            target_client.close(),
            return_exceptions=True,
        )

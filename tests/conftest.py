"""Shared pytest fixtures for the migration tool tests."""

import asyncio
import json
import re
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from qase_migrate.config import (
    Config,
    MappingConfig,
    MatchMode,
    MigrationConfig,
    WorkspaceConfig,
)
from qase_migrate.models import SourceRecord

SOURCE_URL = "https://source.qase.test"
TARGET_URL = "https://target.qase.test"
SOURCE_PROJECT = "SRC"
TARGET_PROJECT = "TGT"
CF_ID = 7


class FakeQase:
    """In-memory Qase API v1 served through ``httpx.MockTransport``.

    Projects are keyed by code so one transport can back both the source and
    the target client. Failures are injected per endpoint with queues of
    status codes, or for every request whose path matches a key of
    ``failures``; ``delays`` slows matching paths down.
    """

    def __init__(self) -> None:
        self.projects: dict[str, dict[str, list[dict[str, Any]]]] = {}
        self.custom_fields: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        self.bulk_failures: list[int] = []
        self.failures: dict[str, int] = {}
        self.delays: dict[str, float] = {}
        self.bulk_delay: float = 0.0
        self._next_run_id = 1000

    def add_project(self, code: str) -> dict[str, list[dict[str, Any]]]:
        return self.projects.setdefault(code, {"cases": [], "runs": [], "results": []})

    def add_case(self, code: str, case_id: int, custom_fields: list[dict] | None = None) -> None:
        self.add_project(code)["cases"].append(
            {"id": case_id, "title": f"Case {case_id}", "custom_fields": custom_fields or []}
        )

    def add_result(
        self,
        code: str,
        run_id: int,
        case_id: int,
        status: str = "passed",
        end_time: str | None = "2025-08-20T10:15:00+00:00",
        time_spent_ms: int | None = 1500,
    ) -> None:
        self.add_project(code)["results"].append(
            {
                "run_id": run_id,
                "case_id": case_id,
                "status": status,
                "end_time": end_time,
                "time_spent_ms": time_spent_ms,
                "hash": f"h{run_id}-{case_id}-{len(self.projects[code]['results'])}",
            }
        )

    def runs(self, code: str) -> list[dict[str, Any]]:
        return self.projects[code]["runs"]

    def results(self, code: str, run_id: int | None = None) -> list[dict[str, Any]]:
        results = self.projects[code]["results"]
        if run_id is None:
            return results
        return [r for r in results if r["run_id"] == run_id]

    def calls(self, method: str, pattern: str) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method and re.fullmatch(pattern, request.url.path)
        ]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        params = request.url.params

        for pattern, seconds in self.delays.items():
            if re.fullmatch(pattern, path):
                await asyncio.sleep(seconds)

        for pattern, status_code in self.failures.items():
            if re.fullmatch(pattern, path):
                return _error(status_code, "injected failure")

        match = re.fullmatch(r"/v1/project/(\w+)", path)
        if match:
            code = match.group(1)
            if code not in self.projects:
                return _error(404, "Project not found")
            return _ok({"code": code, "title": f"Project {code}"})

        match = re.fullmatch(r"/v1/result/(\w+)/(\d+)/bulk", path)
        if match and request.method == "POST":
            return await self._bulk(match.group(1), int(match.group(2)), request)

        match = re.fullmatch(r"/v1/result/(\w+)", path)
        if match:
            results = self.projects[match.group(1)]["results"]
            run_ids = {int(v) for v in params.get_list("run_id[]")}
            if run_ids:
                results = [r for r in results if r["run_id"] in run_ids]
            return _page(results, params)

        match = re.fullmatch(r"/v1/case/(\w+)", path)
        if match:
            return _page(self.projects[match.group(1)]["cases"], params)

        match = re.fullmatch(r"/v1/run/(\w+)/(\d+)", path)
        if match:
            run_id = int(match.group(2))
            for run in self.projects[match.group(1)]["runs"]:
                if run["id"] == run_id:
                    return _ok(run)
            return _error(404, "Run not found")

        match = re.fullmatch(r"/v1/run/(\w+)", path)
        if match and request.method == "POST":
            body = json.loads(request.content)
            self._next_run_id += 1
            run = {
                "id": self._next_run_id,
                "title": body["title"],
                "description": body.get("description"),
            }
            self.projects[match.group(1)]["runs"].append(run)
            return _ok({"id": run["id"]})
        if match:
            return _page(self.projects[match.group(1)]["runs"], params)

        if path == "/v1/custom_field" and request.method == "POST":
            body = json.loads(request.content)
            field = {"id": len(self.custom_fields) + 1, "title": body["title"], "type": body["type"]}
            self.custom_fields.append(field)
            return _ok({"id": field["id"]})
        if path == "/v1/custom_field":
            return _page(self.custom_fields, params)

        return _error(404, f"No route for {request.method} {path}")

    async def _bulk(self, code: str, run_id: int, request: httpx.Request) -> httpx.Response:
        if self.bulk_delay:
            await asyncio.sleep(self.bulk_delay)
        if self.bulk_failures:
            return _error(self.bulk_failures.pop(0), "bulk failure")

        body = json.loads(request.content)
        for item in body["results"]:
            self.projects[code]["results"].append(
                {
                    "run_id": run_id,
                    "case_id": item["case_id"],
                    "status": item["status"],
                    "time_spent_ms": item.get("time", 0) * 1000,
                    "comment": item.get("comment"),
                }
            )
        return _ok({"bulk": [{"status": True} for _ in body["results"]]})


def _ok(result: Any) -> httpx.Response:
    return httpx.Response(200, json={"status": True, "result": result})


def _error(status_code: int, message: str) -> httpx.Response:
    return httpx.Response(status_code, json={"status": False, "errorMessage": message})


def _page(entities: list[dict[str, Any]], params: httpx.QueryParams) -> httpx.Response:
    limit = int(params.get("limit", 100))
    offset = int(params.get("offset", 0))
    page = entities[offset : offset + limit]
    return _ok({"total": len(entities), "filtered": len(entities), "count": len(page), "entities": page})


@pytest.fixture
def fake_qase():
    """Create a fake Qase service with empty source and target projects."""
    service = FakeQase()
    service.add_project(SOURCE_PROJECT)
    service.add_project(TARGET_PROJECT)
    return service


@pytest.fixture
def source_config():
    """Create a source workspace configuration."""
    return WorkspaceConfig(api_token="source-token", project=SOURCE_PROJECT, url=SOURCE_URL)


@pytest.fixture
def target_config():
    """Create a target workspace configuration."""
    return WorkspaceConfig(api_token="target-token", project=TARGET_PROJECT, url=TARGET_URL)


@pytest.fixture
def migration_config():
    """Create a test migration configuration without delays."""
    return MigrationConfig(
        dry_run=False,
        page_delay=0.0,
        retry_delays=[0.0, 0.0, 0.0, 0.0],
    )


@pytest.fixture
def make_config(source_config, target_config, migration_config, tmp_path) -> Callable[..., Config]:
    """Factory for full configurations writing into a temporary directory."""

    def factory(**migration_overrides: Any) -> Config:
        return Config(
            source=source_config,
            target=target_config,
            mapping=MappingConfig(mode=MatchMode.CUSTOM_FIELD, custom_field_id=CF_ID),
            migration=migration_config.model_copy(update=migration_overrides),
            output_dir=tmp_path / "out",
        )

    return factory


@pytest.fixture
def make_record() -> Callable[..., SourceRecord]:
    """Factory for source records."""

    def factory(run_id: int, case_id: int, status: str = "passed", **kwargs: Any) -> SourceRecord:
        return SourceRecord(run_id=run_id, case_id=case_id, status=status, **kwargs)

    return factory


@pytest.fixture
def mock_target_client():
    """Create a mock target client with the endpoints the pipeline uses."""
    client = Mock()
    client.project = TARGET_PROJECT
    client.list_runs = AsyncMock(return_value=[])
    client.list_results = AsyncMock(return_value=[])
    client.create_run = AsyncMock()
    client.create_results_bulk = AsyncMock()
    return client

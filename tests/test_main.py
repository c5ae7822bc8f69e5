"""Tests for worker wiring, logging and exit codes."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from azure_mock import (
    DEFAULT_SUBSCRIPTION_ID,
    DEFAULT_TENANT,
    FakeResourceReader,
    InMemoryQueueBackend,
    make_observed,
)
from driftwatch.config import Config
from driftwatch.domain import AnalysisState
from driftwatch.errors import FatalError, RepositoryUnavailableError
from driftwatch.main import (
    EXIT_ERROR,
    EXIT_FATAL,
    EXIT_OK,
    EXIT_SECURITY_VIOLATION,
    JsonFormatter,
    Worker,
    build_engine,
    build_worker,
    main,
    run_worker,
)
from driftwatch.repository import InMemoryRepository

REGISTRY = f"""
pipelines:
  - id: pipe-storage
    tenantId: {DEFAULT_TENANT}
    name: Storage
    subscriptionId: {DEFAULT_SUBSCRIPTION_ID}
    resourceGroup: rg-storage
  - id: pipe-legacy
    tenantId: {DEFAULT_TENANT}
    subscriptionId: {DEFAULT_SUBSCRIPTION_ID}
    resourceGroup: rg-legacy
    active: false
"""

DEFINITIONS = """
resources:
  - type: Microsoft.Storage/storageAccounts
    name: stdata
    properties:
      sku: {name: Standard_GRS}
"""


@pytest.fixture
def definitions_dir(tmp_path: Path) -> Path:
    path = tmp_path / "definitions"
    path.mkdir()
    (path / "pipelines.yaml").write_text(REGISTRY)
    (path / "pipe-storage.yaml").write_text(DEFINITIONS)
    return path


def worker_env(definitions_dir: Path, **extra: str) -> dict[str, str]:
    return {"DEFINITIONS_DIR": str(definitions_dir), **extra}


async def stop_when(worker: Worker, condition, timeout: float = 5) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition() and loop.time() < deadline:
        await asyncio.sleep(0.01)
    worker.consumer.stop()


class TestJsonFormatter:
    """Tests for structured log output."""

    def test_includes_extra_fields(self) -> None:
        record = logging.LogRecord(
            "driftwatch.consumer", logging.INFO, __file__, 1, "Message completed", None, None
        )
        record.correlation_id = "corr-1"
        record.duration = 1.5

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Message completed"
        assert data["level"] == "INFO"
        assert data["logger"] == "driftwatch.consumer"
        assert data["correlation_id"] == "corr-1"
        assert data["duration"] == 1.5
        assert data["timestamp"].endswith("Z")
        assert "msg" not in data

    def test_includes_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord(
                "driftwatch", logging.ERROR, __file__, 1, "Failed", None, sys.exc_info()
            )

        data = json.loads(JsonFormatter().format(record))

        assert "ValueError: boom" in data["exception"]


class TestMain:
    """Tests for startup exit codes."""

    @pytest.mark.asyncio
    async def test_configuration_error(self, tmp_path: Path) -> None:
        env = worker_env(tmp_path / "missing")

        with patch.dict(os.environ, env, clear=True), patch("driftwatch.main.setup_logging"):
            assert await main() == EXIT_ERROR

    @pytest.mark.asyncio
    async def test_security_violation(self, definitions_dir: Path) -> None:
        env = worker_env(definitions_dir, AZURE_CLIENT_SECRET="secret")

        with patch.dict(os.environ, env, clear=True), patch("driftwatch.main.setup_logging"):
            assert await main() == EXIT_SECURITY_VIOLATION

    @pytest.mark.asyncio
    async def test_invalid_rules(self, definitions_dir: Path, tmp_path: Path) -> None:
        rules_file = tmp_path / "rules.yaml"
        rules_file.write_text("rules: not-a-list\n")
        env = worker_env(definitions_dir, CLASSIFICATION_RULES_FILE=str(rules_file))

        with patch.dict(os.environ, env, clear=True), patch("driftwatch.main.setup_logging"):
            assert await main() == EXIT_ERROR

    @pytest.mark.asyncio
    async def test_startup_failure(self, definitions_dir: Path) -> None:
        with (
            patch.dict(os.environ, worker_env(definitions_dir), clear=True),
            patch("driftwatch.main.setup_logging"),
            patch(
                "driftwatch.main.build_worker",
                AsyncMock(side_effect=RepositoryUnavailableError("Table Storage unreachable")),
            ),
        ):
            assert await main() == EXIT_ERROR

    @pytest.mark.asyncio
    async def test_runs_worker(self, definitions_dir: Path) -> None:
        worker = MagicMock()

        with (
            patch.dict(os.environ, worker_env(definitions_dir), clear=True),
            patch("driftwatch.main.setup_logging"),
            patch("driftwatch.main.build_worker", AsyncMock(return_value=worker)) as build,
            patch("driftwatch.main.run_worker", AsyncMock(return_value=EXIT_OK)) as run,
        ):
            assert await main() == EXIT_OK

        config = build.call_args.args[0]
        assert config.definitions_dir == definitions_dir
        run.assert_awaited_once_with(worker)


class TestBuildWorker:
    """Tests for wiring and running the worker with in-memory backends."""

    @pytest.mark.asyncio
    async def test_seeds_memory_store_from_registry(self, definitions_dir: Path) -> None:
        config = Config(definitions_dir=definitions_dir)

        with (
            patch("driftwatch.main.create_queue_backend", return_value=InMemoryQueueBackend()),
            patch("driftwatch.main.get_managed_identity_credential"),
            patch("driftwatch.main.ResourceGraphReader"),
        ):
            worker = await build_worker(config, build_engine())

        assert isinstance(worker.repository, InMemoryRepository)
        pipelines = await worker.repository.list_active_pipelines(DEFAULT_TENANT)
        assert [p.id for p in pipelines] == ["pipe-storage"]
        await worker.close()

    @pytest.mark.asyncio
    async def test_emulator_queue_needs_no_credential(self, definitions_dir: Path) -> None:
        config = Config(definitions_dir=definitions_dir)

        with (
            patch(
                "driftwatch.main.create_queue_backend", return_value=InMemoryQueueBackend()
            ) as create_backend,
            patch("driftwatch.main.get_managed_identity_credential"),
            patch("driftwatch.main.ResourceGraphReader"),
            patch("driftwatch.main.get_async_managed_identity_credential") as get_async,
        ):
            worker = await build_worker(config, build_engine())

        create_backend.assert_called_once_with(config, None)
        get_async.assert_not_called()
        await worker.close()

    @pytest.mark.asyncio
    async def test_closes_on_startup_failure(self, definitions_dir: Path) -> None:
        config = Config(definitions_dir=definitions_dir)
        notifier_close = AsyncMock()

        with (
            patch("driftwatch.main.create_queue_backend", side_effect=ValueError("bad queue")),
            patch("driftwatch.main.get_managed_identity_credential"),
            patch("driftwatch.main.ResourceGraphReader"),
            patch("driftwatch.main.SafeNotifier.close", notifier_close),
        ):
            with pytest.raises(ValueError, match="bad queue"):
                await build_worker(config, build_engine())

        notifier_close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_analyzes_queued_request(self, definitions_dir: Path) -> None:
        config = Config(definitions_dir=definitions_dir)
        backend = InMemoryQueueBackend()
        backend.send({"correlationId": "corr-1", "tenantId": DEFAULT_TENANT, "pipelineId": "pipe-storage"})
        reader = FakeResourceReader(
            [make_observed("stdata", properties={"sku": {"name": "Standard_LRS"}})]
        )

        with (
            patch("driftwatch.main.create_queue_backend", return_value=backend),
            patch("driftwatch.main.get_managed_identity_credential"),
            patch("driftwatch.main.ResourceGraphReader", return_value=reader),
        ):
            worker = await build_worker(config, build_engine())

        stopper = asyncio.create_task(stop_when(worker, lambda: backend.pending == 0))
        exit_code = await run_worker(worker)
        await stopper

        assert exit_code == EXIT_OK
        assert backend.closed is True
        status = await worker.repository.get_analysis_status(DEFAULT_TENANT, "corr-1")
        assert status is not None
        assert status.status == AnalysisState.COMPLETED
        assert status.drift_count == 1


class TestRunWorker:
    """Tests for run_worker exit codes."""

    def make_worker(self, run_side_effect: BaseException | None = None) -> Worker:
        consumer = MagicMock()
        consumer.run = AsyncMock(side_effect=run_side_effect)
        consumer.completed_count = 0
        consumer.dead_lettered = []
        notifier = MagicMock()
        notifier.failures = 0
        closer = AsyncMock()
        return Worker(
            consumer=consumer,
            orchestrator=MagicMock(),
            repository=InMemoryRepository(),
            notifier=notifier,
            closers=[closer],
        )

    @pytest.mark.asyncio
    async def test_clean_shutdown(self) -> None:
        worker = self.make_worker()

        assert await run_worker(worker) == EXIT_OK
        worker.closers[0].assert_awaited_once()

    @pytest.mark.asyncio
    async def test_fatal_error(self) -> None:
        worker = self.make_worker(FatalError("Scan log in unexpected state"))

        assert await run_worker(worker) == EXIT_FATAL
        worker.closers[0].assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unexpected_error(self) -> None:
        worker = self.make_worker(RuntimeError("bug"))

        assert await run_worker(worker) == EXIT_FATAL

    @pytest.mark.asyncio
    async def test_close_errors_are_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        worker = self.make_worker()
        worker.closers.append(AsyncMock(side_effect=OSError("socket closed")))

        assert await run_worker(worker) == EXIT_OK

        worker.closers[0].assert_awaited_once()
        assert any(r.getMessage() == "Error while closing worker resource" for r in caplog.records)

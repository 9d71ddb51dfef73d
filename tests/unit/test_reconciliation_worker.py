"""
Unit tests for the reconciliation worker and the one-shot CLI.

Tests coverage:
- Health file written atomically with run stats
- One cycle runs booking reconciliation then payment sync
- Payment sync failure does not break the cycle
- CLI date resolution and exit codes
"""

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from scripts import sync_square_bookings
from sync.services.reconciliation_job import ReconciliationResult
from sync.workers import reconciliation_worker
from sync.workers.reconciliation_worker import (
    HEALTH_FILE_NAME,
    run_reconciliation_cycle,
    update_health_check,
)


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_writes_health_file(self, tmp_path):
        await update_health_check(
            last_run=datetime(2025, 3, 15, tzinfo=UTC),
            status="healthy",
            stats={"synced": 4, "created": 1, "errors": [], "payments": {"created": 2}},
            health_dir=tmp_path,
        )

        data = json.loads((tmp_path / HEALTH_FILE_NAME).read_text())
        assert data["status"] == "healthy"
        assert data["synced"] == 4
        assert data["created"] == 1
        assert data["errors"] == 0
        assert data["payments"] == {"created": 2}
        assert list(tmp_path.glob("*.tmp")) == []


class TestReconciliationCycle:
    @pytest.fixture
    def job(self):
        job = MagicMock()
        job.run = AsyncMock(return_value=ReconciliationResult(success=True, synced=3, created=1))
        return job

    @pytest.mark.asyncio
    async def test_cycle_runs_job_and_payment_sync(self, job):
        payments = MagicMock()
        payments.background_sync_payments = AsyncMock(
            return_value={"checked": 2, "created": 1, "skipped": 0}
        )

        with patch.object(reconciliation_worker, "get_reconciliation_job", return_value=job), \
             patch.object(reconciliation_worker, "get_payment_service", return_value=payments), \
             patch.object(reconciliation_worker, "update_health_check", new_callable=AsyncMock) as health:
            stats = await run_reconciliation_cycle()

        job.run.assert_awaited_once()
        assert stats["synced"] == 3
        assert stats["payments"]["created"] == 1
        assert health.await_args.kwargs["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_payment_sync_failure_is_contained(self, job):
        payments = MagicMock()
        payments.background_sync_payments = AsyncMock(side_effect=RuntimeError("db down"))

        with patch.object(reconciliation_worker, "get_reconciliation_job", return_value=job), \
             patch.object(reconciliation_worker, "get_payment_service", return_value=payments), \
             patch.object(reconciliation_worker, "update_health_check", new_callable=AsyncMock):
            stats = await run_reconciliation_cycle()

        assert stats["payments"] == {"errors": 1}

    @pytest.mark.asyncio
    async def test_item_errors_mark_unhealthy(self, job):
        job.run.return_value = ReconciliationResult(
            success=True, errors=[{"booking_id": "B1", "error": "bad"}]
        )
        payments = MagicMock()
        payments.background_sync_payments = AsyncMock(return_value={})

        with patch.object(reconciliation_worker, "get_reconciliation_job", return_value=job), \
             patch.object(reconciliation_worker, "get_payment_service", return_value=payments), \
             patch.object(reconciliation_worker, "update_health_check", new_callable=AsyncMock) as health:
            await run_reconciliation_cycle()

        assert health.await_args.kwargs["status"] == "unhealthy"


class TestSyncCli:
    def test_explicit_dates(self):
        args = sync_square_bookings.build_parser().parse_args(
            ["--start", "2025-01-01", "--end", "2025-01-15", "--dry-run"]
        )

        start, end = sync_square_bookings.resolve_dates(args)

        assert start == datetime(2025, 1, 1, tzinfo=UTC)
        assert end == datetime(2025, 1, 15, tzinfo=UTC)
        assert args.dry_run is True

    def test_days_window(self):
        args = sync_square_bookings.build_parser().parse_args(["--days", "14"])

        start, end = sync_square_bookings.resolve_dates(args)

        assert (end - start).days == 14

    def test_days_with_dates_rejected(self):
        args = sync_square_bookings.build_parser().parse_args(["--days", "3", "--start", "2025-01-01"])

        with pytest.raises(ValueError):
            sync_square_bookings.resolve_dates(args)

    @pytest.mark.asyncio
    async def test_main_exit_codes(self, capsys):
        job = MagicMock()
        job.run = AsyncMock(return_value=ReconciliationResult(success=True, synced=2))

        with patch.object(sync_square_bookings, "validate_startup_config", new_callable=AsyncMock), \
             patch.object(sync_square_bookings, "get_reconciliation_job", return_value=job):
            code = await sync_square_bookings.main(["--dry-run"])

        assert code == 0
        assert json.loads(capsys.readouterr().out)["synced"] == 2
        assert job.run.await_args.kwargs["dry_run"] is True

    @pytest.mark.asyncio
    async def test_main_fails_on_errors(self):
        job = MagicMock()
        job.run = AsyncMock(
            return_value=ReconciliationResult(success=False, errors=[{"booking_id": "config", "error": "x"}])
        )

        with patch.object(sync_square_bookings, "validate_startup_config", new_callable=AsyncMock), \
             patch.object(sync_square_bookings, "get_reconciliation_job", return_value=job):
            assert await sync_square_bookings.main([]) == 1

"""Unit tests for the background expiry sweeper."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.services.expiry_sweeper import (
    ExpirySweeper,
    ExpirySweeperConfig,
    get_expiry_sweeper,
    init_expiry_sweeper,
    shutdown_expiry_sweeper,
)
from src.services.fulfillment_service import SweepResult


@pytest.fixture
def mock_service() -> MagicMock:
    """A fulfillment service whose sweep is mocked."""
    service = MagicMock()
    service.sweep_expired = AsyncMock(return_value=SweepResult(released_units=2, failed_orders=["o-1"]))
    return service


@pytest.fixture
def mock_monitor() -> MagicMock:
    """A stock monitor whose check is mocked."""
    monitor = MagicMock()
    monitor.check_stock_levels = AsyncMock(return_value=[])
    return monitor


class TestExpirySweeper:
    """Tests for ExpirySweeper."""

    async def test_run_once_sweeps(self, mock_service: MagicMock, mock_monitor: MagicMock) -> None:
        """A manual run calls the service once."""
        sweeper = ExpirySweeper(service_factory=lambda: mock_service, monitor_factory=lambda: mock_monitor)

        result = await sweeper.run_once()

        assert result.released_units == 2
        assert sweeper.runs == 1
        mock_service.sweep_expired.assert_awaited_once()
        mock_monitor.check_stock_levels.assert_awaited_once()

    async def test_failed_stock_check_still_counts_sweep(
        self, mock_service: MagicMock, mock_monitor: MagicMock
    ) -> None:
        """A stock check error surfaces after the sweep has run."""
        mock_monitor.check_stock_levels.side_effect = RuntimeError("store down")
        sweeper = ExpirySweeper(service_factory=lambda: mock_service, monitor_factory=lambda: mock_monitor)

        with pytest.raises(RuntimeError):
            await sweeper.run_once()

        assert sweeper.runs == 1
        mock_service.sweep_expired.assert_awaited_once()

    async def test_loop_runs_on_interval(self, mock_service: MagicMock, mock_monitor: MagicMock) -> None:
        """The background task sweeps repeatedly until stopped."""
        sweeper = ExpirySweeper(
            ExpirySweeperConfig(interval_seconds=0),
            service_factory=lambda: mock_service,
            monitor_factory=lambda: mock_monitor,
        )

        await sweeper.start()
        assert sweeper.is_running
        for _ in range(50):
            if sweeper.runs >= 2:
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()

        assert sweeper.runs >= 2
        assert not sweeper.is_running

    async def test_failed_sweep_does_not_stop_loop(self, mock_service: MagicMock, mock_monitor: MagicMock) -> None:
        """An exception in one sweep is logged and the next still runs."""
        mock_service.sweep_expired.side_effect = [RuntimeError("store down"), SweepResult(), SweepResult()]
        sweeper = ExpirySweeper(
            ExpirySweeperConfig(interval_seconds=0),
            service_factory=lambda: mock_service,
            monitor_factory=lambda: mock_monitor,
        )

        await sweeper.start()
        for _ in range(50):
            if sweeper.runs >= 1:
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()

        assert mock_service.sweep_expired.await_count >= 2
        assert sweeper.runs >= 1

    async def test_start_is_idempotent(self, mock_service: MagicMock, mock_monitor: MagicMock) -> None:
        """Starting twice keeps a single task."""
        sweeper = ExpirySweeper(
            ExpirySweeperConfig(interval_seconds=3600),
            service_factory=lambda: mock_service,
            monitor_factory=lambda: mock_monitor,
        )

        await sweeper.start()
        task = sweeper._task
        await sweeper.start()

        assert sweeper._task is task
        await sweeper.stop()

    async def test_stop_without_start(self) -> None:
        """Stopping an idle sweeper is harmless."""
        sweeper = ExpirySweeper()

        await sweeper.stop()

        assert not sweeper.is_running


class TestSweeperSingleton:
    """Tests for the app-level init/shutdown helpers."""

    async def test_init_and_shutdown(self) -> None:
        """The singleton starts and is discarded on shutdown."""
        sweeper = await init_expiry_sweeper()
        try:
            assert sweeper is get_expiry_sweeper()
            assert sweeper.is_running
            assert sweeper.config.interval_seconds == 3600
        finally:
            await shutdown_expiry_sweeper()

        assert not sweeper.is_running
        assert get_expiry_sweeper() is not sweeper

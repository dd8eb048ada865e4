"""Background task that periodically releases expired claims and checks stock levels."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from src.services.fulfillment_service import FulfillmentService, SweepResult
    from src.services.stock_monitor_service import StockMonitorService

logger = logging.getLogger(__name__)


@dataclass
class ExpirySweeperConfig:
    """Configuration for the expiry sweep loop."""

    interval_seconds: int = 60

    @classmethod
    def from_settings(cls) -> "ExpirySweeperConfig":
        """Create config from application settings."""
        from src.core.config import get_settings
        settings = get_settings()
        return cls(interval_seconds=settings.expiry_sweep_interval_seconds)


def _default_service_factory() -> "FulfillmentService":
    from src.services.fulfillment_service import FulfillmentService
    return FulfillmentService()


def _default_monitor_factory() -> "StockMonitorService":
    from src.services.stock_monitor_service import StockMonitorService
    return StockMonitorService()


class ExpirySweeper:
    """Runs ``FulfillmentService.sweep_expired`` and the stock-level check on a fixed interval."""

    def __init__(
        self,
        config: ExpirySweeperConfig | None = None,
        service_factory: Callable[[], "FulfillmentService"] | None = None,
        monitor_factory: Callable[[], "StockMonitorService"] | None = None,
    ) -> None:
        self.config = config or ExpirySweeperConfig()
        self._service_factory = service_factory or _default_service_factory
        self._monitor_factory = monitor_factory or _default_monitor_factory
        self._service: FulfillmentService | None = None
        self._monitor: StockMonitorService | None = None
        self._task: asyncio.Task | None = None
        self.runs = 0

    @property
    def service(self) -> "FulfillmentService":
        """Get the fulfillment service, created on first use."""
        if self._service is None:
            self._service = self._service_factory()
        return self._service

    @property
    def monitor(self) -> "StockMonitorService":
        """Get the stock monitor, created on first use."""
        if self._monitor is None:
            self._monitor = self._monitor_factory()
        return self._monitor

    @property
    def is_running(self) -> bool:
        """Whether the background loop is active."""
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start background sweep task."""
        if self._task is None:
            self._task = asyncio.create_task(self._sweep_loop())
            logger.info("Expiry sweeper started (interval %ds)", self.config.interval_seconds)

    async def stop(self) -> None:
        """Stop background sweep task."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Expiry sweeper stopped")

    async def _sweep_loop(self) -> None:
        """Background loop; one failed sweep does not stop the next."""
        while True:
            await asyncio.sleep(self.config.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Expiry sweep failed")

    async def run_once(self) -> "SweepResult":
        """Run a single sweep now, then check stock levels."""
        result = await self.service.sweep_expired()
        self.runs += 1
        await self.monitor.check_stock_levels()
        return result


# Global singleton instance
_expiry_sweeper: ExpirySweeper | None = None


def get_expiry_sweeper() -> ExpirySweeper:
    """Get or create the global expiry sweeper instance."""
    global _expiry_sweeper
    if _expiry_sweeper is None:
        _expiry_sweeper = ExpirySweeper(ExpirySweeperConfig.from_settings())
    return _expiry_sweeper


async def init_expiry_sweeper() -> ExpirySweeper:
    """Start the expiry sweeper. Call at app startup."""
    sweeper = get_expiry_sweeper()
    await sweeper.start()
    return sweeper


async def shutdown_expiry_sweeper() -> None:
    """Stop the expiry sweeper. Call at app shutdown."""
    global _expiry_sweeper
    if _expiry_sweeper:
        await _expiry_sweeper.stop()
        _expiry_sweeper = None

import asyncio
import logging
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class PeriodicJob(Protocol):
    name: str

    async def run_once(self) -> int:
        """Run one pass and return how many items were handled."""
        ...


class BackgroundWorker:
    """Background worker that runs a job on a fixed interval."""

    def __init__(self, job: PeriodicJob, poll_interval: float = 60.0):
        self.job = job
        self.poll_interval = poll_interval
        self._task: Optional[asyncio.Task] = None
        self._running = False

    def start(self) -> None:
        """Start the background worker loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._worker_loop())
        logger.info(f"Background worker for {self.job.name} started")

    async def stop(self) -> None:
        """Stop the background worker loop."""
        if not self._running:
            return

        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info(f"Background worker for {self.job.name} stopped")

    def is_running(self) -> bool:
        """Check if the background worker is running."""
        return self._running

    async def _worker_loop(self) -> None:
        try:
            while self._running:
                try:
                    handled = await self.job.run_once()
                    if handled:
                        logger.info(f"{self.job.name} handled {handled} items")
                except Exception as e:
                    # Keep the loop alive; the next pass retries
                    logger.error(f"Error in {self.job.name} loop: {e}")
                await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            logger.debug(f"Background worker for {self.job.name} cancelled")
        finally:
            self._running = False

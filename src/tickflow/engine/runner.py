"""Polling driver for FlowEngine.

The engine only moves a run when someone calls tick(). FlowRunner is that
someone for deployments without their own scheduler: it repeatedly ticks
every RUNNING run, several at a time, until stopped.

Usage:
    runner = FlowRunner(engine, poll_interval=0.5, max_concurrency=20)
    await runner.start()
    ...
    await runner.stop()

Several runners (in one process or many, sharing a SQLite file or Redis)
may poll the same store: the per-run advisory lock keeps each run
single-writer.
"""

from __future__ import annotations

import asyncio
import logging

from tickflow.engine.engine import FlowEngine
from tickflow.errors import FlowError, LockTimeoutError
from tickflow.models import FlowRun, FlowRunStatus

logger = logging.getLogger(__name__)


class FlowRunner:
    """Ticks running runs in the background.

    Args:
        engine: Engine whose runs are driven
        poll_interval: Seconds to sleep when no run is RUNNING
            (default: ``settings.runner_poll_interval``)
        max_concurrency: Maximum runs ticked at once
            (default: ``settings.runner_max_concurrency``)
    """

    def __init__(
        self,
        engine: FlowEngine,
        poll_interval: float | None = None,
        max_concurrency: int | None = None,
    ):
        settings = engine.settings
        self._engine = engine
        self._poll_interval = (
            poll_interval if poll_interval is not None else settings.runner_poll_interval
        )
        concurrency = (
            max_concurrency if max_concurrency is not None else settings.runner_max_concurrency
        )
        if concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {concurrency}")
        self._semaphore = asyncio.Semaphore(concurrency)
        self._shutdown_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        """Tick every RUNNING run once, concurrently.

        Returns:
            Number of runs successfully ticked
        """
        run_ids = await self._engine.get_running_run_ids()
        if not run_ids:
            return 0
        results = await asyncio.gather(
            *(self._tick(run_id) for run_id in run_ids), return_exceptions=True
        )
        for run_id, result in zip(run_ids, results):
            if isinstance(result, BaseException):
                logger.error(f"Tick of run {run_id} failed: {result!r}")
        return sum(1 for result in results if result == 1)

    async def run_until_idle(self, max_ticks: int = 10_000) -> int:
        """Tick until no run is RUNNING or ``max_ticks`` ticks were made.

        WAITING runs do not keep the loop alive; they need resume_run().

        Returns:
            Total number of ticks made
        """
        total = 0
        while total < max_ticks:
            ticked = await self.run_once()
            if ticked == 0:
                break
            total += ticked
        return total

    async def drive(self, run_id: str, max_ticks: int = 1_000) -> FlowRun:
        """Tick a single run until it leaves RUNNING.

        Raises:
            RunNotFoundError: If the run does not exist
            FlowError: If ``max_ticks`` is exhausted while still RUNNING
        """
        for _ in range(max_ticks):
            run = await self._engine.tick(run_id)
            if run.status != FlowRunStatus.RUNNING:
                return run
        raise FlowError(f"Run {run_id} still RUNNING after {max_ticks} ticks", code="MAX_TICKS")

    async def start(self) -> None:
        """Start the background polling loop. Returns immediately."""
        if self.is_running:
            return
        self._shutdown_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info("Flow runner started")

    async def stop(self) -> None:
        """Request shutdown and wait for in-flight ticks to finish."""
        if self._task is None:
            return
        self._shutdown_event.set()
        await self._task
        self._task = None
        logger.info("Flow runner stopped")

    async def _run(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                ticked = await self.run_once()
            except Exception as e:
                # Store outage: back off and poll again.
                logger.error(f"Runner poll failed: {e!r}")
                ticked = 0
            if ticked:
                continue
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._poll_interval)
            except TimeoutError:
                pass

    async def _tick(self, run_id: str) -> int:
        async with self._semaphore:
            try:
                await self._engine.tick(run_id)
                return 1
            except LockTimeoutError:
                logger.warning(f"Run {run_id} is locked by another worker, skipping")
            except FlowError as e:
                logger.error(f"Tick of run {run_id} failed: {e.code} {e}")
            except Exception as e:
                logger.error(f"Tick of run {run_id} failed: {e!r}")
            return 0

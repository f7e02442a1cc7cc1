"""Sequential burst/rotate work scheduler.

Assets are analyzed one at a time so outbound calls stay within the shared
provider rate budget. A failing asset is retried immediately (after a short
cooldown) until its attempt count reaches a multiple of the burst size, then
rotated to the back so the rest of the watchlist can make progress. Items
that reach the attempt cap are dropped as FAILED.
"""
import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable

from coinagent.core.errors import SchedulerExhausted
from coinagent.models import ScheduleReport, WorkItem, WorkState

logger = logging.getLogger(__name__)


def build_queue(assets: list[str]) -> deque[WorkItem]:
    """Create a queue with one pending item per distinct asset, in order."""
    seen: set[str] = set()
    queue: deque[WorkItem] = deque()
    for asset in assets:
        if asset in seen:
            continue
        seen.add(asset)
        queue.append(WorkItem(asset=asset))
    return queue


def requeue(queue: deque[WorkItem], item: WorkItem, burst_size: int) -> bool:
    """Reinsert a failed item after its attempt counter was incremented.

    Returns:
        True if the item went back to the front (burst retry), False if it
        was rotated to the back
    """
    item.state = WorkState.PENDING
    if item.attempts % burst_size != 0:
        queue.appendleft(item)
        return True
    queue.append(item)
    return False


class RetryScheduler:
    """Drives one async task per work item with bounded retries."""

    def __init__(
        self,
        burst_size: int = 5,
        max_attempts: int = 15,
        cooldown_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the scheduler.

        Args:
            burst_size: Consecutive attempts before an item is rotated
            max_attempts: Attempts after which an item is marked FAILED
            cooldown_seconds: Delay before an immediate (burst) retry
            sleep: Awaitable sleep, replaceable in tests
        """
        if burst_size < 1:
            raise ValueError("burst_size must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.burst_size = burst_size
        self.max_attempts = max_attempts
        self.cooldown_seconds = cooldown_seconds
        self._sleep = sleep
        self._cancelled = False

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop after the item currently being analyzed."""
        self._cancelled = True
        logger.info("Scheduler cancellation requested")

    def reset_cancellation(self) -> None:
        """Allow a cancelled scheduler to run again."""
        self._cancelled = False

    async def run(
        self,
        queue: deque[WorkItem],
        task: Callable[[str], Awaitable[Any]],
    ) -> ScheduleReport:
        """Process the queue until it drains or the run is cancelled.

        A cancellation requested before the call is honored: the run stops
        before the first item. Call ``reset_cancellation`` to run again.

        Args:
            queue: Work items to process; mutated in place
            task: Coroutine function analyzing one asset. Raising marks the
                attempt as failed.

        Returns:
            ScheduleReport with the state of every asset seen
        """
        report = ScheduleReport()
        for item in queue:
            report.states[item.asset] = item.state
            report.attempts[item.asset] = item.attempts

        while queue:
            if self._cancelled:
                report.cancelled = True
                logger.info(f"Scheduler cancelled with {len(queue)} items pending")
                break

            item = queue.popleft()

            if item.attempts >= self.max_attempts:
                item.state = WorkState.FAILED
                error = SchedulerExhausted(item.asset, item.attempts)
                error.__cause__ = report.errors.get(item.asset)
                report.states[item.asset] = WorkState.FAILED
                report.errors[item.asset] = error
                logger.warning(f"{error}; giving up for this run")
                continue

            item.state = WorkState.ANALYZING
            report.states[item.asset] = WorkState.ANALYZING
            logger.info(f"Analyzing {item.asset} (attempt {item.attempts + 1})...")

            try:
                result = await task(item.asset)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                item.attempts += 1
                report.attempts[item.asset] = item.attempts
                report.errors[item.asset] = e
                burst = requeue(queue, item, self.burst_size)
                report.states[item.asset] = WorkState.PENDING

                logger.warning(
                    f"{item.asset} attempt {item.attempts} failed: {e} "
                    f"({'retrying' if burst else 'rotating to back of queue'})"
                )
                logger.debug(
                    "STEP: Work item requeued",
                    extra={
                        "extra_data": {
                            "action": "requeue",
                            "asset": item.asset,
                            "attempts": item.attempts,
                            "burst": burst,
                            "queue_length": len(queue),
                        }
                    },
                )

                if burst and item.attempts < self.max_attempts and self.cooldown_seconds > 0:
                    await self._sleep(self.cooldown_seconds)
                continue

            item.state = WorkState.COMPLETED
            item.attempts += 1
            report.states[item.asset] = WorkState.COMPLETED
            report.attempts[item.asset] = item.attempts
            report.results[item.asset] = result
            report.errors.pop(item.asset, None)
            logger.info(f"{item.asset} completed")

        logger.info(
            f"Scheduler finished: {len(report.completed)} completed, {len(report.failed)} failed"
            f"{', cancelled' if report.cancelled else ''}"
        )
        return report

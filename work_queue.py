import asyncio
import logging
from collections import deque

logger = logging.getLogger(__name__)


class WorkQueue:
    """Run submitted coroutine jobs with at most `concurrency` in flight.

    Jobs start in submission order as slots free up. Each submit() returns a
    future holding the job's result or exception, so one failing job never
    affects the others or the idle state.
    """

    def __init__(self, concurrency=50):
        if not isinstance(concurrency, int) or concurrency < 1:
            raise ValueError(f"Concurrency {concurrency} must be a positive integer")
        self.concurrency = concurrency
        self._pending = deque()
        self._running = 0
        self._peak = 0
        self._tasks = set()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def pending(self):
        return len(self._pending)

    @property
    def running(self):
        return self._running

    @property
    def peak(self):
        """Highest number of jobs seen running at the same time."""
        return self._peak

    def submit(self, job):
        """Queue a zero-argument coroutine function and return its future."""
        future = asyncio.get_running_loop().create_future()
        self._pending.append((job, future))
        self._idle.clear()
        self._start_next()
        return future

    async def wait_idle(self):
        """Wait until nothing is pending or running."""
        # another submitter may queue work between the event firing and this resuming
        while self._pending or self._running:
            await self._idle.wait()

    def _start_next(self):
        while self._pending and self._running < self.concurrency:
            job, future = self._pending.popleft()
            self._running += 1
            self._peak = max(self._peak, self._running)
            task = asyncio.ensure_future(self._run(job, future))
            # the loop only keeps weak references to tasks
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, job, future):
        logger.debug(f"Starting job ({self._running}/{self.concurrency} running, {len(self._pending)} pending)")
        try:
            result = await job()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
        else:
            if not future.done():
                future.set_result(result)
        finally:
            self._running -= 1
            self._start_next()
            if not self._pending and self._running == 0:
                self._idle.set()

"""Detached background work: fire-and-forget tasks and ordered write queues."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Set

import structlog

logger = structlog.get_logger()

Job = Callable[[], Awaitable[Any]]

_detached: Set[asyncio.Task] = set()


async def run_and_log_failure(job: Job, event: str, **fields: Any) -> bool:
    """Await ``job``; log and swallow any failure.

    Returns True when the job completed. This is the policy for every write
    whose outcome the caller does not wait on.
    """
    try:
        await job()
        return True
    except Exception as e:
        logger.error(f"{event}_failed", error=str(e), **fields)
        return False


def fire_and_forget(job: Job, event: str, **fields: Any) -> asyncio.Task:
    """Run ``job`` as a detached task under ``run_and_log_failure``."""
    task = asyncio.create_task(run_and_log_failure(job, event, **fields))
    _detached.add(task)
    task.add_done_callback(_detached.discard)
    return task


@dataclass
class QueuedWrite:
    """A pending write with its ordering context."""

    key: str
    job: Job
    event: str
    sequence_number: int


class BackgroundWriter:
    """Per-key ordered queues of fire-and-forget writes.

    Writes submitted under the same key run one at a time in submission order;
    different keys proceed independently. Nothing is awaited by the submitter.
    """

    def __init__(self) -> None:
        self.queues: Dict[str, asyncio.Queue] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._sequence_counters: Dict[str, int] = {}
        logger.info("background_writer_initialized")

    def _get_queue(self, key: str) -> asyncio.Queue:
        """Get or create the queue for a key."""
        if key not in self.queues:
            self.queues[key] = asyncio.Queue()
            self._sequence_counters[key] = 0
            self._tasks[key] = asyncio.create_task(self._process_queue(key))
        return self.queues[key]

    def submit(self, key: str, job: Job, event: str = "background_write") -> int:
        """Enqueue ``job`` behind earlier writes for ``key``. Returns its sequence number."""
        queue = self._get_queue(key)
        sequence_number = self._sequence_counters[key]
        self._sequence_counters[key] += 1
        queue.put_nowait(
            QueuedWrite(key=key, job=job, event=event, sequence_number=sequence_number)
        )
        return sequence_number

    async def _process_queue(self, key: str) -> None:
        """Process writes for one key in order."""
        queue = self.queues[key]
        try:
            while True:
                write = await queue.get()
                try:
                    await run_and_log_failure(
                        write.job, write.event, key=key, sequence=write.sequence_number
                    )
                finally:
                    queue.task_done()
        except asyncio.CancelledError:
            logger.info("write_queue_cancelled", key=key)

    async def flush(self) -> None:
        """Wait until every queued write has run."""
        for queue in list(self.queues.values()):
            await queue.join()

    async def cleanup(self) -> None:
        """Cancel queue processors and drop pending writes."""
        tasks = list(self._tasks.values())
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self.queues.clear()
        self._tasks.clear()
        self._sequence_counters.clear()
        logger.info("background_writer_cleaned_up")

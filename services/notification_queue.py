"""
Background notification queue

Notification dispatch runs off the request path on a small pool of asyncio
workers. A completed job writes only the notification flags back to the
registration.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from services.notifications import NotificationDispatcher
from services.registration_store import Registration

logger = logging.getLogger(__name__)


@dataclass
class NotificationJob:
    registration: Registration
    password_message: str


class NotificationQueue:
    """Bounded asyncio queue drained by a fixed number of worker tasks"""

    def __init__(self, dispatcher: NotificationDispatcher, store, workers: int = 4, maxsize: int = 500):
        self.dispatcher = dispatcher
        self.store = store
        self.worker_count = max(1, workers)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._workers: List[asyncio.Task] = []
        self.processed = 0
        self.dropped = 0

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    def start(self):
        """Start the worker tasks (idempotent, needs a running loop)"""
        self._workers = [task for task in self._workers if not task.done()]
        while len(self._workers) < self.worker_count:
            index = len(self._workers)
            self._workers.append(asyncio.create_task(self._worker(index), name=f"notification-worker-{index}"))
        logger.debug(f"✅ NOTIFY QUEUE: {len(self._workers)} workers running")

    def enqueue(self, registration: Registration, password_message: str) -> bool:
        """
        Schedule notification dispatch without waiting for it

        Returns:
            bool: False when the queue is full and the job was dropped
        """
        self.start()
        try:
            self._queue.put_nowait(NotificationJob(registration, password_message))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error(f"❌ NOTIFY QUEUE: Queue full, notification for registration {registration.id} dropped")
            return False

        logger.info(f"📨 NOTIFY QUEUE: Registration {registration.id} queued (depth {self.depth})")
        return True

    async def _worker(self, index: int):
        while True:
            job = await self._queue.get()
            try:
                await self._process(job)
            except Exception as e:
                logger.error(f"❌ NOTIFY QUEUE: Worker {index} failed on registration {job.registration.id}: {e}",
                             exc_info=True)
            finally:
                self._queue.task_done()

    async def _process(self, job: NotificationJob):
        registration = job.registration
        try:
            result = await self.dispatcher.dispatch(registration, job.password_message)
        except Exception as e:
            logger.error(f"❌ NOTIFY QUEUE: Dispatch raised for registration {registration.id}: {e}")
            result = {'mail_sent': False, 'wa_sent': False}

        updated = await self.store.update_notification_flags(
            registration.id, result['mail_sent'], result['wa_sent']
        )
        if not updated:
            logger.warning(f"⚠️ NOTIFY QUEUE: Flags not written for registration {registration.id} (not completed)")
        self.processed += 1

    async def join(self, timeout: Optional[float] = None):
        """Wait until every queued job has been processed"""
        if timeout is None:
            await self._queue.join()
        else:
            await asyncio.wait_for(self._queue.join(), timeout)

    async def stop(self):
        """Cancel the worker tasks; pending jobs are abandoned"""
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info(f"✅ NOTIFY QUEUE: Stopped (processed={self.processed}, dropped={self.dropped})")

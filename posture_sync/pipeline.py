# Pipeline - Frame Source → Angle Computer → Aggregator → Local Store → Sync Scheduler
import asyncio
import time
from typing import Any, Callable, Dict, Optional, Set

from posture_sync import config
from posture_sync import logger
from posture_sync.aggregator import LocalAggregator, summarize
from posture_sync.angle_computer import AngleComputer
from posture_sync.errors import StorageFailure
from posture_sync.frame_source import LandmarkFrameSource
from posture_sync.local_store import LocalStore
from posture_sync.models import AngleSample, LandmarkFrame
from posture_sync.remote_store import RemoteSummaryStore
from posture_sync.sync_scheduler import AuthProvider, SyncScheduler


class Pipeline:
    """
    Wires the measurement path to durable storage and sync.

    Frame handling is synchronous and never fails; checkpoints and uploads
    are the only awaited work, so measurement keeps going while the network
    or the disk misbehaves.
    """

    def __init__(self, user_id: str, store: LocalStore, remote: RemoteSummaryStore,
                 auth_provider: AuthProvider, computer: AngleComputer = None,
                 aggregator: LocalAggregator = None, scheduler: SyncScheduler = None,
                 clock: Callable[[], float] = time.time,
                 teardown_timeout: float = None):
        self.user_id = str(user_id)
        self.clock = clock
        self.store = store
        self.remote = remote
        self.computer = computer or AngleComputer()
        self.aggregator = aggregator or LocalAggregator(self.user_id, clock=clock)
        self.scheduler = scheduler or SyncScheduler(
            store, remote, auth_provider, aggregator=self.aggregator, clock=clock
        )
        self.teardown_timeout = (
            config.TEARDOWN_FLUSH_TIMEOUT_SECONDS if teardown_timeout is None else float(teardown_timeout)
        )
        self._tasks: Set[asyncio.Task] = set()
        self.started = False

    async def start(self, background_sync: bool = True) -> int:
        """
        Open the local store, recover unsynced work and start the sync timer

        Returns:
            Number of aggregates waiting to be synced
        """
        self.store.init()
        pending = await self.scheduler.recover()
        if background_sync:
            self.scheduler.start()
        self.started = True
        logger.log_lifecycle("PIPELINE STARTED", f"user={self.user_id} pending={pending}")
        return pending

    # ------------------------------------------------------------------
    # Measurement path
    # ------------------------------------------------------------------

    def handle_frame(self, frame: LandmarkFrame) -> Optional[AngleSample]:
        sample = self.computer.process(frame)
        if sample is not None:
            self.aggregator.fold(sample)
        return sample

    async def run(self, source: LandmarkFrameSource) -> int:
        """
        Consume a frame source until it ends

        Returns:
            Number of accepted samples
        """
        accepted = 0
        try:
            async for frame in source.frames():
                if self.handle_frame(frame) is not None:
                    accepted += 1
                await self.maintain()
        finally:
            source.close()

        await self.checkpoint(force=True)
        logger.log_frame("Source Exhausted", {
            "accepted": self.computer.accepted,
            "rejected": self.computer.rejected,
            "session_breaks": self.computer.session_breaks
        })
        return accepted

    async def tick(self):
        """Rollover and checkpoint check while no frames arrive"""
        self.aggregator.tick()
        await self.maintain()

    async def maintain(self):
        sealed = self.aggregator.take_sealed()
        if sealed:
            await self.checkpoint(force=True)
            self._spawn(self.scheduler.flush())
        elif self.aggregator.checkpoint_due():
            await self.checkpoint()

    # ------------------------------------------------------------------
    # Durability
    # ------------------------------------------------------------------

    async def checkpoint(self, force: bool = False) -> int:
        """
        Persist every aggregate modified since its last write

        Args:
            force: Write even if the fold/time cadence has not been reached

        Returns:
            Number of aggregates written
        """
        if not force and not self.aggregator.checkpoint_due():
            return 0

        written = 0
        for snapshot, _ in self.aggregator.dirty():
            aggregate = self.aggregator.get_key(snapshot.key)
            revision = aggregate.revision
            try:
                await self.store.put(aggregate)
            except StorageFailure as e:
                # Stays dirty; the next checkpoint retries
                logger.log_warning("Checkpoint Write Failed", {"date": aggregate.date_iso, "error": e.message})
                continue
            self.aggregator.mark_clean(aggregate.key, revision)
            written += 1

        self.aggregator.note_checkpoint()
        if written:
            logger.log_store("Checkpoint", {"written": written})
        return written

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def shutdown(self, close_store: bool = True):
        """
        Teardown: durable write of everything dirty, then one bounded flush

        Unsynced aggregates stay Pending/Failed in the store; anything cut off
        mid-upload stays Syncing and is retried after the next start.
        """
        logger.log_lifecycle("PIPELINE SHUTDOWN", f"user={self.user_id}")
        await self.scheduler.stop()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        for snapshot, _ in self.aggregator.dirty():
            aggregate = self.aggregator.get_key(snapshot.key)
            revision = aggregate.revision
            try:
                self.store.put_blocking(aggregate)
            except StorageFailure as e:
                logger.log_error("Teardown Write Failed", e, {"date": aggregate.date_iso})
                continue
            self.aggregator.mark_clean(aggregate.key, revision)

        try:
            await asyncio.wait_for(
                self.scheduler.flush(timeout=self.teardown_timeout), timeout=self.teardown_timeout
            )
        except asyncio.TimeoutError:
            logger.log_warning("Teardown Flush Timed Out", {"timeout_s": self.teardown_timeout})
        self.remote.close()

        if close_store:
            self.store.close()
        self.started = False

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "frames": {
                "accepted": self.computer.accepted,
                "rejected": self.computer.rejected,
                "session_breaks": self.computer.session_breaks
            },
            "days": [summarize(a) for a in self.aggregator.aggregates()],
            "sync": self.scheduler.status()
        }

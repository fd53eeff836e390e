# Sync Scheduler - Retryable, Serialized Upload of Daily Aggregates
import asyncio
import random
import time
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from posture_sync import config
from posture_sync import logger
from posture_sync.errors import AuthRequired, PostureSyncError, StorageFailure, TransientSyncError
from posture_sync.local_store import LocalStore
from posture_sync.models import AggregateKey, DailyAggregate, Principal, SyncState
from posture_sync.remote_store import RemoteSummaryStore, build_upsert_payload

AuthProvider = Callable[[], Optional[Principal]]
AttentionCallback = Callable[[DailyAggregate, PostureSyncError], None]


class SyncScheduler:
    """
    Decides when each DailyAggregate crosses to the remote store.

    State machine per (user, date):
        Pending -> Syncing -> Synced
        Syncing -> Failed            (error; retryable ones get a backoff deadline)
        Failed  -> Syncing           (next due attempt, retryable only)
        Failed  -> Pending           (resume_after_auth / requeue after a non-retryable error)
        Synced  -> Pending           (new fold, done by the aggregator)

    Uploads for one user run strictly one at a time, oldest date first; the
    client always sends the full cumulative aggregate and the server replaces
    by key, so this ordering is what makes re-sends safe.
    """

    def __init__(self, store: LocalStore, remote: RemoteSummaryStore, auth_provider: AuthProvider,
                 aggregator=None, user_id: str = None, interval: float = None,
                 backoff_base: float = None, backoff_max: float = None, jitter: float = None,
                 clock: Callable[[], float] = time.time, rng: random.Random = None,
                 on_attention: Optional[AttentionCallback] = None):
        self.store = store
        self.remote = remote
        self.auth_provider = auth_provider
        self.aggregator = aggregator
        self.user_id = user_id or (aggregator.user_id if aggregator is not None else None)
        self.interval = config.SYNC_INTERVAL_SECONDS if interval is None else float(interval)
        self.backoff_base = config.BACKOFF_BASE_SECONDS if backoff_base is None else float(backoff_base)
        self.backoff_max = config.BACKOFF_MAX_SECONDS if backoff_max is None else float(backoff_max)
        self.jitter = config.BACKOFF_JITTER if jitter is None else float(jitter)
        self.clock = clock
        self.rng = rng or random.Random()
        self.on_attention = on_attention

        self._known: Dict[AggregateKey, DailyAggregate] = {}
        self._key_locks: Dict[AggregateKey, asyncio.Lock] = {}
        self._user_locks: Dict[str, asyncio.Lock] = {}
        self._wakeup: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.foreground = True

        self.last_run_at: Optional[float] = None
        self.last_sync_ok: Optional[bool] = None
        self.last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def backoff_delay(self, attempts: int) -> float:
        """
        Delay before the next attempt after `attempts` consecutive failures

        Exponential with up to `jitter` random spread, capped at backoff_max
        and never shorter than one base interval.
        """
        exponent = max(0, int(attempts) - 1)
        raw = self.backoff_base * (2 ** min(exponent, 30))
        delay = raw * (1.0 + self.rng.uniform(0.0, self.jitter))
        return max(self.backoff_base, min(self.backoff_max, delay))

    # ------------------------------------------------------------------
    # Startup recovery
    # ------------------------------------------------------------------

    async def recover(self) -> int:
        """
        Treat uploads interrupted by a previous process as failed and load
        the unsynced work of this scheduler's user

        Returns:
            Number of aggregates waiting to be synced
        """
        now = self.clock()
        try:
            await self.store.recover_interrupted(now=now)
            pending = await self.store.list_pending(self.user_id)
        except StorageFailure as e:
            logger.log_error("Sync Recovery Failed", e)
            return 0

        for aggregate in pending:
            self._own(aggregate)

        logger.log_sync("Recovery Complete", {
            "pending": len(pending),
            "dates": ", ".join(a.date_iso for a in pending) or "-"
        })
        return len(pending)

    def _own(self, aggregate: DailyAggregate) -> DailyAggregate:
        if self.aggregator is not None and aggregate.user_id == self.aggregator.user_id:
            owner = self.aggregator.adopt(aggregate)
        else:
            owner = self._known.setdefault(aggregate.key, aggregate)
        return owner

    # ------------------------------------------------------------------
    # Candidate selection
    # ------------------------------------------------------------------

    def _is_due(self, aggregate: DailyAggregate, now: float) -> bool:
        if aggregate.count == 0:
            return False
        if aggregate.sync_state == SyncState.PENDING:
            return True
        if aggregate.sync_state == SyncState.FAILED:
            if not aggregate.last_error_retryable:
                return False
            return aggregate.next_attempt_at is None or now >= aggregate.next_attempt_at
        return False

    async def _candidates(self, user_id: str, now: float) -> List[DailyAggregate]:
        owners: Dict[AggregateKey, DailyAggregate] = {}
        try:
            for aggregate in await self.store.list_pending(user_id):
                owner = self._own(aggregate)
                owners[owner.key] = owner
        except StorageFailure as e:
            # Flush straight from memory while the store is unavailable
            logger.log_warning("Pending Scan Failed", {"error": e.message})

        for aggregate in self._in_memory(user_id):
            owners.setdefault(aggregate.key, aggregate)

        due = [a for a in owners.values() if self._is_due(a, now)]
        return sorted(due, key=lambda a: a.date_iso)

    def _in_memory(self, user_id: Optional[str]) -> List[DailyAggregate]:
        aggregates = list(self._known.values())
        if self.aggregator is not None:
            aggregates.extend(self.aggregator.aggregates())
        return [a for a in aggregates if user_id is None or a.user_id == user_id]

    # ------------------------------------------------------------------
    # Sync runs
    # ------------------------------------------------------------------

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        if user_id not in self._user_locks:
            self._user_locks[user_id] = asyncio.Lock()
        return self._user_locks[user_id]

    def _key_lock(self, key: AggregateKey) -> asyncio.Lock:
        if key not in self._key_locks:
            self._key_locks[key] = asyncio.Lock()
        return self._key_locks[key]

    async def run_once(self, trigger: str = "tick", timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        One pass over every due aggregate of the current user

        Args:
            trigger: What caused the run (tick, flush, foreground, background, teardown)
            timeout: Per-request cap in seconds for this run's uploads

        Returns:
            Dict with attempted/synced/failed counts
        """
        principal = self.auth_provider()
        user_id = principal.user_id if principal is not None else self.user_id
        result = {"trigger": trigger, "attempted": 0, "synced": 0, "failed": 0}
        if user_id is None:
            return result

        async with self._user_lock(user_id):
            now = self.clock()
            self.last_run_at = now
            candidates = await self._candidates(user_id, now)
            if candidates:
                logger.log_sync("Sync Run", {
                    "trigger": trigger,
                    "candidates": ", ".join(a.date_iso for a in candidates)
                })

            for aggregate in candidates:
                ok = await self._sync_one(principal, aggregate, timeout)
                if ok is None:
                    continue
                result["attempted"] += 1
                result["synced" if ok else "failed"] += 1

        return result

    async def _sync_one(self, principal: Optional[Principal], aggregate: DailyAggregate,
                        timeout: Optional[float] = None) -> Optional[bool]:
        lock = self._key_lock(aggregate.key)
        if lock.locked():
            return None

        async with lock:
            if not self._is_due(aggregate, self.clock()):
                return None

            aggregate.sync_state = SyncState.SYNCING
            aggregate.attempts += 1
            revision = aggregate.revision
            snapshot = aggregate.snapshot()

            try:
                await self._persist(aggregate)
                if principal is None:
                    raise AuthRequired("no authenticated session at flush time")
                payload = build_upsert_payload(snapshot)
                await self.remote.upsert(principal, payload, timeout=timeout)
            except asyncio.CancelledError:
                # Store keeps Syncing; a restart turns it into Failed
                aggregate.sync_state = SyncState.FAILED
                aggregate.last_error = "cancelled during upload"
                aggregate.last_error_retryable = True
                aggregate.next_attempt_at = self.clock() + self.backoff_base
                raise
            except PostureSyncError as e:
                self._record_failure(aggregate, e)
                await self._persist(aggregate)
                return False
            except Exception as e:
                self._record_failure(aggregate, TransientSyncError(f"unexpected upload error: {e!r}"))
                await self._persist(aggregate)
                return False

            now = self.clock()
            if aggregate.revision == revision:
                aggregate.sync_state = SyncState.SYNCED
                aggregate.last_synced_at = now
            else:
                # Folded while in flight; the newer cumulative value still has to go
                aggregate.sync_state = SyncState.PENDING
            aggregate.attempts = 0
            aggregate.next_attempt_at = None
            aggregate.last_error = None
            aggregate.last_error_retryable = True
            self.remote.invalidate(aggregate.user_id, aggregate.date_iso)
            await self._persist(aggregate)

            self.last_sync_ok = True
            self.last_error = None
            logger.log_sync("Upsert Acknowledged", {
                "date": snapshot.date_iso,
                "count": snapshot.count,
                "state": aggregate.sync_state.value
            })
            return True

    def _record_failure(self, aggregate: DailyAggregate, error: PostureSyncError):
        now = self.clock()
        aggregate.sync_state = SyncState.FAILED
        aggregate.last_error = f"{error.kind}: {error.message}"
        aggregate.last_error_retryable = bool(error.retryable)
        self.last_sync_ok = False
        self.last_error = aggregate.last_error

        if error.retryable:
            delay = self.backoff_delay(aggregate.attempts)
            aggregate.next_attempt_at = now + delay
            logger.log_warning("Sync Failed, Will Retry", {
                "date": aggregate.date_iso,
                "attempt": aggregate.attempts,
                "retry_in_s": f"{delay:.1f}",
                "error": error.message
            })
            return

        aggregate.next_attempt_at = None
        logger.log_sync("Attention Required", {
            "date": aggregate.date_iso,
            "error": aggregate.last_error
        })
        if self.on_attention is not None:
            try:
                self.on_attention(aggregate, error)
            except Exception as cb_error:
                logger.log_error("Attention Callback Failed", cb_error)

    async def _persist(self, aggregate: DailyAggregate):
        revision = aggregate.revision
        try:
            await self.store.put(aggregate)
        except StorageFailure as e:
            logger.log_warning("State Not Persisted", {"date": aggregate.date_iso, "error": e.message})
            if self.aggregator is not None:
                self.aggregator.mark_dirty(aggregate.key)
            return
        if self.aggregator is not None:
            self.aggregator.mark_clean(aggregate.key, revision)

    # ------------------------------------------------------------------
    # Corrective actions
    # ------------------------------------------------------------------

    def needs_attention(self) -> List[DailyAggregate]:
        candidates = list(self._known.values())
        if self.aggregator is not None:
            candidates.extend(self.aggregator.aggregates())
        return sorted({a.key: a for a in candidates if a.needs_attention}.values(), key=lambda a: a.date_iso)

    async def resume_after_auth(self) -> int:
        """
        Put aggregates parked by a non-retryable error back in the retry pool

        Returns:
            Number of aggregates requeued
        """
        parked = self.needs_attention()
        for aggregate in parked:
            aggregate.sync_state = SyncState.PENDING
            aggregate.attempts = 0
            aggregate.next_attempt_at = None
            aggregate.last_error = None
            aggregate.last_error_retryable = True
            await self._persist(aggregate)
        if parked:
            logger.log_sync("Requeued After Corrective Action", {"dates": ", ".join(a.date_iso for a in parked)})
            self.request_flush()
        return len(parked)

    requeue = resume_after_auth

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def request_flush(self):
        """Wake the periodic loop without waiting for the result"""
        if self._wakeup is not None:
            self._wakeup.set()

    async def flush(self, force: bool = False, timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Explicit flush request, e.g. before teardown

        Args:
            force: Also requeue aggregates parked by a non-retryable error
            timeout: Per-request cap in seconds, used to keep teardown bounded
        """
        if force:
            await self.requeue()
        return await self.run_once("flush", timeout=timeout)

    async def on_foreground(self) -> Dict[str, Any]:
        self.foreground = True
        return await self.run_once("foreground")

    async def on_background(self) -> Dict[str, Any]:
        self.foreground = False
        return await self.run_once("background")

    def _seconds_until_next_due(self) -> float:
        now = self.clock()
        wait = self.interval
        principal = self.auth_provider()
        user_id = principal.user_id if principal is not None else self.user_id
        if user_id is None:
            return wait
        # Only days a run_once would pick up may shorten the wait
        for aggregate in self._in_memory(user_id):
            if (aggregate.count > 0 and aggregate.sync_state == SyncState.FAILED
                    and aggregate.last_error_retryable and aggregate.next_attempt_at is not None):
                wait = min(wait, max(0.0, aggregate.next_attempt_at - now))
        return wait

    async def _loop(self):
        while True:
            try:
                await self.run_once("tick")
            except Exception as e:
                logger.log_error("Sync Tick Failed", e)

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._seconds_until_next_due())
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

    def start(self) -> asyncio.Task:
        """Start the periodic timer trigger on the running loop"""
        if self._task is None or self._task.done():
            self._wakeup = asyncio.Event()
            self._task = asyncio.create_task(self._loop())
            logger.log_sync("Scheduler Started", {"interval_s": self.interval})
        return self._task

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    # ------------------------------------------------------------------
    # Status indicator
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        """Non-blocking sync health summary for the UI indicator"""
        aggregates = {a.key: a for a in self._known.values()}
        if self.aggregator is not None:
            aggregates.update({a.key: a for a in self.aggregator.aggregates()})
        states = Counter(a.sync_state.value for a in aggregates.values())
        return {
            "last_run_at": self.last_run_at,
            "last_sync_ok": self.last_sync_ok,
            "last_error": self.last_error,
            "states": dict(states),
            "needs_attention": [a.date_iso for a in self.needs_attention()],
            "foreground": self.foreground
        }

# Local Store - Durable On-Device Aggregate Persistence (SQLAlchemy Core, No ORM Classes)
import asyncio
import os
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from sqlalchemy import (
    Boolean, Column, Float, Integer, MetaData, String, Table, Text, create_engine, select, update
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from posture_sync import config
from posture_sync import logger
from posture_sync.errors import StorageFailure
from posture_sync.models import DailyAggregate, SyncState

metadata = MetaData()

# Daily Aggregates Table - one row per (user, local date)
daily_aggregates_table = Table(
    'daily_aggregates',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('date_iso', String(10), primary_key=True),
    Column('sum_weighted', Float, nullable=False, default=0.0),
    Column('weight_seconds', Float, nullable=False, default=0.0),
    Column('count', Integer, nullable=False, default=0),
    Column('bad_seconds', Float, nullable=False, default=0.0),
    Column('sync_state', String(10), nullable=False, index=True),  # Pending, Syncing, Synced, Failed
    Column('last_local_update_at', Float, nullable=True),
    Column('last_synced_at', Float, nullable=True),
    Column('attempts', Integer, nullable=False, default=0),
    Column('next_attempt_at', Float, nullable=True),
    Column('last_error', Text, nullable=True),
    Column('last_error_retryable', Boolean, nullable=False, default=True),
)

PENDING_STATES = (SyncState.PENDING.value, SyncState.FAILED.value)


def _row_to_aggregate(row) -> DailyAggregate:
    r = row._mapping
    return DailyAggregate(
        user_id=r['user_id'],
        date_iso=r['date_iso'],
        sum_weighted=float(r['sum_weighted']),
        weight_seconds=float(r['weight_seconds']),
        count=int(r['count']),
        bad_seconds=float(r['bad_seconds']),
        sync_state=SyncState(r['sync_state']),
        last_local_update_at=r['last_local_update_at'],
        last_synced_at=r['last_synced_at'],
        attempts=int(r['attempts']),
        next_attempt_at=r['next_attempt_at'],
        last_error=r['last_error'],
        last_error_retryable=bool(r['last_error_retryable']),
    )


def _aggregate_values(aggregate: DailyAggregate) -> dict:
    return {
        'user_id': aggregate.user_id,
        'date_iso': aggregate.date_iso,
        'sum_weighted': float(aggregate.sum_weighted),
        'weight_seconds': float(aggregate.weight_seconds),
        'count': int(aggregate.count),
        'bad_seconds': float(aggregate.bad_seconds),
        'sync_state': aggregate.sync_state.value,
        'last_local_update_at': aggregate.last_local_update_at,
        'last_synced_at': aggregate.last_synced_at,
        'attempts': int(aggregate.attempts),
        'next_attempt_at': aggregate.next_attempt_at,
        'last_error': aggregate.last_error,
        'last_error_retryable': bool(aggregate.last_error_retryable),
    }


class LocalStore:
    """
    Key-value persistence of DailyAggregates keyed by (user_id, date_iso).

    Blocking SQLAlchemy calls run on one dedicated worker thread, so writes
    land in the order they were submitted from the event loop.
    """

    def __init__(self, path: str = None):
        self.path = path or config.LOCAL_STORE_PATH
        if self.path == ":memory:":
            self.engine = create_engine(
                "sqlite://",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool
            )
        else:
            directory = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(directory, exist_ok=True)
            self.engine = create_engine(f"sqlite:///{self.path}", connect_args={"check_same_thread": False})
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="local-store")

    def init(self) -> bool:
        """Create the aggregates table if it doesn't exist"""
        try:
            metadata.create_all(self.engine)
            logger.log_store("Local Store Ready", {"path": self.path})
            return True
        except SQLAlchemyError as e:
            logger.log_error("Local Store Init Failed", e, {"path": self.path})
            raise StorageFailure(f"cannot initialise local store: {e}")

    # ------------------------------------------------------------------
    # Synchronous operations
    # ------------------------------------------------------------------

    def put_sync(self, aggregate: DailyAggregate):
        """
        Overwrite the row for the aggregate's key in one transaction

        Args:
            aggregate: Aggregate (or snapshot) to persist

        Raises:
            StorageFailure: if the write did not commit
        """
        values = _aggregate_values(aggregate)
        stmt = sqlite_insert(daily_aggregates_table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=['user_id', 'date_iso'],
            set_={k: v for k, v in values.items() if k not in ('user_id', 'date_iso')}
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(stmt)
        except SQLAlchemyError as e:
            logger.log_error("Aggregate Write Failed", e, {
                "user_id": aggregate.user_id,
                "date": aggregate.date_iso
            })
            raise StorageFailure(f"put failed for {aggregate.date_iso}: {e}")

    def get_sync(self, user_id: str, date_iso: str) -> Optional[DailyAggregate]:
        query = select(daily_aggregates_table).where(
            (daily_aggregates_table.c.user_id == user_id) &
            (daily_aggregates_table.c.date_iso == date_iso)
        )
        try:
            with self.engine.connect() as conn:
                row = conn.execute(query).fetchone()
        except SQLAlchemyError as e:
            raise StorageFailure(f"get failed for {date_iso}: {e}")
        return _row_to_aggregate(row) if row else None

    def list_pending_sync(self, user_id: str = None) -> List[DailyAggregate]:
        """Aggregates in Pending or Failed, oldest date first"""
        query = select(daily_aggregates_table).where(
            daily_aggregates_table.c.sync_state.in_(PENDING_STATES)
        )
        if user_id is not None:
            query = query.where(daily_aggregates_table.c.user_id == user_id)
        query = query.order_by(daily_aggregates_table.c.date_iso, daily_aggregates_table.c.user_id)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(query).fetchall()
        except SQLAlchemyError as e:
            raise StorageFailure(f"pending scan failed: {e}")
        return [_row_to_aggregate(row) for row in rows]

    def list_all_sync(self, user_id: str = None) -> List[DailyAggregate]:
        query = select(daily_aggregates_table)
        if user_id is not None:
            query = query.where(daily_aggregates_table.c.user_id == user_id)
        query = query.order_by(daily_aggregates_table.c.date_iso)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(query).fetchall()
        except SQLAlchemyError as e:
            raise StorageFailure(f"scan failed: {e}")
        return [_row_to_aggregate(row) for row in rows]

    def recover_interrupted_sync(self, now: float = None) -> int:
        """
        Turn rows left in Syncing by a previous process into retryable Failed

        Returns:
            Number of rows recovered
        """
        stmt = update(daily_aggregates_table).where(
            daily_aggregates_table.c.sync_state == SyncState.SYNCING.value
        ).values(
            sync_state=SyncState.FAILED.value,
            last_error="interrupted before acknowledgement",
            last_error_retryable=True,
            next_attempt_at=now
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as e:
            raise StorageFailure(f"recovery failed: {e}")

        recovered = result.rowcount or 0
        if recovered:
            logger.log_store("Recovered Interrupted Uploads", {"rows": recovered})
        return recovered

    # ------------------------------------------------------------------
    # Async wrappers (the only suspension points besides the remote upsert)
    # ------------------------------------------------------------------

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    async def put(self, aggregate: DailyAggregate):
        # Snapshot now so later in-memory folds can't leak into this write
        await self._run(self.put_sync, aggregate.snapshot())

    async def get(self, user_id: str, date_iso: str) -> Optional[DailyAggregate]:
        return await self._run(self.get_sync, user_id, date_iso)

    async def list_pending(self, user_id: str = None) -> List[DailyAggregate]:
        return await self._run(self.list_pending_sync, user_id)

    async def list_all(self, user_id: str = None) -> List[DailyAggregate]:
        return await self._run(self.list_all_sync, user_id)

    async def recover_interrupted(self, now: float = None) -> int:
        return await self._run(self.recover_interrupted_sync, now)

    def put_blocking(self, aggregate: DailyAggregate):
        """Synchronous put queued behind any in-flight writes (teardown drain)"""
        self._executor.submit(self.put_sync, aggregate.snapshot()).result()

    def close(self):
        self._executor.shutdown(wait=True)
        self.engine.dispose()

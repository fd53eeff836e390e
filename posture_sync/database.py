# Database Module - Remote Summary Store Tables (SQLAlchemy Core, No ORM Classes)
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import (
    Column, DateTime, Float, Integer, MetaData, String, Table, UniqueConstraint, create_engine, select, text
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from posture_sync import config
from posture_sync import logger

metadata = MetaData()

# Daily Summaries Table - one row per (principal, local date), replaced on every upsert
daily_summaries_table = Table(
    'daily_summaries',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('date_iso', String(10), nullable=False),
    Column('sum_weighted', Float, nullable=False),
    Column('weight_seconds', Float, nullable=False),
    Column('count', Integer, nullable=False),
    Column('bad_seconds', Float, nullable=False, default=0.0),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('user_id', 'date_iso', name='uq_daily_summary_user_date')  # Upsert target
)


def _engine_for(database_url: str):
    # Convert postgresql:// to postgresql+psycopg:// for psycopg3
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+psycopg://", 1)
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, echo=False, pool_pre_ping=True)


engine = _engine_for(config.DATABASE_URL)


def configure(database_url: str):
    """Point the module at another database (tests, CLI --database-url)"""
    global engine
    engine.dispose()
    engine = _engine_for(database_url)
    return engine


# Database Initialization Functions

def init_database() -> bool:
    """Create all tables if they don't exist"""
    try:
        metadata.create_all(engine)
        logger.log_db("Tables Ready", {"dialect": engine.dialect.name})
        return True
    except SQLAlchemyError as e:
        logger.log_error("Database Initialization Failed", e)
        return False


def test_connection() -> bool:
    """Test database connectivity"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.log_error("Database Connection Failed", e)
        return False


def _row_to_dict(row) -> Dict:
    r = dict(row._mapping)
    weight = r['weight_seconds']
    updated_at = r['updated_at']
    return {
        "date_iso": r['date_iso'],
        "sum_weighted": r['sum_weighted'],
        "weight_seconds": weight,
        "count": r['count'],
        "bad_seconds": r['bad_seconds'],
        "average_deviation": (r['sum_weighted'] / weight) if weight else None,
        "updated_at": updated_at.isoformat() if updated_at else None
    }


def _insert_for_dialect():
    if engine.dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


def upsert_summary(user_id: str, date_iso: str, sum_weighted: float, weight_seconds: float,
                   count: int, bad_seconds: float = 0.0) -> Dict:
    """
    Replace the stored summary for (user_id, date_iso)

    The client always sends the full cumulative aggregate, so a plain
    overwrite is idempotent: repeating the same request leaves the row unchanged.

    Returns:
        The stored summary
    """
    values = {
        'user_id': user_id,
        'date_iso': date_iso,
        'sum_weighted': sum_weighted,
        'weight_seconds': weight_seconds,
        'count': count,
        'bad_seconds': bad_seconds,
        'updated_at': datetime.now(timezone.utc),
    }
    stmt = _insert_for_dialect()(daily_summaries_table).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=['user_id', 'date_iso'],
        set_={k: v for k, v in values.items() if k not in ('user_id', 'date_iso')}
    )

    with engine.begin() as conn:
        conn.execute(stmt)

    logger.log_db("Summary Upserted", {
        "user_id": user_id,
        "date": date_iso,
        "count": count
    })
    return get_summary(user_id, date_iso)


def get_summary(user_id: str, date_iso: str) -> Optional[Dict]:
    query = select(daily_summaries_table).where(
        (daily_summaries_table.c.user_id == user_id) &
        (daily_summaries_table.c.date_iso == date_iso)
    )
    with engine.connect() as conn:
        row = conn.execute(query).first()
    return _row_to_dict(row) if row else None


def list_summaries(user_id: str, limit: int = 31) -> List[Dict]:
    """Most recent summaries first"""
    query = (
        select(daily_summaries_table)
        .where(daily_summaries_table.c.user_id == user_id)
        .order_by(daily_summaries_table.c.date_iso.desc())
        .limit(limit)
    )
    with engine.connect() as conn:
        rows = conn.execute(query).fetchall()
    return [_row_to_dict(row) for row in rows]

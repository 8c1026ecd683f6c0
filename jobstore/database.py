"""
Database schema and connection management.

Declares every persisted record type of the job store with SQLAlchemy.
The transaction engine writes Counter, Hash, ListItem, SetItem, State,
JobState, QueuedJob and Job expiry; Job creation, JobParameter, Server and
Lock rows belong to other collaborators and are only declared here.
"""

from datetime import datetime, timezone
from pathlib import Path
from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

Base = declarative_base()

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntId = BigInteger().with_variant(Integer, "sqlite")

KEY_LENGTH = 100


def utc_now() -> datetime:
    """Current time as a naive UTC datetime, the form stored in every table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Counter(Base):
    """Aggregated counter; one row per key holding the running sum."""

    __tablename__ = "counters"
    # UPDATEs add the staged value to the stored one instead of overwriting it
    __relative_columns__ = ("value",)

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    key = Column(String(KEY_LENGTH), nullable=False)
    value = Column(BigInteger, nullable=False, default=0)
    expire_at = Column(DateTime)

    __table_args__ = (
        Index("ux_counters_key", "key", unique=True),
        Index("ix_counters_key_value", "key", "value"),
        Index("ix_counters_expire_at", "expire_at"),
    )


class Hash(Base):
    __tablename__ = "hashes"

    key = Column(String(KEY_LENGTH), primary_key=True)
    field = Column(String(KEY_LENGTH), primary_key=True)
    value = Column(Text)
    expire_at = Column(DateTime)

    __table_args__ = (Index("ix_hashes_expire_at", "expire_at"),)


class ListItem(Base):
    """List element; positions per key are dense and start at zero."""

    __tablename__ = "lists"

    key = Column(String(KEY_LENGTH), primary_key=True)
    position = Column(Integer, primary_key=True, autoincrement=False)
    value = Column(Text)
    expire_at = Column(DateTime)

    __table_args__ = (Index("ix_lists_expire_at", "expire_at"),)


class SetItem(Base):
    __tablename__ = "sets"

    key = Column(String(KEY_LENGTH), primary_key=True)
    value = Column(String(256), primary_key=True)
    score = Column(Numeric(38, 10), nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    expire_at = Column(DateTime)

    __table_args__ = (
        Index("ix_sets_key_score", "key", "score"),
        Index("ix_sets_expire_at", "expire_at"),
    )


class Job(Base):
    __tablename__ = "jobs"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    invocation_data = Column(Text)
    state_name = Column(String(20))
    state_id = Column(
        BigIntId,
        ForeignKey("states.id", use_alter=True, name="fk_jobs_state_id"),
    )
    expire_at = Column(DateTime)

    state = relationship("State", foreign_keys=[state_id])

    __table_args__ = (
        Index("ix_jobs_state_name", "state_name"),
        Index("ix_jobs_expire_at", "expire_at"),
    )


class JobParameter(Base):
    __tablename__ = "job_parameters"

    job_id = Column(BigIntId, ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True)
    name = Column(String(40), primary_key=True)
    value = Column(Text)


class State(Base):
    """Append-only job state history row."""

    __tablename__ = "states"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    job_id = Column(BigIntId, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    name = Column(String(20), nullable=False)
    reason = Column(String(100))
    data = Column(Text)  # serialized by the caller

    __table_args__ = (Index("ix_states_job_id", "job_id"),)


class JobState(Base):
    """Pointer from a job to its current State row."""

    __tablename__ = "job_states"

    job_id = Column(
        BigIntId,
        ForeignKey("jobs.id", ondelete="CASCADE"),
        primary_key=True,
        autoincrement=False,
    )
    name = Column(String(20), nullable=False)
    state_id = Column(BigIntId, ForeignKey("states.id"), nullable=False)

    state = relationship("State", foreign_keys=[state_id])


class QueuedJob(Base):
    __tablename__ = "queued_jobs"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    job_id = Column(BigIntId, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    queue = Column(String(50), nullable=False)
    fetched_at = Column(DateTime)  # NULL until a worker claims the row

    __table_args__ = (Index("ix_queued_jobs_queue_fetched_at", "queue", "fetched_at"),)


class Server(Base):
    __tablename__ = "servers"

    id = Column(String(200), primary_key=True)
    heartbeat = Column(DateTime, nullable=False, default=utc_now)
    data = Column(Text)

    __table_args__ = (Index("ix_servers_heartbeat", "heartbeat"),)


class Lock(Base):
    """Named mutual-exclusion row acquired and released by external callers."""

    __tablename__ = "locks"

    id = Column(String(100), primary_key=True)
    acquired_at = Column(DateTime, nullable=False, default=utc_now)


def sqlite_url(db_path: Path) -> str:
    """
    Build a SQLite URL, creating the parent directory if missing.

    Args:
        db_path: Path to SQLite database file
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_path}"


def create_storage_engine(url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the given database URL.

    SQLite connections get foreign key enforcement switched on so the
    store rejects the same batches a server database would.
    """
    engine = create_engine(url, echo=echo, future=True)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_database(engine: Engine) -> None:
    """
    Create all tables and indexes that do not exist yet.

    Args:
        engine: Engine bound to the target database
    """
    Base.metadata.create_all(engine)


def get_session_factory(engine: Engine) -> sessionmaker:
    """
    Get a session factory bound to the engine.

    Sessions do not expire instances on commit so rows read in tests stay
    usable after the session's transaction ends.
    """
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)

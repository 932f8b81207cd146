"""SQLite checkpoint slot backed by SQLModel."""

from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path

from sqlalchemy import Column, DateTime, LargeBinary, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool
from sqlmodel import Field, Session, SQLModel, create_engine

from taskweave.orchestrator.checkpoint import CheckpointError
from taskweave.orchestrator.models import utc_now

DEFAULT_SLOT = "default"


class CheckpointSlot(SQLModel, table=True):
    __tablename__ = "checkpoint_slots"  # type: ignore[bad-override]

    slot: str = Field(primary_key=True)
    payload: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    saved_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Build SQLAlchemy engine with WAL journaling and a busy timeout."""

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    return engine


class SqliteCheckpointStore:
    """One named row of ``checkpoint_slots`` holds the latest snapshot."""

    def __init__(
        self,
        db_path: Path,
        *,
        slot: str = DEFAULT_SLOT,
        busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.slot = slot
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            SQLModel.metadata.create_all(self.engine, tables=[CheckpointSlot.__table__])
        except (OSError, SQLAlchemyError) as error:
            raise CheckpointError(f"Failed to initialize {self.db_path}: {error}") from error

    def close(self) -> None:
        self.engine.dispose()

    def write(self, payload: bytes) -> None:
        try:
            with Session(self.engine) as session:
                row = session.get(CheckpointSlot, self.slot)
                if row is None:
                    row = CheckpointSlot(slot=self.slot, payload=payload, saved_at=utc_now())
                else:
                    row.payload = payload
                    row.saved_at = utc_now()
                session.add(row)
                session.commit()
        except SQLAlchemyError as error:
            raise CheckpointError(f"Failed to save slot {self.slot!r}: {error}") from error

    def read(self) -> bytes | None:
        try:
            with Session(self.engine) as session:
                row = session.get(CheckpointSlot, self.slot)
                return bytes(row.payload) if row is not None else None
        except SQLAlchemyError as error:
            raise CheckpointError(f"Failed to load slot {self.slot!r}: {error}") from error


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.close()

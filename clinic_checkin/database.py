from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import DateTime, Index, Integer, LargeBinary, String, Text, create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .config import DATABASE_URL
from .types import QueueStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class Patient(Base):
    __tablename__ = "patients"

    identity_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(120))
    short_code: Mapped[str] = mapped_column(String(16), unique=True, index=True)
    face_embedding: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    embedding_dim: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class QueueRow(Base):
    __tablename__ = "clinic_queue"
    __table_args__ = (
        Index("ix_clinic_queue_clinic_status", "clinic_id", "status"),
        # At most one waiting/in-progress row per patient per clinic.
        Index(
            "uq_clinic_queue_active_patient",
            "clinic_id",
            "identity_id",
            unique=True,
            sqlite_where=text("status IN ('waiting', 'in-progress')"),
            postgresql_where=text("status IN ('waiting', 'in-progress')"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    clinic_id: Mapped[str] = mapped_column(String(64))
    identity_id: Mapped[str] = mapped_column(String(64), index=True)
    display_name: Mapped[str] = mapped_column(String(120))
    short_code: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(16), default=QueueStatus.WAITING.value)
    check_in_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


def _normalize_database_url(database_url: str) -> str:
    if database_url.startswith("postgresql://"):
        return f"postgresql+psycopg://{database_url[len('postgresql://'):]}"
    if database_url.startswith("postgres://"):
        return f"postgresql+psycopg://{database_url[len('postgres://'):]}"
    return database_url


def create_database_engine(database_url: str = DATABASE_URL) -> Engine:
    url = _normalize_database_url(database_url)
    if not url.startswith("sqlite"):
        return create_engine(url, future=True, pool_pre_ping=True)

    if url.startswith("sqlite:///") and url != "sqlite:///:memory:":
        Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, future=True, connect_args={"check_same_thread": False, "timeout": 30})

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()

    return engine


class Database:
    """Engine plus session factory shared by the registry and the queue store."""

    def __init__(self, database_url: str = DATABASE_URL, create_tables: bool = True):
        self.engine = create_database_engine(database_url)
        self.session_factory = sessionmaker(bind=self.engine, autocommit=False, autoflush=False, class_=Session)
        if create_tables:
            Base.metadata.create_all(bind=self.engine)

    def session(self) -> Session:
        return self.session_factory()

    def dispose(self) -> None:
        self.engine.dispose()

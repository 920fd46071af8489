from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    relationship,
    sessionmaker,
)

from .ids import new_uuid
from .settings import Settings

_logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


class Base(DeclarativeBase):
    pass


card_labels = Table(
    "card_labels",
    Base.metadata,
    Column("card_id", String(36), ForeignKey("cards.id", ondelete="CASCADE"), primary_key=True),
    Column("label_id", String(36), ForeignKey("labels.id", ondelete="CASCADE"), primary_key=True),
)

card_assignees = Table(
    "card_assignees",
    Base.metadata,
    Column("card_id", String(36), ForeignKey("cards.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", String(128), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True, unique=True)


class Board(Base):
    __tablename__ = "boards"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    title: Mapped[str] = mapped_column(String(140))
    theme: Mapped[str] = mapped_column(String(8), default="light")  # light|dark
    owner_id: Mapped[str] = mapped_column(String(128))
    is_public: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, onupdate=now_utc)

    columns: Mapped[list[ColumnModel]] = relationship(
        back_populates="board",
        cascade="all, delete-orphan",
        order_by="[ColumnModel.order, ColumnModel.id]",
    )
    memberships: Mapped[list[BoardMembership]] = relationship(
        back_populates="board", cascade="all, delete-orphan"
    )
    labels: Mapped[list[Label]] = relationship(
        back_populates="board", cascade="all, delete-orphan"
    )


class BoardMembership(Base):
    __tablename__ = "board_memberships"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    board_id: Mapped[str] = mapped_column(String(36), ForeignKey("boards.id", ondelete="CASCADE"))
    user_id: Mapped[str] = mapped_column(String(128))
    role: Mapped[str] = mapped_column(String(16))  # admin|writer|reader
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)

    board: Mapped[Board] = relationship(back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("board_id", "user_id", name="uq_member"),
    )


class ColumnModel(Base):
    __tablename__ = "columns"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    board_id: Mapped[str] = mapped_column(String(36), ForeignKey("boards.id", ondelete="CASCADE"))
    title: Mapped[str] = mapped_column(String(80))
    width: Mapped[int] = mapped_column(Integer, default=300)
    order: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, onupdate=now_utc)

    board: Mapped[Board] = relationship(back_populates="columns")
    cards: Mapped[list[Card]] = relationship(
        back_populates="column",
        cascade="all, delete-orphan",
        order_by="[Card.order, Card.id]",
    )

    # not unique: a renumber rewrites siblings one row at a time
    __table_args__ = (Index("ix_columns_board_order", "board_id", "order"),)


class Label(Base):
    __tablename__ = "labels"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    board_id: Mapped[str] = mapped_column(String(36), ForeignKey("boards.id", ondelete="CASCADE"))
    name: Mapped[str] = mapped_column(String(60))
    color: Mapped[str] = mapped_column(String(32))

    board: Mapped[Board] = relationship(back_populates="labels")

    __table_args__ = (
        UniqueConstraint("board_id", "name", name="uq_label_name"),
    )


class Card(Base):
    __tablename__ = "cards"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    board_id: Mapped[str] = mapped_column(String(36), ForeignKey("boards.id", ondelete="CASCADE"))
    column_id: Mapped[str] = mapped_column(String(36), ForeignKey("columns.id", ondelete="CASCADE"))
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[str] = mapped_column(String(8), default="medium")  # low|medium|high
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    weight: Mapped[float | None] = mapped_column(Float, nullable=True)
    order: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, onupdate=now_utc)

    column: Mapped[ColumnModel] = relationship(back_populates="cards")
    labels: Mapped[list[Label]] = relationship(secondary=card_labels)
    assignees: Mapped[list[User]] = relationship(secondary=card_assignees)
    comments: Mapped[list[Comment]] = relationship(
        back_populates="card", cascade="all, delete-orphan", order_by="Comment.created_at"
    )
    attachments: Mapped[list[Attachment]] = relationship(
        back_populates="card", cascade="all, delete-orphan"
    )
    activity: Mapped[list[ActivityLog]] = relationship(
        back_populates="card", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_cards_column_order", "column_id", "order"),)


class Comment(Base):
    __tablename__ = "comments"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    card_id: Mapped[str] = mapped_column(String(36), ForeignKey("cards.id", ondelete="CASCADE"))
    user_id: Mapped[str] = mapped_column(String(128))
    content: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, onupdate=now_utc)

    card: Mapped[Card] = relationship(back_populates="comments")


class Attachment(Base):
    __tablename__ = "attachments"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    card_id: Mapped[str] = mapped_column(String(36), ForeignKey("cards.id", ondelete="CASCADE"))
    name: Mapped[str] = mapped_column(String(255))
    url: Mapped[str] = mapped_column(Text)
    type: Mapped[str] = mapped_column(String(128))
    size: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)

    card: Mapped[Card] = relationship(back_populates="attachments")


class ActivityLog(Base):
    __tablename__ = "activity_logs"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    action_type: Mapped[str] = mapped_column(String(40))
    details: Mapped[Any] = mapped_column(JSON, nullable=True)
    card_id: Mapped[str] = mapped_column(String(36), ForeignKey("cards.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)

    card: Mapped[Card] = relationship(back_populates="activity")


# SQLSTATE serialization_failure and deadlock_detected
_TRANSIENT_SQLSTATES = frozenset({"40001", "40P01"})
_TRANSIENT_MESSAGES = ("database is locked", "could not serialize access", "deadlock detected")

# execution option marking write transactions, see Database.connect
WRITE_LOCK_OPTION = "tackboard_write_lock"


class Database:
    """Persistence handle, created and disposed by the process entry point."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._engine: Engine | None = None
        self._sessionmaker: sessionmaker[Session] | None = None

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database is not connected")
        return self._engine

    def connect(self) -> None:
        url = self.settings.DATABASE_URL
        is_sqlite = url.startswith("sqlite")
        if is_sqlite:
            # SQLite transactions are always serializable; locking is set up below
            engine = create_engine(url, connect_args={"check_same_thread": False})

            @event.listens_for(engine, "connect")
            def _on_connect(dbapi_connection, _connection_record):
                # pysqlite must not emit its own (late) BEGIN
                dbapi_connection.isolation_level = None
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys = ON")
                cursor.close()

            @event.listens_for(engine, "begin")
            def _on_begin(connection):
                # writers take the write lock before reading what they will compute from
                if connection.get_execution_options().get(WRITE_LOCK_OPTION):
                    connection.exec_driver_sql("BEGIN IMMEDIATE")
                else:
                    connection.exec_driver_sql("BEGIN")

        else:
            engine = create_engine(url, isolation_level=self.settings.ISOLATION_LEVEL)

        Base.metadata.create_all(bind=engine)
        self._engine = engine
        self._sessionmaker = sessionmaker(
            bind=engine, autoflush=False, expire_on_commit=False
        )
        _logger.info("Connected to %s", engine.url.render_as_string(hide_password=True))

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            _logger.info("Disposed database engine")
        self._engine = None
        self._sessionmaker = None

    def _new_session(self) -> Session:
        if self._sessionmaker is None:
            raise RuntimeError("Database is not connected")
        return self._sessionmaker()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """For READ operations: no commit on exit."""
        with self._new_session() as session:
            yield session

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """For WRITE operations: commits on exit, rolls back on error."""
        with self._new_session() as session, session.begin():
            session.connection(execution_options={WRITE_LOCK_OPTION: True})
            yield session

    @staticmethod
    def is_transient_conflict(exc: BaseException) -> bool:
        """True when the engine aborted the transaction because of a concurrent writer."""
        if not isinstance(exc, DBAPIError):
            return False
        orig = exc.orig
        sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        if sqlstate in _TRANSIENT_SQLSTATES:
            return True
        message = str(orig).lower()
        return any(fragment in message for fragment in _TRANSIENT_MESSAGES)

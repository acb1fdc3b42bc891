"""SQLAlchemy-backed capture store."""

from __future__ import annotations

import threading
import weakref
from contextlib import AbstractContextManager, nullcontext
from datetime import datetime, timezone
from typing import Collection, Iterable, Iterator, Mapping, Sequence

from sqlalchemy import (
    Column,
    DateTime,
    Engine,
    ForeignKey,
    String,
    Table,
    Text,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, selectinload, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import JSON

from sentinelkb.errors import CaptureNotFoundError, CaptureStateError
from sentinelkb.models import (
    CaptureStatus,
    ContentType,
    ProcessedInsight,
    RawCapture,
    Tag,
    new_id,
    utcnow,
)
from sentinelkb.processing.tags import normalize_tags
from sentinelkb.storage.base import check_embedding_dim


_UPSERT_DIALECTS = {"postgresql": postgresql_insert, "sqlite": sqlite_insert}
_ENGINE_LOCKS: "weakref.WeakKeyDictionary[Engine, threading.RLock]" = weakref.WeakKeyDictionary()
_ENGINE_LOCKS_GUARD = threading.Lock()


def create_engine_from_url(url: str) -> Engine:
    if url.startswith("sqlite"):
        # In-memory SQLite needs a single connection shared across threads.
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, pool_pre_ping=True)


def engine_lock(engine: Engine) -> AbstractContextManager:
    """Lock shared by every component using ``engine``.

    A shared SQLite connection cannot interleave transactions from several
    threads, so SQLite engines get one re-entrant lock; other dialects need none.
    """

    if engine.dialect.name != "sqlite":
        return nullcontext()
    with _ENGINE_LOCKS_GUARD:
        lock = _ENGINE_LOCKS.get(engine)
        if lock is None:
            lock = _ENGINE_LOCKS[engine] = threading.RLock()
        return lock


class Base(DeclarativeBase):
    pass


capture_tags = Table(
    "capture_tags",
    Base.metadata,
    Column("raw_capture_id", String(32), ForeignKey("raw_captures.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", String(32), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)

insight_tags = Table(
    "insight_tags",
    Base.metadata,
    Column("processed_insight_id", String(32), ForeignKey("processed_insights.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", String(32), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class TagRow(Base):
    __tablename__ = "tags"
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)


class CaptureRow(Base):
    __tablename__ = "raw_captures"
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    source_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    content_type: Mapped[str] = mapped_column(String(20), nullable=False)
    raw_content: Mapped[str] = mapped_column(Text, nullable=False)
    meta: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    requested_tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    tags: Mapped[list[TagRow]] = relationship(secondary=capture_tags)
    insight: Mapped["InsightRow | None"] = relationship(
        back_populates="capture", uselist=False, cascade="all, delete-orphan"
    )


class InsightRow(Base):
    __tablename__ = "processed_insights"
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    raw_capture_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("raw_captures.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    key_points: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    action_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    source_title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    author: Mapped[str | None] = mapped_column(String(200), nullable=True)
    embedding: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # Ordered names as extracted; insight_tags links are for lookups
    tag_names: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    capture: Mapped[CaptureRow] = relationship(back_populates="insight")
    tags: Mapped[list[TagRow]] = relationship(secondary=insight_tags)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlCaptureStore:
    """Capture store over any SQLAlchemy database.

    Insight, tag links and the completed status are written in one
    transaction; status transitions are conditional updates.
    """

    def __init__(self, engine: Engine, *, embedding_dim: int | None = None, create_schema: bool = True) -> None:
        self._engine = engine
        self._embedding_dim = embedding_dim
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        self._lock = engine_lock(engine)
        if create_schema:
            Base.metadata.create_all(bind=engine)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "SqlCaptureStore":
        return cls(create_engine_from_url(url), **kwargs)

    @property
    def engine(self) -> Engine:
        return self._engine

    def save(self, capture: RawCapture) -> RawCapture:
        with self._lock, self._sessions.begin() as session:
            if session.get(CaptureRow, capture.capture_id) is not None:
                raise CaptureStateError(f"Capture {capture.capture_id} already exists")
            row = CaptureRow(
                id=capture.capture_id,
                source_url=capture.source_url,
                content_type=capture.content_type.value,
                raw_content=capture.raw_content,
                meta=dict(capture.metadata),
                requested_tags=list(capture.tags),
                status=capture.status.value,
                error_message=capture.error_message,
                created_at=capture.created_at,
                processed_at=capture.processed_at,
            )
            row.tags = self._tag_rows(session, capture.tags)
            session.add(row)
            session.flush()
            return self._to_capture(row)

    def get(self, capture_id: str) -> RawCapture | None:
        with self._lock, self._sessions() as session:
            row = session.get(CaptureRow, capture_id)
            return self._to_capture(row) if row is not None else None

    def transition(
        self, capture_id: str, from_statuses: Collection[CaptureStatus], to_status: CaptureStatus
    ) -> RawCapture | None:
        with self._lock, self._sessions.begin() as session:
            result = session.execute(
                update(CaptureRow)
                .where(
                    CaptureRow.id == capture_id,
                    CaptureRow.status.in_([status.value for status in from_statuses]),
                )
                .values(status=to_status.value)
            )
            if result.rowcount == 0:
                return None
            row = session.get(CaptureRow, capture_id, populate_existing=True)
            return self._to_capture(row)

    def complete(self, capture_id: str, insight: ProcessedInsight) -> RawCapture:
        check_embedding_dim(insight, self._embedding_dim)
        with self._lock, self._sessions.begin() as session:
            row = session.get(CaptureRow, capture_id, with_for_update=True)
            if row is None:
                raise CaptureNotFoundError(f"Capture {capture_id} not found")
            if row.status != CaptureStatus.PROCESSING.value:
                raise CaptureStateError(f"Capture {capture_id} is {row.status}, not processing")
            if row.insight is not None:
                row.insight = None
                session.flush()
            row.insight = InsightRow(
                id=insight.insight_id,
                title=insight.title,
                summary=insight.summary,
                key_points=list(insight.key_points),
                action_items=list(insight.action_items),
                source_title=insight.source_title,
                author=insight.author,
                embedding=list(insight.embedding),
                processed_at=insight.processed_at,
                tag_names=list(insight.tags),
                tags=self._tag_rows(session, insight.tags),
            )
            row.status = CaptureStatus.COMPLETED.value
            row.processed_at = insight.processed_at
            row.error_message = None
            session.flush()
            return self._to_capture(row)

    def fail(self, capture_id: str, message: str) -> RawCapture | None:
        with self._lock, self._sessions.begin() as session:
            row = session.get(CaptureRow, capture_id)
            if row is None:
                return None
            row.insight = None
            row.status = CaptureStatus.FAILED.value
            row.processed_at = utcnow()
            row.error_message = message
            session.flush()
            return self._to_capture(row)

    def reset(self, capture_id: str) -> RawCapture:
        with self._lock, self._sessions.begin() as session:
            row = session.get(CaptureRow, capture_id)
            if row is None:
                raise CaptureNotFoundError(f"Capture {capture_id} not found")
            if not CaptureStatus(row.status).is_terminal:
                raise CaptureStateError(f"Capture {capture_id} is still {row.status}")
            row.insight = None
            row.status = CaptureStatus.PENDING.value
            row.processed_at = None
            row.error_message = None
            session.flush()
            return self._to_capture(row)

    def delete(self, capture_id: str) -> bool:
        with self._lock, self._sessions.begin() as session:
            row = session.get(CaptureRow, capture_id)
            if row is None:
                return False
            session.delete(row)
            return True

    def list_captures(self, *, offset: int = 0, limit: int = 20) -> tuple[Sequence[RawCapture], int]:
        with self._lock, self._sessions() as session:
            total = session.scalar(select(func.count()).select_from(CaptureRow)) or 0
            rows = session.scalars(
                select(CaptureRow)
                .options(selectinload(CaptureRow.insight))
                .order_by(CaptureRow.created_at.desc(), CaptureRow.id)
                .offset(offset)
                .limit(limit)
            ).all()
            return [self._to_capture(row) for row in rows], int(total)

    def scan_insights_with_embedding(self) -> Iterator[ProcessedInsight]:
        stmt = self._insight_query()
        with self._lock, self._sessions() as session:
            insights = [self._to_insight(row) for row in session.scalars(stmt).all() if row.embedding]
        yield from insights

    def scan_insights_by_tags(self, names: Iterable[str]) -> Iterator[ProcessedInsight]:
        wanted = normalize_tags(names)
        if not wanted:
            return
        stmt = self._insight_query().where(InsightRow.tags.any(TagRow.name.in_(wanted)))
        with self._lock, self._sessions() as session:
            insights = [self._to_insight(row) for row in session.scalars(stmt).all()]
        yield from insights

    def get_or_create_tags(self, names: Iterable[str]) -> list[Tag]:
        with self._lock, self._sessions.begin() as session:
            return [Tag(tag_id=row.id, name=row.name) for row in self._tag_rows(session, names)]

    def count_by_status(self) -> Mapping[CaptureStatus, int]:
        counts = {status: 0 for status in CaptureStatus}
        with self._lock, self._sessions() as session:
            for status, count in session.execute(
                select(CaptureRow.status, func.count()).group_by(CaptureRow.status)
            ):
                counts[CaptureStatus(status)] = int(count)
        return counts

    @staticmethod
    def _insight_query():
        return (
            select(InsightRow)
            .join(InsightRow.capture)
            .where(CaptureRow.status == CaptureStatus.COMPLETED.value)
            .options(selectinload(InsightRow.capture))
            .order_by(InsightRow.processed_at, InsightRow.id)
        )

    @staticmethod
    def _tag_rows(session: Session, names: Iterable[str]) -> list[TagRow]:
        wanted = normalize_tags(names)
        if not wanted:
            return []
        existing = {row.name: row for row in session.scalars(select(TagRow).where(TagRow.name.in_(wanted)))}
        missing = [{"id": new_id(), "name": name} for name in wanted if name not in existing]
        if missing:
            dialect = session.get_bind().dialect.name
            if dialect in _UPSERT_DIALECTS:
                # Tag names are unique; a concurrent writer may create the same tag first.
                session.execute(_UPSERT_DIALECTS[dialect](TagRow).values(missing).on_conflict_do_nothing())
            else:
                session.add_all(TagRow(**values) for values in missing)
                session.flush()
            existing = {
                row.name: row for row in session.scalars(select(TagRow).where(TagRow.name.in_(wanted)))
            }
        return [existing[name] for name in wanted]

    @staticmethod
    def _to_insight(row: InsightRow) -> ProcessedInsight:
        return ProcessedInsight(
            insight_id=row.id,
            capture_id=row.raw_capture_id,
            title=row.title,
            summary=row.summary,
            key_points=tuple(row.key_points or ()),
            action_items=tuple(row.action_items or ()),
            tags=tuple(row.tag_names or ()),
            embedding=tuple(float(value) for value in row.embedding or ()),
            processed_at=_aware(row.processed_at),
            source_title=row.source_title,
            author=row.author,
            source_url=row.capture.source_url if row.capture is not None else "",
        )

    def _to_capture(self, row: CaptureRow) -> RawCapture:
        status = CaptureStatus(row.status)
        insight = None
        if status is CaptureStatus.COMPLETED and row.insight is not None:
            insight = self._to_insight(row.insight)
        return RawCapture(
            capture_id=row.id,
            source_url=row.source_url,
            content_type=ContentType(row.content_type),
            raw_content=row.raw_content,
            tags=tuple(row.requested_tags or ()),
            metadata=dict(row.meta or {}),
            created_at=_aware(row.created_at),
            status=status,
            processed_at=_aware(row.processed_at),
            error_message=row.error_message,
            insight=insight,
        )

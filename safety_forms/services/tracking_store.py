# =============================================================================
# Tracking Store — Pluggable Persistence Protocol
# =============================================================================
#
# The processing lifecycle (sessions, form records, hazards, audit events)
# is persisted through this protocol. TrackingService owns the rules
# (status transitions, audit events, severity mapping); a store only
# reads and writes rows.
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# Same pattern as LLMProvider and OCRService: any class with the right
# async methods works.
#
# DESIGN DECISION: Two implementations sharing the ORM classes.
# - SqlAlchemyTrackingStore: PostgreSQL via async SQLAlchemy + asyncpg.
#   Analytics run as SQL aggregates.
# - InMemoryTrackingStore: plain dicts of the same ORM objects, never
#   attached to a session. Used for local development and tests, where
#   analytics are computed in Python.
#
# Every store failure surfaces as PersistenceFailure.
#
# ARCHITECTURE:
#   TrackingStore (Protocol)
#   ├── SqlAlchemyTrackingStore — async_session_factory() per operation
#   ├── InMemoryTrackingStore   — dicts keyed by id
#   └── get_tracking_store()    — factory, reads tracking_backend
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from itertools import count
from typing import Any, Protocol

from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from safety_forms.config import Settings, settings as default_settings
from safety_forms.db.engine import async_session_factory
from safety_forms.db.models import (
    AuditEvent,
    FormHazard,
    FormRecord,
    FormStatus,
    ProcessingSession,
    utcnow,
)
from safety_forms.exceptions import PersistenceFailure

logger = logging.getLogger(__name__)

HIGH_RISK_LEVELS = ("HIGH", "CRITICAL")
IN_PROGRESS_STATUSES = (FormStatus.PROCESSING, FormStatus.OCR_RECORDED)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ProcessingSummary:
    """Aggregate counts over a time window."""

    total_forms: int = 0
    completed_forms: int = 0
    failed_forms: int = 0
    processing_forms: int = 0
    high_risk_forms: int = 0
    supervisor_reviews: int = 0
    average_risk_score: float | None = None
    average_processing_time_ms: float | None = None
    unique_sessions: int = 0


@dataclass
class HazardTrend:
    hazard_type: str
    hazard_category: str | None
    count: int
    average_severity: float


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class TrackingStore(Protocol):
    """
    Protocol defining the tracking persistence interface.

    Reads return None (or an empty list) for missing rows; only genuine
    storage failures raise PersistenceFailure.
    """

    async def create_session(self, session: ProcessingSession) -> ProcessingSession: ...

    async def get_session(self, session_id: int) -> ProcessingSession | None: ...

    async def get_session_by_token(self, token: str) -> ProcessingSession | None: ...

    async def update_session(
        self, session_id: int, forms_processed: int = 0, processing_time_ms: int = 0,
    ) -> ProcessingSession | None:
        """Increment the session counters and stamp end_time."""
        ...

    async def create_form(self, record: FormRecord) -> FormRecord: ...

    async def get_form(self, form_id: int) -> FormRecord | None: ...

    async def update_form(self, form_id: int, **fields: Any) -> FormRecord | None: ...

    async def add_hazards(self, form_id: int, hazards: list[FormHazard]) -> None: ...

    async def add_audit_event(self, event: AuditEvent) -> AuditEvent: ...

    async def list_audit_events(self, form_id: int) -> list[AuditEvent]: ...

    async def list_session_forms(self, token: str) -> list[FormRecord]: ...

    async def list_recent_forms(self, limit: int = 10) -> list[FormRecord]: ...

    async def processing_summary(self, since: datetime) -> ProcessingSummary: ...

    async def hazard_trends(self, since: datetime, limit: int = 20) -> list[HazardTrend]: ...

    async def ping(self) -> bool: ...


# ---------------------------------------------------------------------------
# Implementation 1: PostgreSQL (async SQLAlchemy)
# ---------------------------------------------------------------------------


class SqlAlchemyTrackingStore:
    """
    PostgreSQL-backed store. One short-lived AsyncSession per operation.

    Objects are returned detached (expire_on_commit=False), with the
    hazards collection already loaded for form records.
    """

    def __init__(self, session_factory=async_session_factory) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            logger.error("Tracking store operation failed: %s", e)
            raise PersistenceFailure(f"Database error: {e}") from e

    async def create_session(self, session: ProcessingSession) -> ProcessingSession:
        async with self._session() as db:
            db.add(session)
            await db.commit()
            return session

    async def get_session(self, session_id: int) -> ProcessingSession | None:
        async with self._session() as db:
            return await db.get(ProcessingSession, session_id)

    async def get_session_by_token(self, token: str) -> ProcessingSession | None:
        async with self._session() as db:
            result = await db.execute(
                select(ProcessingSession).where(ProcessingSession.session_token == token)
            )
            return result.scalar_one_or_none()

    async def update_session(
        self, session_id: int, forms_processed: int = 0, processing_time_ms: int = 0,
    ) -> ProcessingSession | None:
        async with self._session() as db:
            session = await db.get(ProcessingSession, session_id, with_for_update=True)
            if session is None:
                return None
            now = utcnow()
            session.total_forms_processed += forms_processed
            session.total_processing_time_ms += processing_time_ms
            session.end_time = now
            session.updated_at = now
            await db.commit()
            return session

    async def create_form(self, record: FormRecord) -> FormRecord:
        async with self._session() as db:
            db.add(record)
            await db.commit()
            return record

    async def get_form(self, form_id: int) -> FormRecord | None:
        async with self._session() as db:
            return await db.get(FormRecord, form_id)

    async def update_form(self, form_id: int, **fields: Any) -> FormRecord | None:
        async with self._session() as db:
            record = await db.get(FormRecord, form_id, with_for_update=True)
            if record is None:
                return None
            for name, value in fields.items():
                setattr(record, name, value)
            await db.commit()
            return record

    async def add_hazards(self, form_id: int, hazards: list[FormHazard]) -> None:
        if not hazards:
            return
        async with self._session() as db:
            for hazard in hazards:
                hazard.form_id = form_id
            db.add_all(hazards)
            await db.commit()

    async def add_audit_event(self, event: AuditEvent) -> AuditEvent:
        async with self._session() as db:
            db.add(event)
            await db.commit()
            return event

    async def list_audit_events(self, form_id: int) -> list[AuditEvent]:
        async with self._session() as db:
            result = await db.execute(
                select(AuditEvent)
                .where(AuditEvent.form_id == form_id)
                .order_by(AuditEvent.event_timestamp, AuditEvent.id)
            )
            return list(result.scalars().all())

    async def list_session_forms(self, token: str) -> list[FormRecord]:
        async with self._session() as db:
            result = await db.execute(
                select(FormRecord)
                .join(ProcessingSession, FormRecord.session_id == ProcessingSession.id)
                .where(ProcessingSession.session_token == token)
                .order_by(FormRecord.created_at.desc(), FormRecord.id.desc())
            )
            return list(result.scalars().all())

    async def list_recent_forms(self, limit: int = 10) -> list[FormRecord]:
        async with self._session() as db:
            result = await db.execute(
                select(FormRecord)
                .order_by(FormRecord.created_at.desc(), FormRecord.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def processing_summary(self, since: datetime) -> ProcessingSummary:
        stmt = select(
            func.count(FormRecord.id),
            func.count(FormRecord.id).filter(FormRecord.status == FormStatus.COMPLETED),
            func.count(FormRecord.id).filter(FormRecord.status == FormStatus.FAILED),
            func.count(FormRecord.id).filter(FormRecord.status.in_(IN_PROGRESS_STATUSES)),
            func.count(FormRecord.id).filter(FormRecord.risk_level.in_(HIGH_RISK_LEVELS)),
            func.count(FormRecord.id).filter(FormRecord.requires_supervisor_review.is_(True)),
            func.avg(FormRecord.risk_score),
            func.avg(FormRecord.total_processing_time_ms),
            func.count(func.distinct(FormRecord.session_id)),
        ).where(FormRecord.created_at >= since)

        async with self._session() as db:
            row = (await db.execute(stmt)).one()

        return ProcessingSummary(
            total_forms=row[0],
            completed_forms=row[1],
            failed_forms=row[2],
            processing_forms=row[3],
            high_risk_forms=row[4],
            supervisor_reviews=row[5],
            average_risk_score=_rounded(row[6]),
            average_processing_time_ms=_rounded(row[7]),
            unique_sessions=row[8],
        )

    async def hazard_trends(self, since: datetime, limit: int = 20) -> list[HazardTrend]:
        occurrences = func.count(FormHazard.id).label("occurrences")
        stmt = (
            select(
                FormHazard.hazard_type,
                FormHazard.hazard_category,
                occurrences,
                func.avg(FormHazard.severity),
            )
            .where(FormHazard.created_at >= since)
            .group_by(FormHazard.hazard_type, FormHazard.hazard_category)
            .order_by(occurrences.desc(), FormHazard.hazard_type)
            .limit(limit)
        )
        async with self._session() as db:
            rows = (await db.execute(stmt)).all()

        return [
            HazardTrend(
                hazard_type=row[0],
                hazard_category=row[1],
                count=row[2],
                average_severity=_rounded(row[3]) or 0.0,
            )
            for row in rows
        ]

    async def ping(self) -> bool:
        async with self._session() as db:
            await db.execute(text("SELECT 1"))
            return True


# ---------------------------------------------------------------------------
# Implementation 2: In-Memory
# ---------------------------------------------------------------------------


class InMemoryTrackingStore:
    """
    Process-local store holding transient ORM objects in dicts.

    Python-side column defaults only apply on a database flush, so ids and
    timestamps are assigned here explicitly.
    """

    def __init__(self) -> None:
        self.sessions: dict[int, ProcessingSession] = {}
        self.forms: dict[int, FormRecord] = {}
        self.hazards: dict[int, FormHazard] = {}
        self.audit_events: dict[int, AuditEvent] = {}
        self._ids = {
            "session": count(1),
            "form": count(1),
            "hazard": count(1),
            "audit": count(1),
        }

    async def create_session(self, session: ProcessingSession) -> ProcessingSession:
        if any(s.session_token == session.session_token for s in self.sessions.values()):
            raise PersistenceFailure(
                f"Session token '{session.session_token}' already exists"
            )
        now = utcnow()
        session.id = next(self._ids["session"])
        session.start_time = session.start_time or now
        session.created_at = session.created_at or now
        session.updated_at = session.updated_at or now
        self.sessions[session.id] = session
        return session

    async def get_session(self, session_id: int) -> ProcessingSession | None:
        return self.sessions.get(session_id)

    async def get_session_by_token(self, token: str) -> ProcessingSession | None:
        for session in self.sessions.values():
            if session.session_token == token:
                return session
        return None

    async def update_session(
        self, session_id: int, forms_processed: int = 0, processing_time_ms: int = 0,
    ) -> ProcessingSession | None:
        session = self.sessions.get(session_id)
        if session is None:
            return None
        now = utcnow()
        session.total_forms_processed = (session.total_forms_processed or 0) + forms_processed
        session.total_processing_time_ms = (
            (session.total_processing_time_ms or 0) + processing_time_ms
        )
        session.end_time = now
        session.updated_at = now
        return session

    async def create_form(self, record: FormRecord) -> FormRecord:
        now = utcnow()
        record.id = next(self._ids["form"])
        record.processing_start_time = record.processing_start_time or now
        record.created_at = record.created_at or now
        record.updated_at = record.updated_at or now
        self.forms[record.id] = record
        return record

    async def get_form(self, form_id: int) -> FormRecord | None:
        return self.forms.get(form_id)

    async def update_form(self, form_id: int, **fields: Any) -> FormRecord | None:
        record = self.forms.get(form_id)
        if record is None:
            return None
        for name, value in fields.items():
            setattr(record, name, value)
        return record

    async def add_hazards(self, form_id: int, hazards: list[FormHazard]) -> None:
        record = self.forms.get(form_id)
        if record is None:
            raise PersistenceFailure(f"Form record {form_id} does not exist")
        now = utcnow()
        for hazard in hazards:
            hazard.id = next(self._ids["hazard"])
            hazard.form_id = form_id
            hazard.created_at = hazard.created_at or now
            self.hazards[hazard.id] = hazard
            record.hazards.append(hazard)

    async def add_audit_event(self, event: AuditEvent) -> AuditEvent:
        event.id = next(self._ids["audit"])
        event.event_timestamp = event.event_timestamp or utcnow()
        self.audit_events[event.id] = event
        return event

    async def list_audit_events(self, form_id: int) -> list[AuditEvent]:
        return sorted(
            (e for e in self.audit_events.values() if e.form_id == form_id),
            key=lambda e: (e.event_timestamp, e.id),
        )

    async def list_session_forms(self, token: str) -> list[FormRecord]:
        session = await self.get_session_by_token(token)
        if session is None:
            return []
        return _newest_first(f for f in self.forms.values() if f.session_id == session.id)

    async def list_recent_forms(self, limit: int = 10) -> list[FormRecord]:
        return _newest_first(self.forms.values())[:limit]

    async def processing_summary(self, since: datetime) -> ProcessingSummary:
        forms = [f for f in self.forms.values() if f.created_at >= since]
        scores = [f.risk_score for f in forms if f.risk_score is not None]
        times = [
            f.total_processing_time_ms for f in forms
            if f.total_processing_time_ms is not None
        ]
        return ProcessingSummary(
            total_forms=len(forms),
            completed_forms=sum(1 for f in forms if f.status == FormStatus.COMPLETED),
            failed_forms=sum(1 for f in forms if f.status == FormStatus.FAILED),
            processing_forms=sum(1 for f in forms if f.status in IN_PROGRESS_STATUSES),
            high_risk_forms=sum(1 for f in forms if f.risk_level in HIGH_RISK_LEVELS),
            supervisor_reviews=sum(1 for f in forms if f.requires_supervisor_review),
            average_risk_score=_rounded(sum(scores) / len(scores)) if scores else None,
            average_processing_time_ms=_rounded(sum(times) / len(times)) if times else None,
            unique_sessions=len({f.session_id for f in forms if f.session_id is not None}),
        )

    async def hazard_trends(self, since: datetime, limit: int = 20) -> list[HazardTrend]:
        groups: dict[tuple[str, str | None], list[int]] = {}
        for hazard in self.hazards.values():
            if hazard.created_at >= since:
                key = (hazard.hazard_type, hazard.hazard_category)
                groups.setdefault(key, []).append(hazard.severity)

        trends = [
            HazardTrend(
                hazard_type=hazard_type,
                hazard_category=category,
                count=len(severities),
                average_severity=_rounded(sum(severities) / len(severities)) or 0.0,
            )
            for (hazard_type, category), severities in groups.items()
        ]
        trends.sort(key=lambda t: (-t.count, t.hazard_type))
        return trends[:limit]

    async def ping(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def get_tracking_store(
    settings: Settings | None = None,
) -> SqlAlchemyTrackingStore | InMemoryTrackingStore:
    """
    Factory that returns the configured tracking store.

    Reads `tracking_backend` from settings:
    - "postgres" → SqlAlchemyTrackingStore (default)
    - "memory"   → InMemoryTrackingStore (development, tests)
    """
    backend = (settings or default_settings).tracking_backend

    if backend == "memory":
        logger.info("Using in-memory tracking store")
        return InMemoryTrackingStore()

    logger.info("Using PostgreSQL tracking store")
    return SqlAlchemyTrackingStore()


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _rounded(value: Any) -> float | None:
    return None if value is None else round(float(value), 2)


def _newest_first(forms) -> list[FormRecord]:
    return sorted(forms, key=lambda f: (f.created_at, f.id), reverse=True)

# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────────────┐      ┌──────────────────────────┐      ┌──────────────────┐
# │ processing_sessions  │      │ forms_processing         │      │ form_hazards     │
# ├──────────────────────┤      ├──────────────────────────┤      ├──────────────────┤
# │ id (PK)              │─1:N─▶│ id (PK)                  │─1:N─▶│ id (PK)          │
# │ session_token (uniq) │      │ session_id (FK, null)    │      │ form_id (FK)     │
# │ user_identifier      │      │ file / OCR / AI fields   │      │ hazard_type      │
# │ device_info (jsonb)  │      │ risk_score (1–10, check) │      │ severity (1–4)   │
# │ location_data (jsonb)│      │ ai_analysis (jsonb)      │      │ action_priority  │
# │ counters             │      │ status                   │      │ ...              │
# └──────────────────────┘      └──────────────────────────┘      └──────────────────┘
#            │                               │
#            └───────────┬───────────────────┘
#                        ▼
#              ┌──────────────────┐
#              │ forms_audit_log  │   write-once, both FKs nullable
#              └──────────────────┘
#
# DESIGN DECISIONS:
#
# 1. `session_id` on forms is nullable. Session creation is best-effort,
#    and a form must still be trackable when it failed.
#
# 2. Full analysis, hazards and recommendations are stored as JSONB next
#    to the denormalized columns the analytics queries need (risk_score,
#    risk_level, requires_supervisor_review). The JSON keeps the complete
#    provider output; the columns keep aggregation cheap.
#
# 3. Hazards are also written to their own table so trends can be
#    aggregated per hazard type with plain GROUP BY.
#
# 4. Timestamps carry a Python-side default as well as a server default,
#    so rows built outside a database session (in-memory store, tests)
#    still have them.
# =============================================================================

import enum
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class. All ORM models inherit from this."""

    pass


class FormStatus(str, enum.Enum):
    """
    Processing lifecycle state of a form record.

    State machine:
        PROCESSING → OCR_RECORDED → COMPLETED
                   ─────────────→ COMPLETED
        (any non-terminal)      → FAILED

    COMPLETED and FAILED are terminal.
    """

    PROCESSING = "processing"      # Record created, pipeline running
    OCR_RECORDED = "ocr_recorded"  # Text extracted and stored
    COMPLETED = "completed"        # AI analysis stored, hazards written
    FAILED = "failed"              # See error_details for stage and message

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (FormStatus.COMPLETED, FormStatus.FAILED)


_STATUS_RANK = {
    FormStatus.PROCESSING: 0,
    FormStatus.OCR_RECORDED: 1,
    FormStatus.COMPLETED: 2,
    FormStatus.FAILED: 2,
}


class ProcessingSession(Base):
    """One user/device journey. Counters only ever grow."""

    __tablename__ = "processing_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Opaque token the client keeps between requests (uuid4 by default)
    session_token: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False,
    )
    user_identifier: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Free-form capture context from request headers
    device_info: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    location_data: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(),
    )
    end_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    total_forms_processed: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False,
    )
    total_processing_time_ms: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False,
    )

    forms: Mapped[list["FormRecord"]] = relationship(
        "FormRecord", back_populates="session", lazy="noload",
    )

    def __repr__(self) -> str:
        return (
            f"<ProcessingSession(id={self.id}, token='{self.session_token}', "
            f"forms={self.total_forms_processed})>"
        )


class FormRecord(Base):
    """
    One submitted form and everything learned about it.

    Invariants:
    - risk_score is within 1–10 (also a CHECK constraint)
    - risk_level is risk_level_for_score(risk_score)
    - status only moves forward (see FormStatus)
    """

    __tablename__ = "forms_processing"
    __table_args__ = (
        CheckConstraint(
            "risk_score IS NULL OR (risk_score >= 1 AND risk_score <= 10)",
            name="ck_forms_processing_risk_score_range",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    session_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("processing_sessions.id", ondelete="SET NULL"),
        nullable=True,
    )

    # --- Upload ---
    original_filename: Mapped[str | None] = mapped_column(String(500), nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_type: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # --- OCR stage ---
    ocr_provider: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ocr_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    ocr_processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    extracted_text_length: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ocr_fallback_used: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    extracted_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- AI stage ---
    ai_provider: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ai_processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    form_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    risk_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    risk_level: Mapped[str | None] = mapped_column(String(20), nullable=True)
    risk_escalated: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    requires_supervisor_review: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    standards_referenced: Mapped[list[str] | None] = mapped_column(JSONB, nullable=True)
    compliance_gaps_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ai_analysis: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    hazards_payload: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONB, nullable=True)
    recommendations_payload: Mapped[list[str] | None] = mapped_column(JSONB, nullable=True)

    # --- Lifecycle ---
    status: Mapped[FormStatus] = mapped_column(
        Enum(FormStatus, name="form_status"),
        nullable=False,
        default=FormStatus.PROCESSING,
    )
    error_details: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    processing_start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(),
    )
    processing_end_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    total_processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False,
    )

    session: Mapped[ProcessingSession | None] = relationship(
        "ProcessingSession", back_populates="forms", lazy="noload",
    )

    # lazy="selectin": hazards are always wanted with the form (GET /forms/{id})
    hazards: Mapped[list["FormHazard"]] = relationship(
        "FormHazard",
        back_populates="form",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="FormHazard.id",
    )

    def __repr__(self) -> str:
        return (
            f"<FormRecord(id={self.id}, status={self.status}, "
            f"risk_score={self.risk_score})>"
        )


class FormHazard(Base):
    """One detected hazard. Written once when the AI stage is recorded."""

    __tablename__ = "form_hazards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    form_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("forms_processing.id", ondelete="CASCADE"),
        nullable=False,
    )

    hazard_type: Mapped[str] = mapped_column(String(100), nullable=False)
    hazard_category: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # 1=LOW, 2=MEDIUM, 3=HIGH, 4=CRITICAL (unknown labels map to 2)
    severity: Mapped[int] = mapped_column(Integer, nullable=False, default=2)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    location_on_form: Mapped[str | None] = mapped_column(String(255), nullable=True)
    standard_violated: Mapped[str | None] = mapped_column(String(255), nullable=True)
    regulatory_requirement: Mapped[str | None] = mapped_column(Text, nullable=True)
    recommended_action: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Same 1–4 scale as severity
    action_priority: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    estimated_cost_impact: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False,
    )

    form: Mapped[FormRecord] = relationship("FormRecord", back_populates="hazards")


class AuditEvent(Base):
    """
    Append-only audit trail for the processing lifecycle.

    Both references are nullable: session-level events have no form, and
    events survive the deletion of what they describe.
    """

    __tablename__ = "forms_audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    form_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("forms_processing.id", ondelete="SET NULL"),
        nullable=True,
    )
    session_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("processing_sessions.id", ondelete="SET NULL"),
        nullable=True,
    )

    # e.g. form_processing_started, ocr_completed, ai_analysis_completed,
    # processing_failed, form_confirmed
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_details: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    event_timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False,
    )

    # Which process wrote the event, for multi-instance deployments
    server_instance: Mapped[str | None] = mapped_column(String(100), nullable=True)
    api_version: Mapped[str | None] = mapped_column(String(20), nullable=True)


# ---------------------------------------------------------------------------
# Indexes
# ---------------------------------------------------------------------------
# Analytics windows filter on created_at; session listings on session_id.
# ---------------------------------------------------------------------------

form_session_idx = Index(
    "idx_forms_processing_session_created",
    FormRecord.session_id,
    FormRecord.created_at,
)

form_created_idx = Index(
    "idx_forms_processing_created",
    FormRecord.created_at,
)

hazard_form_idx = Index(
    "idx_form_hazards_form",
    FormHazard.form_id,
)

audit_form_idx = Index(
    "idx_forms_audit_log_form_timestamp",
    AuditEvent.form_id,
    AuditEvent.event_timestamp,
)

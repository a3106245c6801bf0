# =============================================================================
# Database Package
# =============================================================================
# Provides the async SQLAlchemy engine, session management, and ORM models.
#
# Key exports:
#   - async_session_factory: self-managed AsyncSession (caller commits)
#   - Base: SQLAlchemy declarative base for ORM models
#   - ProcessingSession, FormRecord, FormHazard, AuditEvent: ORM models
# =============================================================================

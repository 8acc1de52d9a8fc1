"""
Base mixins for database models.

Provides common functionality:
- TimestampMixin: created_at, updated_at timestamps
- TenantScopedMixin: tenant_id for multi-tenant isolation
- generate_uuid: UUID generation for primary keys
- JSONType: JSONB on PostgreSQL, JSON elsewhere (testing)
"""

import uuid

from sqlalchemy import JSON, Column, String, DateTime, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declared_attr


# Use JSONB for PostgreSQL, JSON for other databases (testing)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def generate_uuid() -> str:
    """Generate a UUID4 string for use as a primary key default."""
    return str(uuid.uuid4())


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Timestamp when record was last updated"
    )


class TenantScopedMixin:
    """
    Mixin that adds tenant_id column for multi-tenant isolation.

    SECURITY: tenant_id is ONLY extracted from the verified session token.
    NEVER accept tenant_id from client input (body/query/path).
    """

    @declared_attr
    def tenant_id(cls):
        return Column(
            String(255),
            nullable=False,
            index=True,
            comment="Tenant identifier from session token. NEVER from client input."
        )


def assert_exhaustive(mapping: dict, enum_cls, name: str) -> None:
    """
    Fail at import time if a mapping keyed by an enum misses a member.

    Used for every table keyed by ApprovalActionType so a new action type
    cannot silently fall through a guardrail or execution site.
    """
    missing = set(enum_cls) - set(mapping)
    if missing:
        raise RuntimeError(
            f"{name} has no entry for {sorted(m.value for m in missing)}"
        )


def enum_values(enum_cls) -> list[str]:
    """Persist enum values (not member names) in SQLAlchemy Enum columns."""
    return [member.value for member in enum_cls]

"""
Declarative base shared by the governance tables.

Settings, approvals, audit entries and daily counters all register on
Base.metadata; Alembic and the test fixtures build the schema from it.
Nothing here may import autopilot.models.
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()

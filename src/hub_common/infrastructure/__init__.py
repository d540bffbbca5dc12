"""Persistence layer for the registry services.

Exposes the async database manager, the ORM models and the repositories that
express the reconciliation passes as set-based statements.
"""

from .database import DatabaseConfig, DatabaseManager
from .models import Base, CycleRunRecord, ManifestRecord, ParticipantRecord, ensure_utc
from .repositories import (
    AuthoritativeManifest,
    CycleRunRepository,
    ManifestRepository,
    ParticipantRepository,
)

__all__ = [
    "AuthoritativeManifest",
    "Base",
    "CycleRunRecord",
    "CycleRunRepository",
    "DatabaseConfig",
    "DatabaseManager",
    "ManifestRecord",
    "ManifestRepository",
    "ParticipantRecord",
    "ParticipantRepository",
    "ensure_utc",
]

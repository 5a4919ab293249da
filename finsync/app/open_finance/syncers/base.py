"""
Shared pieces of the entity syncers.

Every syncer folds its per-record outcomes into a SyncResult. Failures of a
single record or account are appended to ``errors`` and the loop continues;
only authentication failures escape.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from ..providers.base import BaseAggregationProvider

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    permission_denied: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def merge(self, other: "SyncResult") -> "SyncResult":
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped
        self.permission_denied += other.permission_denied
        self.errors.extend(other.errors)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "permission_denied": self.permission_denied,
            "errors": list(self.errors),
        }


class BaseSyncer:
    """Reconciles one entity type for one user against the local store."""

    entity = "record"

    def __init__(self, db: Session, provider: BaseAggregationProvider, user_id: int):
        self.db = db
        self.provider = provider
        self.user_id = user_id

    def _record_failure(self, result: SyncResult, record_id: str, error: Exception) -> None:
        self.db.rollback()
        message = f"{self.entity} {record_id}: {error}"
        logger.error(f"Failed to sync {message}")
        result.errors.append(message)

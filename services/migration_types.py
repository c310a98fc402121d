"""Report and result types produced by the migration engine."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Literal, Optional, Tuple

__all__ = [
    "APPLY_MODES",
    "ApplyRejectedError",
    "ApplyResult",
    "DryRunBundle",
    "DryRunReport",
    "ImportMode",
    "Issue",
    "MERGE_UPSERT",
    "MigrationError",
    "REPLACE_WORKSPACE",
    "ResolvedApplication",
    "SectionStats",
    "TARGET_VERSION",
]

TARGET_VERSION = "v2"
REPLACE_WORKSPACE = "replace_workspace"
MERGE_UPSERT = "merge_upsert"
ImportMode = Literal["replace_workspace", "merge_upsert"]
APPLY_MODES: Tuple[str, ...] = (REPLACE_WORKSPACE, MERGE_UPSERT)


class MigrationError(RuntimeError):
    """Base class for migration failures surfaced to callers."""


class ApplyRejectedError(MigrationError):
    """Raised when a dry run bundle is not applyable."""


@dataclass(frozen=True)
class Issue:
    code: str
    severity: str
    entity_type: str
    message: str
    entity_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "severity": self.severity,
            "entityType": self.entity_type,
        }
        if self.entity_id is not None:
            payload["entityId"] = self.entity_id
        payload["message"] = self.message
        return payload


@dataclass(frozen=True)
class SectionStats:
    """Per-section counters; ``blocked`` is the part of ``skipped`` caused by a missing required field."""

    section: str
    total: int = 0
    mapped: int = 0
    normalized: int = 0
    skipped: int = 0
    blocked: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "section": self.section,
            "total": self.total,
            "mapped": self.mapped,
            "normalized": self.normalized,
            "skipped": self.skipped,
            "blocked": self.blocked,
        }


@dataclass(frozen=True)
class DryRunReport:
    source_version: str
    sections: Tuple[SectionStats, ...]
    issues: Tuple[Issue, ...]
    can_apply: bool
    target_version: str = TARGET_VERSION

    def with_issues(self, extra: List[Issue]) -> "DryRunReport":
        if not extra:
            return self
        return replace(self, issues=self.issues + tuple(extra))

    def issues_by_code(self, code: str) -> List[Issue]:
        return [issue for issue in self.issues if issue.code == code]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceVersion": self.source_version,
            "targetVersion": self.target_version,
            "sections": [section.to_dict() for section in self.sections],
            "issues": [issue.to_dict() for issue in self.issues],
            "canApply": self.can_apply,
        }


@dataclass(frozen=True)
class DryRunBundle:
    source_state: Any
    mapped_state: Dict[str, Any]
    report: DryRunReport

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceState": self.source_state,
            "mappedState": self.mapped_state,
            "report": self.report.to_dict(),
        }


@dataclass(frozen=True)
class ApplyResult:
    mode: ImportMode
    backup_id: str
    report: DryRunReport
    applied_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "backupId": self.backup_id,
            "report": self.report.to_dict(),
            "appliedAt": self.applied_at,
        }


@dataclass(frozen=True)
class ResolvedApplication:
    next_state: Dict[str, Any]
    report: DryRunReport = field(repr=False)

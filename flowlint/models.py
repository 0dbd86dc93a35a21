"""Core data types shared by the API, the queue and the worker."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator

MAX_RAW_DETAILS = 64000


class ReviewJob(BaseModel):
    """One unit of review work: lint pull request ``pr_number`` of ``repo`` at ``sha``.

    Jobs are immutable. Two jobs with the same :attr:`job_id` describe the
    same work and collapse into one queue entry.
    """

    model_config = ConfigDict(frozen=True)

    installation_id: int
    repo: str
    pr_number: int
    sha: str
    head_branch: Optional[str] = None
    # informational only; a fresh check run is always opened
    check_run_id: Optional[int] = None
    check_suite_id: Optional[int] = None

    @field_validator("repo")
    @classmethod
    def _owner_and_name(cls, v: str) -> str:
        owner, sep, name = v.partition("/")
        if not sep or not owner or not name or "/" in name:
            raise ValueError("repo must be 'owner/name'")
        return v

    @property
    def job_id(self) -> str:
        return f"{self.repo}#{self.pr_number}@{self.sha}"

    @property
    def owner_and_name(self) -> Tuple[str, str]:
        owner, _, name = self.repo.partition("/")
        return owner, name

    @property
    def short_sha(self) -> str:
        return self.sha[:7]


class Severity(str, Enum):
    MUST = "must"
    SHOULD = "should"
    NIT = "nit"

    @property
    def rank(self) -> int:
        return {"must": 3, "should": 2, "nit": 1}[self.value]


class Conclusion(str, Enum):
    SUCCESS = "success"
    NEUTRAL = "neutral"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    ACTION_REQUIRED = "action_required"
    SKIPPED = "skipped"


class CheckStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Finding:
    rule: str
    severity: Severity
    path: str
    message: str
    line: Optional[int] = None
    raw_details: Optional[str] = None
    documentation_url: Optional[str] = None

    def bounded(self, limit: int = MAX_RAW_DETAILS) -> "Finding":
        if self.raw_details is not None and len(self.raw_details) > limit:
            return replace(self, raw_details=self.raw_details[:limit])
        return self


@dataclass(frozen=True)
class PreviousRun:
    id: int
    name: str
    head_sha: str
    status: Optional[str] = None
    conclusion: Optional[str] = None

    @classmethod
    def from_api(cls, run: Dict[str, Any]) -> "PreviousRun":
        return cls(
            id=int(run["id"]),
            name=run.get("name") or "",
            head_sha=run.get("head_sha") or "",
            status=run.get("status"),
            conclusion=run.get("conclusion"),
        )

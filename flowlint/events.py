"""Typed views over the GitHub webhook payloads the classifier accepts.

Only the fields the classifier reads are modelled; everything else in the
payload is ignored. ``installation`` is optional on every model so that a
missing installation can be told apart from a malformed payload.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Installation(_Payload):
    id: Optional[int] = None


class Repository(_Payload):
    full_name: str


class App(_Payload):
    slug: Optional[str] = None


class Ref(_Payload):
    ref: Optional[str] = None
    sha: Optional[str] = None


class PullRequest(_Payload):
    number: int
    head: Ref


class PullRequestEvent(_Payload):
    action: str
    installation: Optional[Installation] = None
    repository: Repository
    pull_request: PullRequest


class AttachedPullRequest(_Payload):
    number: int
    head: Optional[Ref] = None


class SuiteCheckRun(_Payload):
    id: int
    name: Optional[str] = None
    head_sha: Optional[str] = None
    app: Optional[App] = None


class CheckSuite(_Payload):
    id: int
    head_sha: Optional[str] = None
    pull_requests: Optional[List[AttachedPullRequest]] = None
    latest_check_runs: Optional[List[SuiteCheckRun]] = None
    check_runs: Optional[List[SuiteCheckRun]] = None


class CheckSuiteEvent(_Payload):
    action: str
    installation: Optional[Installation] = None
    repository: Repository
    check_suite: CheckSuite


class RunCheckSuite(_Payload):
    id: Optional[int] = None
    pull_requests: Optional[List[AttachedPullRequest]] = None


class CheckRun(_Payload):
    id: int
    head_sha: Optional[str] = None
    head_branch: Optional[str] = None
    check_suite: Optional[RunCheckSuite] = None


class CheckRunEvent(_Payload):
    action: str
    installation: Optional[Installation] = None
    repository: Repository
    check_run: CheckRun


EVENT_MODELS = {
    "pull_request": PullRequestEvent,
    "check_suite": CheckSuiteEvent,
    "check_run": CheckRunEvent,
}

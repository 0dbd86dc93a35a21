"""Webhook event classification.

Turns ``(event, action, payload)`` into zero or more :class:`ReviewJob`
descriptors:

- ``pull_request`` opened/synchronize/ready_for_review -> one job for the PR head.
- ``check_suite`` requested/rerequested -> one job per attached pull request.
- ``check_run`` rerequested/requested_action -> one job for the run's first PR.
- anything else -> ignored (acknowledged, no job).

A missing installation id or missing pull request linkage is a *soft*
rejection: the delivery is acknowledged but nothing is enqueued. A payload
that does not match the event's model is *malformed* and raises.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from .events import EVENT_MODELS, CheckRunEvent, CheckSuiteEvent, PullRequestEvent, SuiteCheckRun
from .models import ReviewJob

log = logging.getLogger("flowlint.classifier")

ACCEPTED_ACTIONS = {
    "pull_request": frozenset({"opened", "synchronize", "ready_for_review"}),
    "check_suite": frozenset({"requested", "rerequested"}),
    "check_run": frozenset({"rerequested", "requested_action"}),
}

MISSING_INSTALLATION = "Missing installation id"
NO_SUITE_PULL_REQUESTS = "No pull requests attached to check suite"
NO_RUN_PULL_REQUEST = "Missing pull request info for check run"


class MalformedPayload(ValueError):
    def __init__(self, event: str, detail: str):
        super().__init__(f"malformed {event} payload: {detail}")
        self.event = event
        self.detail = detail


class Verdict(str, Enum):
    ACCEPTED = "accepted"
    IGNORED = "ignored"
    REJECTED = "rejected"


@dataclass
class Classification:
    verdict: Verdict
    jobs: List[ReviewJob] = field(default_factory=list)
    reason: Optional[str] = None

    @classmethod
    def ignored(cls, reason: str) -> "Classification":
        return cls(Verdict.IGNORED, reason=reason)

    @classmethod
    def rejected(cls, reason: str) -> "Classification":
        return cls(Verdict.REJECTED, reason=reason)


def classify_event(
    event: str,
    payload: Dict[str, Any],
    check_name: str = "FlowLint",
    app_slug: str = "flowlint",
) -> Classification:
    action = payload.get("action") if isinstance(payload, dict) else None
    accepted = ACCEPTED_ACTIONS.get(event)
    if accepted is None:
        return Classification.ignored(f"event {event!r} not handled")
    if action not in accepted:
        return Classification.ignored(f"{event}.{action} not handled")

    try:
        parsed = EVENT_MODELS[event].model_validate(payload)
    except ValidationError as e:
        raise MalformedPayload(event, _first_error(e)) from e

    if parsed.installation is None or not parsed.installation.id:
        log.warning("soft reject event=%s action=%s reason=%s", event, action, MISSING_INSTALLATION)
        return Classification.rejected(MISSING_INSTALLATION)

    try:
        if isinstance(parsed, PullRequestEvent):
            jobs = [_from_pull_request(parsed)]
        elif isinstance(parsed, CheckSuiteEvent):
            jobs = _from_check_suite(parsed, check_name, app_slug)
            if not jobs:
                log.warning("soft reject event=%s action=%s reason=%s", event, action, NO_SUITE_PULL_REQUESTS)
                return Classification.rejected(NO_SUITE_PULL_REQUESTS)
        else:
            job = _from_check_run(parsed)
            if job is None:
                log.warning("soft reject event=%s action=%s reason=%s", event, action, NO_RUN_PULL_REQUEST)
                return Classification.rejected(NO_RUN_PULL_REQUEST)
            jobs = [job]
    except ValidationError as e:
        raise MalformedPayload(event, _first_error(e)) from e

    return Classification(Verdict.ACCEPTED, jobs=jobs)


def _from_pull_request(ev: PullRequestEvent) -> ReviewJob:
    pr = ev.pull_request
    if not pr.head.sha:
        raise MalformedPayload("pull_request", "pull_request.head.sha is required")
    return ReviewJob(
        installation_id=ev.installation.id,
        repo=ev.repository.full_name,
        pr_number=pr.number,
        sha=pr.head.sha,
        head_branch=pr.head.ref,
    )


def _from_check_suite(ev: CheckSuiteEvent, check_name: str, app_slug: str) -> List[ReviewJob]:
    suite = ev.check_suite
    if not suite.head_sha or not suite.pull_requests:
        return []
    runs = suite.latest_check_runs if suite.latest_check_runs is not None else (suite.check_runs or [])
    prior = find_prior_run(runs, suite.head_sha, check_name, app_slug)
    return [
        ReviewJob(
            installation_id=ev.installation.id,
            repo=ev.repository.full_name,
            pr_number=pr.number,
            sha=suite.head_sha,
            head_branch=pr.head.ref if pr.head else None,
            check_run_id=prior.id if prior else None,
            check_suite_id=suite.id,
        )
        for pr in suite.pull_requests
    ]


def _from_check_run(ev: CheckRunEvent) -> Optional[ReviewJob]:
    run = ev.check_run
    suite = run.check_suite
    if not run.head_sha or suite is None or not suite.pull_requests:
        return None
    pr = suite.pull_requests[0]
    return ReviewJob(
        installation_id=ev.installation.id,
        repo=ev.repository.full_name,
        pr_number=pr.number,
        sha=run.head_sha,
        head_branch=(pr.head.ref if pr.head else None) or run.head_branch,
        check_run_id=run.id,
        check_suite_id=suite.id,
    )


def find_prior_run(
    runs: Sequence[SuiteCheckRun],
    head_sha: str,
    check_name: str,
    app_slug: str,
) -> Optional[SuiteCheckRun]:
    """Best-effort match of an earlier run of ours on ``head_sha``.

    Two independent signals identify "ours": the configured check name, or
    the slug of the GitHub App that created the run. Either one is enough.
    """
    for run in runs:
        if run.head_sha != head_sha:
            continue
        name_matches = run.name == check_name
        app_matches = run.app is not None and run.app.slug == app_slug
        if name_matches or app_matches:
            return run
    return None


def _first_error(e: ValidationError) -> str:
    errors = e.errors()
    if not errors:
        return str(e)
    first = errors[0]
    loc = ".".join(str(p) for p in first.get("loc", ()))
    return f"{loc}: {first.get('msg', 'invalid')}"

"""Check-run orchestration for a single review job.

Steps run strictly in order::

    DISCOVER_PREVIOUS -> OPEN_NEW -> LIST_FILES -> NO_TARGETS | COLLECT_FINDINGS
        -> FINALIZE -> SUPERSEDE -> DONE

Any error before SUPERSEDE moves the job to FAILED: the new check run (if one
was opened) is marked ``failure`` on a best-effort basis and the original error
is re-raised so the queue's retry policy applies. A fresh check run is opened
for every delivery; older runs for the same commit are marked superseded once
the new one is final, so concurrent or repeated deliveries converge on the
newest run without any locking.
"""

from __future__ import annotations

import logging
import traceback
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .analyzer import RuleEngine, build_annotations, build_check_output
from .config import Settings
from .findings import aggregate_findings, parse_error_finding
from .github import GitHubClient
from .models import MAX_RAW_DETAILS, CheckStatus, Conclusion, Finding, PreviousRun, ReviewJob
from .repo_config import LintConfig, load_config_from_github
from .targets import fetch_raw_files, pick_targets

log = logging.getLogger("flowlint.orchestrator")

NO_TARGETS_TITLE = "No relevant files found"
NO_TARGETS_SUMMARY = "No workflow files were found to analyze in this pull request."
SUPERSEDED_TITLE = "Superseded by newer FlowLint run"
SUPERSEDED_SUMMARY = (
    "This run has been replaced by FlowLint check {id}. "
    "See the latest run for up-to-date findings."
)
FAILED_TITLE = "FlowLint analysis failed"
FAILED_SUMMARY = "An unexpected error occurred while running the analysis."
IN_PROGRESS_TITLE = "FlowLint is analyzing workflows"
IN_PROGRESS_SUMMARY = "Analysis in progress."
TRUNCATION_NOTE = "\n\n⚠️ Showing first {shown} annotations of {total} total findings."

ConfigLoader = Callable[[Any, str, str, str], LintConfig]


class Step(str, Enum):
    DISCOVER_PREVIOUS = "discover_previous"
    OPEN_NEW = "open_new"
    LIST_FILES = "list_files"
    NO_TARGETS = "no_targets"
    COLLECT_FINDINGS = "collect_findings"
    FINALIZE = "finalize"


class JobLogAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return f"job={self.extra['job']} {msg}", kwargs


@dataclass
class ReviewResult:
    check_run_id: int
    conclusion: str
    findings: List[Finding] = field(default_factory=list)
    targets: List[str] = field(default_factory=list)
    superseded: List[int] = field(default_factory=list)
    supersede_failures: List[Tuple[int, str]] = field(default_factory=list)


class ReviewOrchestrator:
    def __init__(
        self,
        client_factory: Callable[[int], GitHubClient],
        rule_engine: Optional[RuleEngine] = None,
        check_name: str = "FlowLint",
        fetch_concurrency: int = 4,
        config_loader: ConfigLoader = load_config_from_github,
    ):
        self.client_factory = client_factory
        self.rule_engine = rule_engine or RuleEngine()
        self.check_name = check_name
        self.fetch_concurrency = max(1, fetch_concurrency)
        self.config_loader = config_loader

    @classmethod
    def from_settings(cls, settings: Settings, client_factory: Callable[[int], GitHubClient]) -> "ReviewOrchestrator":
        return cls(
            client_factory,
            rule_engine=RuleEngine(docs_base_url=settings.docs_base_url),
            check_name=settings.check_name,
            fetch_concurrency=settings.fetch_concurrency,
        )

    def process(self, job: ReviewJob) -> ReviewResult:
        jlog = JobLogAdapter(log, {"job": job.job_id})
        owner, repo = job.owner_and_name
        step = Step.DISCOVER_PREVIOUS
        check_run_id: Optional[int] = None
        client = None
        jlog.info("processing review repo=%s pr=%s sha=%s", job.repo, job.pr_number, job.short_sha)
        try:
            client = self.client_factory(job.installation_id)
            previous = self._discover_previous(client, owner, repo, job.sha)
            jlog.info("found %d previous check run(s) to supersede", len(previous))

            step = Step.OPEN_NEW
            created = client.create_check_run(
                owner, repo,
                name=self.check_name,
                head_sha=job.sha,
                check_suite_id=job.check_suite_id,
                title=IN_PROGRESS_TITLE,
                summary=IN_PROGRESS_SUMMARY,
            )
            check_run_id = int(created["id"])

            step = Step.LIST_FILES
            files = client.list_pull_files(owner, repo, job.pr_number)
            cfg = self.config_loader(client, owner, repo, job.sha)
            targets = pick_targets(files, cfg.files.include, cfg.files.ignore)
            jlog.info("pull request files=%d targets=%d", len(files), len(targets))

            if not targets:
                step = Step.NO_TARGETS
                client.update_check_run(
                    owner, repo, check_run_id,
                    status=CheckStatus.COMPLETED.value,
                    conclusion=Conclusion.NEUTRAL.value,
                    output={"title": NO_TARGETS_TITLE, "summary": NO_TARGETS_SUMMARY},
                )
                conclusion, findings = Conclusion.NEUTRAL.value, []
            else:
                step = Step.COLLECT_FINDINGS
                findings = self._collect_findings(client, owner, repo, targets, cfg, jlog)
                step = Step.FINALIZE
                conclusion = self._finalize(client, owner, repo, check_run_id, findings, cfg)
        except Exception as e:
            jlog.error("review failed step=%s error=%s", step.value, e)
            if client is not None and check_run_id is not None:
                self._mark_failed(client, owner, repo, check_run_id, e, jlog)
            raise

        superseded, failures = self.supersede(client, owner, repo, previous, check_run_id, jlog)
        jlog.info("review done check_run=%s conclusion=%s findings=%d", check_run_id, conclusion, len(findings))
        return ReviewResult(
            check_run_id=check_run_id,
            conclusion=conclusion,
            findings=findings,
            targets=[t["filename"] for t in targets],
            superseded=superseded,
            supersede_failures=failures,
        )

    # ---------------- steps ----------------

    def _discover_previous(self, client, owner: str, repo: str, sha: str) -> List[PreviousRun]:
        runs = client.list_check_runs(owner, repo, sha, check_name=self.check_name)
        return [
            PreviousRun.from_api(r) for r in runs
            if r.get("name") == self.check_name and r.get("head_sha") == sha
        ]

    def _collect_findings(self, client, owner: str, repo: str, targets: List[Dict], cfg: LintConfig, jlog) -> List[Finding]:
        fetched = fetch_raw_files(client, owner, repo, targets, concurrency=self.fetch_concurrency)
        per_file: List[List[Finding]] = []
        for target in targets:
            name = target["filename"]
            if name not in fetched.contents:
                continue
            try:
                graph = self.rule_engine.parse(fetched.contents[name])
                per_file.append(self.rule_engine.evaluate(graph, name, cfg))
            except Exception as e:
                jlog.warning("could not analyze file=%s error=%s", name, e)
                per_file.append([parse_error_finding(name, e)])
        findings = aggregate_findings(fetched.errors, per_file)
        jlog.info("collected findings=%d fetch_errors=%d", len(findings), len(fetched.errors))
        return findings

    def _finalize(self, client, owner: str, repo: str, check_run_id: int, findings: Sequence[Finding], cfg: LintConfig) -> str:
        # conclusion sees every finding; only annotations are capped
        conclusion, output = build_check_output(findings, cfg)
        limit = cfg.report.summary_limit
        shown = list(findings[:limit]) if limit else list(findings)
        if len(shown) < len(findings):
            output["summary"] += TRUNCATION_NOTE.format(shown=len(shown), total=len(findings))
        if cfg.report.annotations and shown:
            output["annotations"] = build_annotations(shown)
        client.update_check_run(
            owner, repo, check_run_id,
            status=CheckStatus.COMPLETED.value,
            conclusion=conclusion,
            output=output,
        )
        return conclusion

    def supersede(
        self,
        client,
        owner: str,
        repo: str,
        previous: Sequence[PreviousRun],
        new_run_id: int,
        jlog=None,
    ) -> Tuple[List[int], List[Tuple[int, str]]]:
        """Mark every previous run neutral, pointing at ``new_run_id``.

        Failures are collected and logged, never raised.
        """
        jlog = jlog or log
        stale = [p for p in previous if p.id != new_run_id]
        if not stale:
            return [], []

        def _one(run: PreviousRun) -> None:
            client.update_check_run(
                owner, repo, run.id,
                status=CheckStatus.COMPLETED.value,
                conclusion=Conclusion.NEUTRAL.value,
                output={"title": SUPERSEDED_TITLE, "summary": SUPERSEDED_SUMMARY.format(id=new_run_id)},
            )

        done: List[int] = []
        failures: List[Tuple[int, str]] = []
        with ThreadPoolExecutor(max_workers=min(8, len(stale)), thread_name_prefix="supersede") as pool:
            futures = [(run, pool.submit(_one, run)) for run in stale]
            for run, fut in futures:
                err = fut.exception()
                if err is None:
                    done.append(run.id)
                else:
                    failures.append((run.id, str(err) or err.__class__.__name__))
        for run_id, err in failures:
            jlog.warning("failed to supersede check run id=%s error=%s", run_id, err)
        if done:
            jlog.info("superseded check runs=%s by=%s", done, new_run_id)
        return done, failures

    def _mark_failed(self, client, owner: str, repo: str, check_run_id: int, error: BaseException, jlog) -> None:
        text = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        try:
            client.update_check_run(
                owner, repo, check_run_id,
                status=CheckStatus.COMPLETED.value,
                conclusion=Conclusion.FAILURE.value,
                output={"title": FAILED_TITLE, "summary": FAILED_SUMMARY, "text": text[:MAX_RAW_DETAILS]},
            )
        except Exception as update_error:
            jlog.error("could not mark check run failed id=%s error=%s", check_run_id, update_error)

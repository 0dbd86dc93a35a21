"""Folding per-file outcomes into one ordered findings list.

Fetch failures come first, then each target file's findings in file-list
order. Nothing here does I/O.
"""

from typing import Dict, Iterable, List, Sequence

from .analyzer.workflow import format_parse_error
from .models import MAX_RAW_DETAILS, Finding, Severity

FETCH_RULE = "FETCH"
PARSE_RULE = "PARSE"

FETCH_HINT = (
    "This may be due to a force-push, deleted file, or temporary GitHub API issue. "
    "Try re-running the check."
)


def fetch_error_finding(filename: str, error: str) -> Finding:
    return Finding(
        rule=FETCH_RULE,
        severity=Severity.SHOULD,
        path=filename,
        message=f"Failed to fetch file: {error}",
        raw_details=FETCH_HINT,
    )


def parse_error_finding(filename: str, error: BaseException) -> Finding:
    return Finding(
        rule=PARSE_RULE,
        severity=Severity.MUST,
        path=filename,
        message=str(error) or error.__class__.__name__,
        line=1,
        raw_details=format_parse_error(error),
    )


def aggregate_findings(
    fetch_errors: Sequence[Dict[str, str]],
    per_file_findings: Iterable[Sequence[Finding]],
) -> List[Finding]:
    ordered: List[Finding] = [fetch_error_finding(e["filename"], e["error"]) for e in fetch_errors]
    for file_findings in per_file_findings:
        ordered.extend(file_findings)
    return [f.bounded(MAX_RAW_DETAILS) for f in ordered]

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..models import MAX_RAW_DETAILS, Conclusion, Finding, Severity

TITLE_CLEAN = "No issues found"
TITLE_FINDINGS = "FlowLint findings"

_LEVELS = {Severity.MUST: "failure", Severity.SHOULD: "warning", Severity.NIT: "notice"}


def count_by_severity(findings: Sequence[Finding]) -> Dict[str, int]:
    counts = {s.value: 0 for s in Severity}
    for f in findings:
        counts[Severity(f.severity).value] += 1
    return counts


def derive_conclusion(findings: Sequence[Finding]) -> Conclusion:
    counts = count_by_severity(findings)
    if counts[Severity.MUST.value]:
        return Conclusion.FAILURE
    if counts[Severity.SHOULD.value]:
        return Conclusion.NEUTRAL
    return Conclusion.SUCCESS


def summarize_findings(findings: Sequence[Finding]) -> str:
    """
    Markdown summary: one count line, then the findings grouped by file.
    """
    if not findings:
        return "No issues found."
    counts = count_by_severity(findings)
    files = {f.path for f in findings}
    return (
        f"Found {counts['must']} must, {counts['should']} should, {counts['nit']} nit "
        f"in {len(files)} file(s)."
    )


def _details_text(findings: Sequence[Finding]) -> str:
    lines = ["| Rule | Severity | Location | Message |", "|---|---|---|---|"]
    for f in findings:
        where = f"{f.path}:{f.line}" if f.line else f.path
        rule = f"[{f.rule}]({f.documentation_url})" if f.documentation_url else f.rule
        message = f.message.replace("|", "\\|").replace("\n", " ")
        lines.append(f"| {rule} | {Severity(f.severity).value} | `{where}` | {message} |")
    return "\n".join(lines)[:MAX_RAW_DETAILS]


def build_check_output(
    findings: Sequence[Finding],
    cfg=None,
    summary_override: Optional[str] = None,
) -> Tuple[str, Dict[str, Any]]:
    """
    Return (conclusion, output) for a completed check run.

    The conclusion always reflects every finding passed in, however many of
    them end up as annotations.
    """
    conclusion = derive_conclusion(findings)
    output: Dict[str, Any] = {
        "title": TITLE_FINDINGS if findings else TITLE_CLEAN,
        "summary": summary_override if summary_override is not None else summarize_findings(findings),
    }
    if findings:
        output["text"] = _details_text(findings)
    return conclusion.value, output


def build_annotations(findings: Sequence[Finding]) -> List[Dict[str, Any]]:
    """
    Convert findings → GitHub Checks annotations.
    """
    out: List[Dict[str, Any]] = []
    for f in findings:
        line = int(f.line or 1)
        annotation: Dict[str, Any] = {
            "path": f.path,
            "start_line": line,
            "end_line": line,
            "annotation_level": _LEVELS[Severity(f.severity)],  # failure | warning | notice
            "title": f"{f.rule} ({Severity(f.severity).value})",
            "message": f.message,
        }
        meta: List[str] = []
        if f.raw_details:
            meta.append(f.raw_details)
        if f.documentation_url:
            meta.append(f"Docs: {f.documentation_url}")
        if meta:
            annotation["raw_details"] = "\n\n".join(meta)[:MAX_RAW_DETAILS]
        out.append(annotation)
    return out

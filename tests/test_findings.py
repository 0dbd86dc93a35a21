from flowlint.analyzer import WorkflowValidationError
from flowlint.analyzer.workflow import ValidationIssue
from flowlint.findings import FETCH_HINT, aggregate_findings, fetch_error_finding, parse_error_finding
from flowlint.models import MAX_RAW_DETAILS, Finding, Severity


def test_fetch_errors_come_first_then_files_in_order():
    a = [Finding("R1", Severity.SHOULD, "a.json", "retry")]
    b = [Finding("R2", Severity.MUST, "b.json", "cof"), Finding("R10", Severity.NIT, "b.json", "name")]
    out = aggregate_findings([{"filename": "x.json", "error": "Not Found"}], [a, b])
    assert [(f.rule, f.path) for f in out] == [
        ("FETCH", "x.json"), ("R1", "a.json"), ("R2", "b.json"), ("R10", "b.json"),
    ]


def test_fetch_error_finding_shape():
    f = fetch_error_finding("w.json", "timeout")
    assert f.severity is Severity.SHOULD
    assert f.message == "Failed to fetch file: timeout"
    assert f.raw_details == FETCH_HINT


def test_raw_details_are_capped():
    huge = Finding("PARSE", Severity.MUST, "w.json", "bad", line=1, raw_details="x" * (MAX_RAW_DETAILS + 500))
    [out] = aggregate_findings([], [[huge]])
    assert len(out.raw_details) == MAX_RAW_DETAILS


def test_parse_error_finding_lists_validation_issues():
    err = WorkflowValidationError("Workflow validation failed", [
        ValidationIssue("nodes[0].type", "missing node type", "e.g. n8n-nodes-base.httpRequest"),
        ValidationIssue("connections.Ghost", "connection from unknown node"),
    ])
    f = parse_error_finding("w.json", err)
    assert (f.rule, f.severity, f.line) == ("PARSE", Severity.MUST, 1)
    assert f.message == "Workflow validation failed"
    assert f.raw_details.splitlines() == [
        "- nodes[0].type: missing node type (suggestion: e.g. n8n-nodes-base.httpRequest)",
        "- connections.Ghost: connection from unknown node",
    ]


def test_parse_error_finding_falls_back_to_traceback():
    try:
        raise KeyError("nodes")
    except KeyError as e:
        f = parse_error_finding("w.json", e)
    assert "Traceback" in f.raw_details
    assert "KeyError" in f.raw_details


def test_empty_inputs():
    assert aggregate_findings([], []) == []

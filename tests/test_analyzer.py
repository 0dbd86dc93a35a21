import json

import pytest

from flowlint.analyzer import (
    RuleEngine,
    WorkflowValidationError,
    build_annotations,
    build_check_output,
    format_parse_error,
    parse_workflow,
)
from flowlint.models import Finding, Severity
from flowlint.repo_config import LintConfig


def _rules(findings):
    return [(f.rule, f.severity) for f in findings]


def test_parse_records_node_lines(workflows):
    graph = parse_workflow(workflows["valid"])
    assert [n.name for n in graph.nodes] == ["Webhook Trigger", "Respond to Webhook", "Fetch User Data", "Error Handler"]
    lines = workflows["valid"].splitlines()
    for name, line in graph.node_lines.items():
        assert f'"name": "{name}"' in lines[line - 1]
    assert graph.outputs("Fetch User Data", "error") == ["Error Handler"]


def test_parse_records_lines_for_non_ascii_names():
    raw = json.dumps({
        "nodes": [
            {"name": "Start", "type": "n8n-nodes-base.manualTrigger"},
            {"name": "Café Lookup", "type": "n8n-nodes-base.set"},
        ],
        "connections": {},
    }, indent=2, ensure_ascii=False)
    graph = parse_workflow(raw)
    line = graph.node_lines["Café Lookup"]
    assert '"name": "Café Lookup"' in raw.splitlines()[line - 1]


def test_parse_accepts_nodes_without_ids(workflows):
    graph = parse_workflow(workflows["no_ids"])
    assert all(n.id is None for n in graph.nodes)


def test_parse_rejects_invalid_json(workflows):
    with pytest.raises(WorkflowValidationError, match="Invalid JSON"):
        parse_workflow(workflows["malformed"])


def test_parse_collects_all_structural_issues():
    raw = json.dumps({
        "nodes": [{"name": "A"}, {"type": "x"}, {"name": "B", "type": "t"}, {"name": "B", "type": "t"}],
        "connections": {"Ghost": {}},
    })
    with pytest.raises(WorkflowValidationError) as exc:
        parse_workflow(raw)
    paths = [i.path for i in exc.value.errors]
    assert paths == ["nodes[0].type", "nodes[1].name", "nodes[3].name", "connections.Ghost"]


def test_valid_workflow_is_clean(workflows):
    engine = RuleEngine()
    assert engine.evaluate(engine.parse(workflows["valid"]), "w.json") == []


@pytest.mark.parametrize("key,expected", [
    ("continue_on_fail", [("R2", Severity.MUST)]),
    ("secret_leak", [("R4", Severity.MUST), ("R12", Severity.MUST)]),
    ("unhandled_error", [("R12", Severity.MUST)]),
    ("missing_retry", [("R1", Severity.SHOULD)]),
    ("multiple", [
        ("R1", Severity.SHOULD),
        ("R2", Severity.MUST),
        ("R10", Severity.NIT),
        ("R10", Severity.NIT),
        ("R12", Severity.MUST),
    ]),
])
def test_rules(workflows, key, expected):
    engine = RuleEngine()
    assert _rules(engine.evaluate(engine.parse(workflows[key]), "w.json")) == expected


def test_findings_carry_line_and_docs(workflows):
    engine = RuleEngine(docs_base_url="https://docs.example.com/rules/")
    graph = engine.parse(workflows["continue_on_fail"])
    [finding] = engine.evaluate(graph, "workflows/x.json")
    assert finding.path == "workflows/x.json"
    assert finding.line == graph.node_lines["Unsafe Node"]
    assert finding.documentation_url == "https://docs.example.com/rules/R2"


def test_expressions_are_not_secrets():
    raw = json.dumps({"nodes": [{
        "name": "Call CRM", "type": "n8n-nodes-base.set",
        "parameters": {"token": "={{ $credentials.crm.token }}", "apiKey": "{{ $env.CRM_KEY }}"},
    }]})
    engine = RuleEngine()
    assert engine.evaluate(engine.parse(raw), "w.json") == []


def test_disabled_rules_are_skipped(workflows):
    cfg = LintConfig(rules={"R10": {"enabled": False}, "R12": {"enabled": False}})
    engine = RuleEngine()
    findings = engine.evaluate(engine.parse(workflows["multiple"]), "w.json", cfg)
    assert {f.rule for f in findings} == {"R1", "R2"}


@pytest.mark.parametrize("severities,conclusion", [
    ([], "success"),
    (["nit", "nit"], "success"),
    (["nit", "should"], "neutral"),
    (["nit", "should", "must"], "failure"),
    (["must"] + ["nit"] * 200, "failure"),
])
def test_conclusion(severities, conclusion):
    findings = [Finding("R", Severity(s), "w.json", "m") for s in severities]
    assert build_check_output(findings)[0] == conclusion


def test_output_summary_counts():
    findings = [
        Finding("R2", Severity.MUST, "a.json", "m"),
        Finding("R1", Severity.SHOULD, "b.json", "m"),
        Finding("R10", Severity.NIT, "b.json", "m"),
        Finding("R10", Severity.NIT, "b.json", "m"),
    ]
    conclusion, output = build_check_output(findings)
    assert conclusion == "failure"
    assert "1 must, 1 should, 2 nit" in output["summary"]
    assert "| R2 | must | `a.json` | m |" in output["text"]


def test_output_clean_and_override():
    _, output = build_check_output([])
    assert output == {"title": "No issues found", "summary": "No issues found."}
    _, output = build_check_output([], summary_override="custom")
    assert output["summary"] == "custom"


def test_annotation_levels():
    findings = [
        Finding("R2", Severity.MUST, "a.json", "must", line=4, documentation_url="https://d/R2"),
        Finding("R1", Severity.SHOULD, "a.json", "should"),
        Finding("R10", Severity.NIT, "a.json", "nit", raw_details="extra"),
    ]
    a, b, c = build_annotations(findings)
    assert (a["annotation_level"], a["start_line"], a["end_line"]) == ("failure", 4, 4)
    assert a["title"] == "R2 (must)"
    assert a["raw_details"] == "Docs: https://d/R2"
    assert (b["annotation_level"], b["start_line"]) == ("warning", 1)
    assert "raw_details" not in b
    assert (c["annotation_level"], c["raw_details"]) == ("notice", "extra")


def test_format_parse_error_caps_length():
    try:
        raise RuntimeError("x" * 70000)
    except RuntimeError as e:
        text = format_parse_error(e)
    assert len(text) == 64000

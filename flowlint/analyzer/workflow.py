"""Parsing and structural validation of n8n workflow exports."""

from __future__ import annotations

import json
import re
import traceback
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..models import MAX_RAW_DETAILS


@dataclass
class ValidationIssue:
    path: str
    message: str
    suggestion: Optional[str] = None


class WorkflowValidationError(ValueError):
    def __init__(self, message: str, errors: Optional[List[ValidationIssue]] = None):
        super().__init__(message)
        self.errors = list(errors or [])


@dataclass
class Node:
    name: str
    type: str
    id: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    continue_on_fail: bool = False
    on_error: Optional[str] = None
    retry_on_fail: bool = False

    @property
    def short_type(self) -> str:
        return self.type.rsplit(".", 1)[-1]


@dataclass
class WorkflowGraph:
    nodes: List[Node]
    connections: Dict[str, Dict[str, Any]]
    node_lines: Dict[str, int] = field(default_factory=dict)

    def outputs(self, node_name: str, kind: str) -> List[str]:
        """Names of the nodes wired to ``node_name``'s ``kind`` output (main/error)."""
        targets: List[str] = []
        for branch in (self.connections.get(node_name) or {}).get(kind) or []:
            for edge in branch or []:
                if isinstance(edge, dict) and edge.get("node"):
                    targets.append(edge["node"])
        return targets

    def line_of(self, node: Node) -> Optional[int]:
        return self.node_lines.get(node.name)


def parse_workflow(raw: str) -> WorkflowGraph:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise WorkflowValidationError(
            f"Invalid JSON: {e.msg} (line {e.lineno}, column {e.colno})",
            [ValidationIssue("$", e.msg, "Export the workflow again from n8n")],
        ) from e

    issues: List[ValidationIssue] = []
    if not isinstance(data, dict):
        raise WorkflowValidationError("Workflow must be a JSON object", [ValidationIssue("$", "expected an object")])

    raw_nodes = data.get("nodes")
    if not isinstance(raw_nodes, list):
        issues.append(ValidationIssue("nodes", "missing or not a list", "An n8n export has a top-level 'nodes' array"))
        raw_nodes = []
    connections = data.get("connections", {})
    if not isinstance(connections, dict):
        issues.append(ValidationIssue("connections", "must be an object keyed by node name"))
        connections = {}

    nodes: List[Node] = []
    seen = set()
    for i, n in enumerate(raw_nodes):
        where = f"nodes[{i}]"
        if not isinstance(n, dict):
            issues.append(ValidationIssue(where, "node must be an object"))
            continue
        name, type_ = n.get("name"), n.get("type")
        if not isinstance(name, str) or not name:
            issues.append(ValidationIssue(f"{where}.name", "missing node name"))
            continue
        if not isinstance(type_, str) or not type_:
            issues.append(ValidationIssue(f"{where}.type", "missing node type", "e.g. n8n-nodes-base.httpRequest"))
            continue
        if name in seen:
            issues.append(ValidationIssue(f"{where}.name", f"duplicate node name {name!r}", "Node names must be unique"))
            continue
        seen.add(name)
        params = n.get("parameters") if isinstance(n.get("parameters"), dict) else {}
        nodes.append(Node(
            name=name,
            type=type_,
            id=str(n["id"]) if n.get("id") is not None else None,
            parameters=params,
            continue_on_fail=bool(n.get("continueOnFail")),
            on_error=n.get("onError"),
            retry_on_fail=bool(n.get("retryOnFail")),
        ))

    for source in connections:
        if source not in seen:
            issues.append(ValidationIssue(f"connections.{source}", "connection from unknown node"))

    if issues:
        raise WorkflowValidationError("Workflow validation failed", issues)
    return WorkflowGraph(nodes=nodes, connections=connections, node_lines=_node_lines(raw, nodes))


def _node_lines(raw: str, nodes: List[Node]) -> Dict[str, int]:
    lines = raw.splitlines()
    out: Dict[str, int] = {}
    for node in nodes:
        needle = re.compile(r'"name"\s*:\s*' + re.escape(json.dumps(node.name, ensure_ascii=False)))
        for no, text in enumerate(lines, start=1):
            if needle.search(text):
                out[node.name] = no
                break
    return out


def format_parse_error(error: BaseException) -> Optional[str]:
    """Details for a PARSE finding: the validation issues, else the traceback."""
    if isinstance(error, WorkflowValidationError) and error.errors:
        lines = []
        for issue in error.errors:
            suggestion = f" (suggestion: {issue.suggestion})" if issue.suggestion else ""
            lines.append(f"- {issue.path}: {issue.message}{suggestion}")
        return "\n".join(lines)[:MAX_RAW_DETAILS]
    if isinstance(error, BaseException):
        return "".join(traceback.format_exception(type(error), error, error.__traceback__))[:MAX_RAW_DETAILS]
    return None

import re
from typing import Any, Callable, Iterable, Iterator, List, Optional, Tuple

from ..models import Finding, Severity
from .workflow import Node, WorkflowGraph, parse_workflow

# Simple, explainable rules over the parsed workflow graph

DEFAULT_DOCS_URL = "https://github.com/Replikanti/flowlint-examples/tree/main"

SECRET_PATTERNS = [
    (r"AKIA[0-9A-Z]{16}", "Looks like an AWS Access Key ID"),
    (r"\bsk-[A-Za-z0-9_\-]{8,}", "Looks like an API secret key"),
    (r"(?i)\bbearer\s+[A-Za-z0-9_\-\.=]{8,}", "Hardcoded bearer token"),
    (r"(?i)(api[_-]?key|token|secret|password)\s*[:=]\s*[\"'][A-Za-z0-9_\-]{12,}[\"']", "Hardcoded credential"),
]
SECRET_KEYS = re.compile(r"(?i)^(api[_-]?key|access[_-]?token|token|secret|client[_-]?secret|password|authorization)$")

HTTP_TYPES = {"httpRequest", "httpRequestTool"}
GENERIC_NAMES = {
    "HTTP Request", "Set", "Edit Fields", "Code", "Function", "Function Item",
    "IF", "If", "Switch", "Merge", "Webhook", "No Operation, do nothing", "Node",
}
NUMBERED_DEFAULT = re.compile(r"^(?P<base>.+?)\s*\d+$")

Hit = Tuple[Node, str]
Rule = Callable[[WorkflowGraph], Iterable[Hit]]


def _is_expression(value: str) -> bool:
    return value.startswith("=") or "{{" in value


def _walk_strings(value: Any, key: str = "") -> Iterator[Tuple[str, str]]:
    if isinstance(value, dict):
        for k, v in value.items():
            yield from _walk_strings(v, str(k))
    elif isinstance(value, list):
        for v in value:
            yield from _walk_strings(v, key)
    elif isinstance(value, str):
        yield key, value


def _is_http(node: Node) -> bool:
    return node.short_type in HTTP_TYPES


def http_without_retry(graph: WorkflowGraph) -> Iterator[Hit]:
    for node in graph.nodes:
        if not _is_http(node):
            continue
        options = node.parameters.get("options") or {}
        if node.retry_on_fail or (isinstance(options, dict) and options.get("retryOnFail")):
            continue
        yield node, f"HTTP node '{node.name}' has no retry configured (enable Retry On Fail)"


def continue_on_fail(graph: WorkflowGraph) -> Iterator[Hit]:
    for node in graph.nodes:
        if node.continue_on_fail or node.on_error == "continueRegularOutput":
            yield node, f"continueOnFail is forbidden: '{node.name}' silently swallows errors"


def hardcoded_secret(graph: WorkflowGraph) -> Iterator[Hit]:
    for node in graph.nodes:
        for key, value in _walk_strings(node.parameters):
            if _is_expression(value):
                continue
            message = None
            for pat, msg in SECRET_PATTERNS:
                if re.search(pat, value):
                    message = msg
                    break
            if message is None and SECRET_KEYS.match(key) and len(value) >= 8:
                message = "Hardcoded credential"
            if message:
                yield node, f"{message} in node '{node.name}'; use n8n credentials or an env expression"
                break


def generic_node_name(graph: WorkflowGraph) -> Iterator[Hit]:
    for node in graph.nodes:
        name = node.name.strip()
        m = NUMBERED_DEFAULT.match(name)
        if name in GENERIC_NAMES or (m and m.group("base") in GENERIC_NAMES):
            yield node, f"Generic node name detected: '{node.name}'; describe what the node does"


def unhandled_error_path(graph: WorkflowGraph) -> Iterator[Hit]:
    for node in graph.nodes:
        if not _is_http(node):
            continue
        if node.on_error == "continueErrorOutput" or graph.outputs(node.name, "error"):
            continue
        yield node, f"HTTP node '{node.name}' has no error path; wire its error output to a handler"


DEFAULT_RULES: List[Tuple[str, Severity, Rule]] = [
    ("R1", Severity.SHOULD, http_without_retry),
    ("R2", Severity.MUST, continue_on_fail),
    ("R4", Severity.MUST, hardcoded_secret),
    ("R10", Severity.NIT, generic_node_name),
    ("R12", Severity.MUST, unhandled_error_path),
]


class RuleEngine:
    def __init__(self, docs_base_url: Optional[str] = None, rules: Optional[List[Tuple[str, Severity, Rule]]] = None):
        self.docs_base_url = (docs_base_url or DEFAULT_DOCS_URL).rstrip("/")
        self.rules = list(DEFAULT_RULES if rules is None else rules)

    def parse(self, raw: str) -> WorkflowGraph:
        return parse_workflow(raw)

    def documentation_url(self, rule: str) -> str:
        return f"{self.docs_base_url}/{rule}"

    def evaluate(self, graph: WorkflowGraph, path: str, cfg=None) -> List[Finding]:
        """Findings in rule order, then node order within a rule."""
        findings: List[Finding] = []
        for rule_id, severity, check in self.rules:
            if cfg is not None and not cfg.rule_enabled(rule_id):
                continue
            for node, message in check(graph):
                findings.append(Finding(
                    rule=rule_id,
                    severity=severity,
                    path=path,
                    message=message,
                    line=graph.line_of(node),
                    documentation_url=self.documentation_url(rule_id),
                ))
        return findings

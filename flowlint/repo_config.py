"""Per-repository lint configuration (``.flowlint.yml``).

Example::

    files:
      include: ["**/*.n8n.json", "workflows/**/*.json"]
      ignore: ["samples/**"]
    report:
      summary_limit: 25      # 0 = no cap on annotations
      annotations: true
    rules:
      R10: { enabled: false }
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

log = logging.getLogger("flowlint.repo_config")

CONFIG_CANDIDATES = (".flowlint.yml", ".flowlint.yaml", "flowlint.config.yml")

DEFAULT_INCLUDE = ["**/*.n8n.json", "workflows/**/*.json"]
DEFAULT_IGNORE = ["samples/**", "node_modules/**", "**/*.spec.json"]


class ConfigError(ValueError):
    pass


@dataclass
class FilesConfig:
    include: List[str] = field(default_factory=lambda: list(DEFAULT_INCLUDE))
    ignore: List[str] = field(default_factory=lambda: list(DEFAULT_IGNORE))


@dataclass
class ReportConfig:
    summary_limit: int = 25
    annotations: bool = True


@dataclass
class LintConfig:
    files: FilesConfig = field(default_factory=FilesConfig)
    report: ReportConfig = field(default_factory=ReportConfig)
    rules: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def rule_enabled(self, rule: str) -> bool:
        return bool(self.rules.get(rule, {}).get("enabled", True))


def _str_list(value: Any, key: str) -> List[str]:
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{key} must be a list of glob strings")
    return list(value)


def parse_config(text: str) -> LintConfig:
    try:
        raw = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError("config root must be a mapping")

    cfg = LintConfig()
    files = raw.get("files") or {}
    if not isinstance(files, dict):
        raise ConfigError("files must be a mapping")
    if "include" in files:
        cfg.files.include = _str_list(files["include"], "files.include")
    if "ignore" in files:
        cfg.files.ignore = _str_list(files["ignore"], "files.ignore")

    report = raw.get("report") or {}
    if not isinstance(report, dict):
        raise ConfigError("report must be a mapping")
    if "summary_limit" in report:
        limit = report["summary_limit"]
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 0:
            raise ConfigError("report.summary_limit must be a non-negative integer")
        cfg.report.summary_limit = limit
    if "annotations" in report:
        cfg.report.annotations = bool(report["annotations"])

    rules = raw.get("rules") or {}
    if not isinstance(rules, dict):
        raise ConfigError("rules must be a mapping")
    for rule_id, opts in rules.items():
        if isinstance(opts, bool):
            opts = {"enabled": opts}
        cfg.rules[str(rule_id)] = dict(opts or {})
    return cfg


def load_config_from_github(client, owner: str, repo: str, sha: str) -> LintConfig:
    """First loadable candidate at ``sha`` wins; otherwise the defaults."""
    for path in CONFIG_CANDIDATES:
        try:
            text: Optional[str] = client.get_contents_text(owner, repo, path, sha)
            if text is None:
                continue
            cfg = parse_config(text)
        except Exception as e:
            log.warning("skipping config candidate path=%s repo=%s/%s error=%s", path, owner, repo, e)
            continue
        log.info("loaded lint config path=%s repo=%s/%s", path, owner, repo)
        return cfg
    return LintConfig()

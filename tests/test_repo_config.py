import pytest

from flowlint.repo_config import (
    DEFAULT_IGNORE,
    DEFAULT_INCLUDE,
    ConfigError,
    LintConfig,
    load_config_from_github,
    parse_config,
)


def test_empty_config_is_defaults():
    cfg = parse_config("")
    assert cfg.files.include == DEFAULT_INCLUDE
    assert cfg.files.ignore == DEFAULT_IGNORE
    assert cfg.report.summary_limit == 25
    assert cfg.report.annotations is True
    assert cfg.rule_enabled("R1")


def test_full_config():
    cfg = parse_config(
        """
files:
  include: "flows/**/*.json"
  ignore: ["flows/archive/**"]
report:
  summary_limit: 0
  annotations: false
rules:
  R10: { enabled: false }
  R12: false
  R1: {}
"""
    )
    assert cfg.files.include == ["flows/**/*.json"]
    assert cfg.files.ignore == ["flows/archive/**"]
    assert cfg.report.summary_limit == 0
    assert cfg.report.annotations is False
    assert not cfg.rule_enabled("R10")
    assert not cfg.rule_enabled("R12")
    assert cfg.rule_enabled("R1")


@pytest.mark.parametrize("text", [
    "- just\n- a list\n",
    "files: [1, 2]\n",
    "files:\n  include: [1]\n",
    "report:\n  summary_limit: -1\n",
    "report:\n  summary_limit: true\n",
    "rules: [R1]\n",
    "files: {include: [unclosed\n",
])
def test_invalid_config_raises(text):
    with pytest.raises(ConfigError):
        parse_config(text)


class _Contents:
    def __init__(self, files):
        self.files = files
        self.asked = []

    def get_contents_text(self, owner, repo, path, ref):
        self.asked.append(path)
        value = self.files.get(path)
        if isinstance(value, Exception):
            raise value
        return value


def test_loader_takes_first_available_candidate():
    client = _Contents({".flowlint.yaml": "report:\n  summary_limit: 5\n"})
    cfg = load_config_from_github(client, "octo", "demo", "sha")
    assert cfg.report.summary_limit == 5
    assert client.asked == [".flowlint.yml", ".flowlint.yaml"]


def test_loader_skips_broken_candidates():
    client = _Contents({
        ".flowlint.yml": "report: [oops]\n",
        ".flowlint.yaml": RuntimeError("502"),
        "flowlint.config.yml": "report:\n  annotations: false\n",
    })
    cfg = load_config_from_github(client, "octo", "demo", "sha")
    assert cfg.report.annotations is False


def test_loader_falls_back_to_defaults():
    cfg = load_config_from_github(_Contents({}), "octo", "demo", "sha")
    assert cfg == LintConfig()

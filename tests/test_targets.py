import threading

import pytest

from flowlint.repo_config import DEFAULT_IGNORE, DEFAULT_INCLUDE
from flowlint.targets import fetch_raw_files, glob_match, pick_targets


@pytest.mark.parametrize("path,pattern,expected", [
    ("flow.n8n.json", "**/*.n8n.json", True),
    ("a/b/flow.n8n.json", "**/*.n8n.json", True),
    ("workflows/x.json", "workflows/**/*.json", True),
    ("workflows/deep/er/x.json", "workflows/**/*.json", True),
    ("other/x.json", "workflows/**/*.json", False),
    ("samples/a/b.json", "samples/**", True),
    ("a/samples/b.json", "samples/**", False),
    ("workflows/x.json", "*.json", False),
    ("x.json", "*.json", True),
    ("w1.json", "w?.json", True),
    ("wa.json", "w[0-9].json", False),
    ("flows/a.json", "flows/*.{json,yml}", True),
    ("flows/b.yml", "flows/*.{json,yml}", True),
    ("flows/c.yaml", "flows/*.{json,yml}", False),
    ("flows/c.yaml", "flows/*.{json,y{a,}ml}", True),
    ("flows/c.yml", "flows/*.{json,y{a,}ml}", True),
    ("a/b/x.n8n.json", "{workflows,**}/*.n8n.json", True),
    ("workflows/x.n8n.json", "{workflows,**}/*.n8n.json", True),
    ("{x}.json", "{x}.json", True),
    ("x.json", "{x}.json", False),
    ("{a.json", "{a.json", True),
])
def test_glob_match(path, pattern, expected):
    assert glob_match(path, pattern) is expected


def test_pick_targets_with_defaults():
    files = [
        {"filename": "workflows/main.json", "status": "modified"},
        {"filename": "workflows/old.json", "status": "removed"},
        {"filename": "samples/demo.n8n.json", "status": "added"},
        {"filename": "workflows/check.spec.json", "status": "added"},
        {"filename": "src/app.py", "status": "modified"},
        {"filename": "flows/billing.n8n.json", "status": "renamed"},
    ]
    picked = pick_targets(files, DEFAULT_INCLUDE, DEFAULT_IGNORE)
    assert [f["filename"] for f in picked] == ["workflows/main.json", "flows/billing.n8n.json"]


def test_pick_targets_normalizes_backslashes():
    files = [{"filename": "workflows\\win.json", "status": "added"}]
    assert pick_targets(files, ["workflows/*.json"], []) == files


def test_pick_targets_with_brace_include():
    files = [
        {"filename": "flows/a.json", "status": "added"},
        {"filename": "flows/b.yml", "status": "modified"},
        {"filename": "flows/c.txt", "status": "modified"},
    ]
    picked = pick_targets(files, ["flows/*.{json,yml}"], [])
    assert [f["filename"] for f in picked] == ["flows/a.json", "flows/b.yml"]


def test_pick_targets_empty_include_selects_nothing():
    assert pick_targets([{"filename": "workflows/a.json"}], [], []) == []


class _Blobs:
    def __init__(self, blobs):
        self.blobs = blobs
        self.threads = set()

    def get_blob_text(self, owner, repo, sha):
        self.threads.add(threading.get_ident())
        value = self.blobs[sha]
        if isinstance(value, Exception):
            raise value
        return value


def test_fetch_raw_files_collects_errors():
    client = _Blobs({"s1": "one", "s2": RuntimeError("boom"), "s3": "three"})
    targets = [
        {"filename": "a.json", "sha": "s1"},
        {"filename": "b.json", "sha": "s2"},
        {"filename": "c.json", "sha": "s3"},
        {"filename": "d.json"},
    ]
    result = fetch_raw_files(client, "octo", "demo", targets, concurrency=3)
    assert result.contents == {"a.json": "one", "c.json": "three"}
    assert result.errors == [
        {"filename": "b.json", "error": "boom"},
        {"filename": "d.json", "error": "Missing SHA (file may be removed)"},
    ]


def test_fetch_raw_files_no_targets():
    result = fetch_raw_files(_Blobs({}), "octo", "demo", [])
    assert result.contents == {} and result.errors == []

from dotenv import load_dotenv
load_dotenv()  # ensures RUN_INTEGRATION / REDIS_URL are visible to pytest
import json
import threading
import warnings

import pytest

warnings.filterwarnings(
    "ignore",
    message=r"on_event is deprecated, use lifespan event handlers instead\.",
    category=DeprecationWarning,
    module=r"fastapi\..*",
)

from flowlint.config import Settings
from flowlint.jobqueue import MemoryJobQueue, RetryPolicy
from flowlint.models import ReviewJob


class FakeGitHub:
    """In-memory stand-in for GitHubClient that records every write."""

    def __init__(self, files=None, blobs=None, runs=None, configs=None):
        self.files = list(files or [])
        self.blobs = dict(blobs or {})
        self.runs = list(runs or [])
        self.configs = dict(configs or {})
        self.fail_on = {}
        self.failing_updates = set()
        self.created = []
        self.updates = []
        self.blob_reads = []
        self.next_id = 1000
        self._lock = threading.Lock()

    def _maybe_fail(self, name):
        exc = self.fail_on.get(name)
        if exc is not None:
            raise exc

    def list_check_runs(self, owner, repo, ref, check_name=None):
        self._maybe_fail("list_check_runs")
        return list(self.runs)

    def create_check_run(self, owner, repo, name, head_sha, check_suite_id=None, title=None, summary=None):
        self._maybe_fail("create_check_run")
        with self._lock:
            run = {"id": self.next_id, "name": name, "head_sha": head_sha, "check_suite_id": check_suite_id}
            self.next_id += 1
            self.created.append(run)
        return run

    def update_check_run(self, owner, repo, check_run_id, **fields):
        with self._lock:
            self.updates.append((check_run_id, fields))
        if check_run_id in self.failing_updates:
            raise RuntimeError(f"update of {check_run_id} failed")
        return {"id": check_run_id, **fields}

    def list_pull_files(self, owner, repo, pr_number):
        self._maybe_fail("list_pull_files")
        return list(self.files)

    def get_blob_text(self, owner, repo, sha):
        with self._lock:
            self.blob_reads.append(sha)
        blob = self.blobs[sha]
        if isinstance(blob, Exception):
            raise blob
        return blob

    def get_contents_text(self, owner, repo, path, ref):
        return self.configs.get(path)

    def updates_for(self, check_run_id):
        return [fields for run_id, fields in self.updates if run_id == check_run_id]


def _workflow(nodes, connections=None):
    return json.dumps({"nodes": nodes, "connections": connections or {}}, indent=2)


WORKFLOWS = {
    "valid": _workflow(
        [
            {"id": "1", "type": "n8n-nodes-base.webhook", "name": "Webhook Trigger",
             "parameters": {"body": {"eventId": "{{ $json.id }}"}}},
            {"id": "2", "type": "n8n-nodes-base.respondToWebhook", "name": "Respond to Webhook",
             "parameters": {"respondWith": "text", "responseBody": "OK"}},
            {"id": "3", "type": "n8n-nodes-base.httpRequest", "name": "Fetch User Data",
             "parameters": {"url": "{{ $env.API_URL }}/users", "options": {"retryOnFail": True}}},
            {"id": "4", "type": "n8n-nodes-base.slack", "name": "Error Handler",
             "parameters": {"text": "Error occurred"}},
        ],
        {
            "Webhook Trigger": {"main": [[{"node": "Respond to Webhook", "type": "main", "index": 0}]]},
            "Respond to Webhook": {"main": [[{"node": "Fetch User Data", "type": "main", "index": 0}]]},
            "Fetch User Data": {"error": [[{"node": "Error Handler", "type": "main", "index": 0}]]},
        },
    ),
    "continue_on_fail": _workflow(
        [{"id": "1", "type": "n8n-nodes-base.set", "name": "Unsafe Node", "parameters": {}, "continueOnFail": True}]
    ),
    "secret_leak": _workflow(
        [{"id": "1", "type": "n8n-nodes-base.httpRequest", "name": "API Call",
          "parameters": {"url": "https://api.example.com",
                         "headers": {"Authorization": "Bearer sk-secret-key-12345"},
                         "options": {"retryOnFail": True}}}]
    ),
    "unhandled_error": _workflow(
        [{"id": "1", "type": "n8n-nodes-base.httpRequest", "name": "Risky API Call",
          "parameters": {"url": "https://api.example.com", "options": {"retryOnFail": True}}}]
    ),
    "multiple": _workflow(
        [
            {"id": "1", "type": "n8n-nodes-base.httpRequest", "name": "HTTP Request", "parameters": {}},
            {"id": "2", "type": "n8n-nodes-base.set", "name": "Set", "continueOnFail": True},
        ]
    ),
    "no_ids": _workflow(
        [
            {"type": "n8n-nodes-base.httpRequest", "name": "Fetch Deals",
             "parameters": {"url": "https://example.com", "options": {"retryOnFail": True}}},
            {"type": "n8n-nodes-base.slack", "name": "Alert Sales", "parameters": {}},
        ],
        {"Fetch Deals": {"error": [[{"node": "Alert Sales", "type": "main", "index": 0}]]}},
    ),
    "missing_retry": _workflow(
        [
            {"id": "1", "type": "n8n-nodes-base.httpRequest", "name": "Load Orders",
             "parameters": {"url": "https://shop.example.com/orders"}},
            {"id": "2", "type": "n8n-nodes-base.slack", "name": "Notify Ops", "parameters": {}},
        ],
        {"Load Orders": {"error": [[{"node": "Notify Ops", "type": "main", "index": 0}]]}},
    ),
    "malformed": "{ invalid json content",
}


@pytest.fixture
def workflows():
    return dict(WORKFLOWS)


@pytest.fixture
def github():
    return FakeGitHub()


@pytest.fixture
def settings():
    return Settings(webhook_secret="testsecret", rate_limit_per_minute=1000)


@pytest.fixture
def queue():
    return MemoryJobQueue(retry=RetryPolicy(attempts=3, backoff_s=0.01))


@pytest.fixture
def job():
    return ReviewJob(installation_id=123456, repo="octo/demo-repo", pr_number=42, sha="head456", head_branch="feature")

import base64
import logging
import os
import threading
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import certifi
import jwt  # PyJWT
import requests

from .config import Settings

log = logging.getLogger("flowlint.github")

DEFAULT_API = "https://api.github.com"
USER_AGENT = "flowlint-app/1.0"
RETRYABLE_STATUS = (429, 502, 503, 504, 522, 524)
MAX_RETRY_WAIT_S = 60


class GitHubAuthError(RuntimeError):
    """No usable GitHub credentials for the requested installation."""


def retry_after_seconds(value: Optional[str], default: int = 2) -> int:
    """``Retry-After`` is either delay-seconds or an HTTP-date."""
    if not value:
        return default
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if when is None:
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0, int((when - datetime.now(timezone.utc)).total_seconds()))


def _ca_bundle() -> str:
    return (
        os.getenv("REQUESTS_CA_BUNDLE")
        or os.getenv("SSL_CERT_FILE")
        or certifi.where()
    )


def _utcnow_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class GitHubClient:
    """Thin REST client for the endpoints the review pipeline needs.

    Transient failures (5xx gateway errors, 429, secondary and primary rate
    limits) are retried with bounded waits; anything else surfaces through
    ``raise_for_status()`` as ``requests.HTTPError``.
    """

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_API,
        timeout_s: float = 30,
        max_attempts: int = 5,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_attempts = max_attempts
        self._sleep = sleep
        self.session = session or requests.Session()
        self.session.verify = _ca_bundle()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": USER_AGENT,
        })

    # ---------------- transport ----------------

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        resp = None
        for attempt in range(self.max_attempts):
            started = time.monotonic()
            resp = self.session.request(method, url, timeout=self.timeout_s, **kwargs)
            wait = self._retry_wait(resp, attempt)
            if wait is None:
                break
            log.warning("GitHub %s %s -> %s, retrying in %.1fs (attempt %d/%d)",
                        method, url, resp.status_code, wait, attempt + 1, self.max_attempts)
            self._sleep(wait)

        if resp.status_code >= 400:
            log.warning("GitHub %s %s -> %s %s: %s", method, url, resp.status_code, resp.reason, (resp.text or "")[:800])
        else:
            log.debug("GitHub %s %s -> %s in %.0fms", method, url, resp.status_code, (time.monotonic() - started) * 1000)
        resp.raise_for_status()
        return resp

    def _retry_wait(self, resp: requests.Response, attempt: int) -> Optional[float]:
        """Seconds to wait before retrying ``resp``, or None if it is final."""
        if attempt + 1 >= self.max_attempts:
            return None
        status = resp.status_code
        headers = resp.headers or {}
        if status in RETRYABLE_STATUS:
            pause = retry_after_seconds(headers.get("Retry-After"))
            return float(min(MAX_RETRY_WAIT_S, pause * (attempt + 1)))
        if status == 403:
            if "secondary rate limit" in (resp.text or "").lower():
                return float(min(MAX_RETRY_WAIT_S, 2 * (attempt + 1)))
            if headers.get("X-RateLimit-Remaining") == "0":
                reset_header = headers.get("X-RateLimit-Reset", "")
                reset = int(reset_header) if reset_header.isdigit() else 0
                wait = reset - int(time.time())
                if 0 <= wait <= MAX_RETRY_WAIT_S:
                    return float(wait)
        return None

    def _paginate(self, path: str, params: Optional[Dict[str, Any]] = None, item_key: Optional[str] = None) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        url: Optional[str] = path
        query = dict(params or {}, per_page=100)
        while url:
            r = self._request("GET", url, params=query)
            body = r.json()
            items = body.get(item_key) if item_key else body
            out.extend(items or [])
            url = r.links.get("next", {}).get("url")
            # the next link already carries the query string
            query = None
        return out

    # ---------------- check runs ----------------

    def list_check_runs(self, owner: str, repo: str, ref: str, check_name: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"check_name": check_name} if check_name else {}
        return self._paginate(f"/repos/{owner}/{repo}/commits/{ref}/check-runs", params, item_key="check_runs")

    def create_check_run(
        self,
        owner: str,
        repo: str,
        name: str,
        head_sha: str,
        check_suite_id: Optional[int] = None,
        title: Optional[str] = None,
        summary: Optional[str] = None,
    ) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": name,
            "head_sha": head_sha,
            "status": "in_progress",
            "started_at": _utcnow_iso(),
        }
        if check_suite_id is not None:
            data["check_suite_id"] = check_suite_id
        if title and summary:
            data["output"] = {"title": title, "summary": summary}
        r = self._request("POST", f"/repos/{owner}/{repo}/check-runs", json=data)
        created = r.json()
        log.info("check run created id=%s repo=%s/%s sha=%s", created.get("id"), owner, repo, head_sha[:7])
        return created

    def update_check_run(self, owner: str, repo: str, check_run_id: int, **fields: Any) -> Dict[str, Any]:
        if fields.get("status") == "completed":
            fields.setdefault("completed_at", _utcnow_iso())
        r = self._request("PATCH", f"/repos/{owner}/{repo}/check-runs/{check_run_id}", json=fields)
        annotations = (fields.get("output") or {}).get("annotations") or []
        log.info("check run updated id=%s status=%s conclusion=%s annotations=%d",
                 check_run_id, fields.get("status"), fields.get("conclusion"), len(annotations))
        return r.json() if r.content else {}

    # ---------------- contents ----------------

    def list_pull_files(self, owner: str, repo: str, pr_number: int) -> List[Dict[str, Any]]:
        return self._paginate(f"/repos/{owner}/{repo}/pulls/{pr_number}/files")

    def get_blob_text(self, owner: str, repo: str, sha: str) -> str:
        blob = self._request("GET", f"/repos/{owner}/{repo}/git/blobs/{sha}").json()
        return _decode_content(blob)

    def get_contents_text(self, owner: str, repo: str, path: str, ref: str) -> Optional[str]:
        """Text of ``path`` at ``ref``; None if the path is missing or not a file."""
        try:
            data = self._request("GET", f"/repos/{owner}/{repo}/contents/{path}", params={"ref": ref}).json()
        except requests.HTTPError as e:
            if getattr(e.response, "status_code", 0) == 404:
                return None
            raise
        if not isinstance(data, dict) or not isinstance(data.get("content"), str):
            return None
        return _decode_content(data)


def _decode_content(data: Dict[str, Any]) -> str:
    content = data.get("content") or ""
    if data.get("encoding", "base64") != "base64":
        return content
    return base64.b64decode(content).decode("utf-8")


# ---------------- App authentication ----------------

class GitHubAppAuth:
    """Mints and caches installation tokens for a GitHub App."""

    # refresh this long before GitHub's stated expiry
    REFRESH_MARGIN_S = 300

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()
        self._tokens: Dict[int, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _private_key(self) -> str:
        s = self.settings
        if s.private_key_path:
            key = Path(s.private_key_path).read_text()
        elif s.private_key_b64:
            key = base64.b64decode(s.private_key_b64).decode("utf-8")
        else:
            key = s.private_key.replace("\\n", "\n").strip()
        if not key.startswith("-----BEGIN") or "PRIVATE KEY" not in key:
            raise GitHubAuthError("GITHUB_APP_PRIVATE_KEY[_PATH|_B64] is not a valid PEM private key")
        return key

    def app_jwt(self) -> str:
        if not self.settings.app_id:
            raise GitHubAuthError("GITHUB_APP_ID is missing")
        now = int(time.time())
        payload = {"iat": now - 60, "exp": now + 9 * 60, "iss": self.settings.app_id}
        token = jwt.encode(payload, self._private_key(), algorithm="RS256")
        return token.decode() if isinstance(token, (bytes, bytearray)) else token

    def installation_token(self, installation_id: int) -> str:
        if self.settings.explicit_token:
            return self.settings.explicit_token
        if not installation_id:
            raise GitHubAuthError("Missing installation_id and no GITHUB_TOKEN provided")
        with self._lock:
            cached = self._tokens.get(installation_id)
            if cached and cached[1] - self.REFRESH_MARGIN_S > time.time():
                return cached[0]
            url = f"{self.settings.github_api}/app/installations/{installation_id}/access_tokens"
            r = self.session.post(
                url,
                headers={"Authorization": f"Bearer {self.app_jwt()}", "Accept": "application/vnd.github+json"},
                timeout=self.settings.http_timeout_s,
                verify=_ca_bundle(),
            )
            if r.status_code >= 400:
                log.error("POST %s -> %s %s: %s", url, r.status_code, r.reason, r.text[:800])
            r.raise_for_status()
            body = r.json()
            # tokens live one hour
            expires = time.time() + 3600
            self._tokens[installation_id] = (body["token"], expires)
            return body["token"]


def client_factory(settings: Settings, auth: Optional[GitHubAppAuth] = None) -> Callable[[int], GitHubClient]:
    auth = auth or GitHubAppAuth(settings)

    def for_installation(installation_id: int) -> GitHubClient:
        return GitHubClient(
            auth.installation_token(installation_id),
            base_url=settings.github_api,
            timeout_s=settings.http_timeout_s,
        )

    return for_installation

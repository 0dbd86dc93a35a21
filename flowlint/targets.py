import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Literal, Sequence

log = logging.getLogger("flowlint.targets")

GitStatus = Literal["added", "modified", "removed", "renamed", "copied", "changed", "unchanged"]


def _closing_brace(pattern: str, start: int) -> int:
    depth = 0
    for j in range(start, len(pattern)):
        if pattern[j] == "{":
            depth += 1
        elif pattern[j] == "}":
            depth -= 1
            if depth == 0:
                return j
    return -1


def _alternatives(body: str) -> List[str]:
    """Split a brace body on its top-level commas."""
    parts, depth, last = [], 0, 0
    for j, c in enumerate(body):
        if c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
        elif c == "," and depth == 0:
            parts.append(body[last:j])
            last = j + 1
    parts.append(body[last:])
    return parts


def _translate(pattern: str) -> str:
    out = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif c == "*":
            out.append("[^/]*")
            i += 1
        elif c == "?":
            out.append("[^/]")
            i += 1
        elif c == "[":
            j = pattern.find("]", i + 2)
            if j == -1:
                out.append(re.escape(c))
                i += 1
            else:
                body = pattern[i + 1:j]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = j + 1
        elif c == "{":
            j = _closing_brace(pattern, i)
            alts = _alternatives(pattern[i + 1:j]) if j != -1 else []
            # "{x}" without a comma is literal
            if len(alts) < 2:
                out.append(re.escape(c))
                i += 1
            else:
                out.append("(?:" + "|".join(_translate(a) for a in alts) + ")")
                i = j + 1
        else:
            out.append(re.escape(c))
            i += 1
    return "".join(out)


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern:
    """Translate a path glob: ``*`` and ``?`` stay within one segment,
    ``**/`` spans zero or more directories, a trailing ``**`` spans the rest,
    ``{a,b}`` matches either alternative (nesting allowed)."""
    return re.compile(_translate(pattern) + r"\Z")


def glob_match(path: str, pattern: str) -> bool:
    return _compile(pattern).match(path) is not None


def matches_any(path: str, patterns: Sequence[str]) -> bool:
    return any(glob_match(path, p) for p in patterns)


def pick_targets(files: List[Dict], include: Sequence[str], ignore: Sequence[str]) -> List[Dict]:
    """
    Select the pull request files to lint:
    - exclude: removed files (nothing left to lint)
    - include: files matching at least one include glob and no ignore glob
    Order of the pull request file list is preserved.
    """
    out: List[Dict] = []
    for f in files:
        status: GitStatus = f.get("status", "modified")  # type: ignore
        if status == "removed":
            continue
        filename = f.get("filename")
        if not filename:
            continue
        normalized = filename.replace("\\", "/")
        if matches_any(normalized, include) and not matches_any(normalized, ignore):
            out.append(f)
    return out


@dataclass
class FetchResult:
    contents: Dict[str, str] = field(default_factory=dict)
    errors: List[Dict[str, str]] = field(default_factory=list)


def fetch_raw_files(client, owner: str, repo: str, targets: List[Dict], concurrency: int = 4) -> FetchResult:
    """Fetch target blobs with bounded parallelism; failures are collected, never raised."""

    def _fetch(f: Dict):
        name = f["filename"]
        sha = f.get("sha")
        if not sha:
            return name, None, "Missing SHA (file may be removed)"
        try:
            return name, client.get_blob_text(owner, repo, sha), None
        except Exception as e:
            log.warning("failed to fetch file filename=%s error=%s", name, e)
            return name, None, str(e) or e.__class__.__name__

    result = FetchResult()
    if not targets:
        return result
    with ThreadPoolExecutor(max_workers=max(1, min(concurrency, len(targets))), thread_name_prefix="fetch") as pool:
        for name, text, error in pool.map(_fetch, targets):
            if error is not None:
                result.errors.append({"filename": name, "error": error})
            else:
                result.contents[name] = text
    return result

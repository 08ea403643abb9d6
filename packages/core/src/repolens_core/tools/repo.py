"""Repository inspection tools: file reads, tree listing, text search and git diffs.

Every path argument goes through RepoSession.resolve, so nothing here can
touch a file outside the repository root.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import re
import shutil
from typing import TYPE_CHECKING

from repolens_core.errors import InvalidRefArgumentError
from repolens_core.tools.process import run_process, truncate

if TYPE_CHECKING:
    from repolens_core.cancel import CancelToken
    from repolens_core.session import RepoSession

logger = logging.getLogger(__name__)

MAX_TREE_FILES = 1000
DEFAULT_SEARCH_RESULTS = 50
SEARCH_TIMEOUT = 15
GIT_TIMEOUT = 15
MAX_DIFF_CHARS = 100_000

_SAFE_REF_RE = re.compile(r"^[a-zA-Z0-9._/\-~^:@{}]+$")
_DIFF_FILE_RE = re.compile(r"^diff --git ", re.MULTILINE)


def validate_ref(ref: str) -> str:
    if not ref or ref.startswith("-") or not _SAFE_REF_RE.match(ref):
        raise InvalidRefArgumentError(ref)
    return ref


def read_file(session: RepoSession, path: str, start_line: int | None = None, end_line: int | None = None) -> dict:
    full = session.resolve(path)
    if not full.is_file():
        raise FileNotFoundError(f"File not found: {path}")
    lines = full.read_text(encoding="utf-8", errors="replace").splitlines()
    start = max(1, start_line or 1)
    end = min(len(lines), end_line or len(lines))
    return {
        "path": session.relpath(full),
        "content": "\n".join(lines[start - 1 : end]),
        "startLine": start,
        "endLine": end,
        "totalLines": len(lines),
    }


def list_tree(session: RepoSession, max_depth: int | None = None, pattern: str | None = None) -> dict:
    files = session.list_files(max_depth=max_depth)
    if pattern:
        files = [f for f in files if fnmatch.fnmatch(f, pattern) or fnmatch.fnmatch(f.rsplit("/", 1)[-1], pattern)]
    return {
        "files": files[:MAX_TREE_FILES],
        "total": len(files),
        "truncated": len(files) > MAX_TREE_FILES,
    }


def _parse_rg_json(output: str, limit: int) -> list[dict]:
    matches = []
    for line in output.splitlines():
        try:
            record = json.loads(line)
        except ValueError:
            continue
        if record.get("type") != "match":
            continue
        data = record.get("data", {})
        path = data.get("path", {}).get("text", "")
        matches.append(
            {
                "file": path[2:] if path.startswith("./") else path,
                "line": data.get("line_number", 0),
                "text": data.get("lines", {}).get("text", "").rstrip("\n")[:300],
            }
        )
        if len(matches) >= limit:
            break
    return matches


def _parse_grep(output: str, limit: int) -> list[dict]:
    matches = []
    for line in output.splitlines():
        parts = line.split(":", 2)
        if len(parts) < 3 or not parts[1].isdigit():
            continue
        path = parts[0][2:] if parts[0].startswith("./") else parts[0]
        matches.append({"file": path, "line": int(parts[1]), "text": parts[2][:300]})
        if len(matches) >= limit:
            break
    return matches


async def search_text(
    session: RepoSession,
    pattern: str,
    glob: str | None = None,
    max_results: int = DEFAULT_SEARCH_RESULTS,
    token: CancelToken | None = None,
) -> dict:
    """Regex search with ripgrep, falling back to ``grep -rn`` when rg is missing."""
    cwd = str(session.root)
    if shutil.which("rg"):
        args = ["rg", "--json", "--max-count", str(max_results)]
        if glob:
            args += ["--glob", glob]
        args += ["-e", pattern, "--", "."]
        result = await run_process(args, cwd, SEARCH_TIMEOUT, token)
        matches = _parse_rg_json(result.stdout, max_results)
        engine = "rg"
    else:
        args = ["grep", "-rnE", "--exclude-dir=.git", "--exclude-dir=node_modules", "--exclude-dir=.venv"]
        if glob:
            args.append(f"--include={glob}")
        args += ["-e", pattern, "--", "."]
        result = await run_process(args, cwd, SEARCH_TIMEOUT, token)
        matches = _parse_grep(result.stdout, max_results)
        engine = "grep"

    response: dict = {"matches": matches, "total": len(matches), "engine": engine}
    if result.exit_code > 1:
        response["error"] = truncate(result.stderr.strip(), 500)
    if result.timed_out:
        response["warning"] = f"Search timed out after {SEARCH_TIMEOUT}s; results are partial"
    return response


async def _git(session: RepoSession, args: list[str], token: CancelToken | None) -> str:
    result = await run_process(["git", *args], str(session.root), GIT_TIMEOUT, token)
    if result.exit_code != 0:
        logger.debug("git %s failed: %s", " ".join(args), result.stderr.strip())
        return ""
    return result.stdout


async def git_diff(
    session: RepoSession,
    ref1: str | None = None,
    ref2: str | None = None,
    staged: bool = False,
    token: CancelToken | None = None,
) -> dict:
    """Unified diff between refs, of the index, or the most relevant default.

    With no refs and ``staged`` unset, the first non-empty of: unstaged
    changes, staged changes, HEAD~5..HEAD, HEAD~1..HEAD.
    """
    for ref in (ref1, ref2):
        if ref is not None:
            validate_ref(ref)

    if ref1:
        args = ["diff", ref1] + ([ref2] if ref2 else [])
        diff = await _git(session, args, token)
        source = f"{ref1}..{ref2}" if ref2 else ref1
    elif staged:
        diff = await _git(session, ["diff", "--cached"], token)
        source = "staged"
    else:
        diff, source = "", "none"
        for candidate, label in (
            (["diff"], "unstaged"),
            (["diff", "--cached"], "staged"),
            (["diff", "HEAD~5..HEAD"], "HEAD~5..HEAD"),
            (["diff", "HEAD~1..HEAD"], "HEAD~1..HEAD"),
        ):
            diff = await _git(session, candidate, token)
            if diff.strip():
                source = label
                break

    return {
        "diff": truncate(diff, MAX_DIFF_CHARS),
        "filesChanged": len(_DIFF_FILE_RE.findall(diff)),
        "source": source,
    }


def changed_files(diff: str) -> list[str]:
    """Paths on the ``b/`` side of every ``diff --git`` header."""
    files = []
    for line in diff.splitlines():
        if line.startswith("diff --git "):
            _, _, b_side = line.partition(" b/")
            if b_side and b_side not in files:
                files.append(b_side)
    return files

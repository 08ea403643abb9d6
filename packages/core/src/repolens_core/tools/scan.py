"""External pattern scan (semgrep).

The scanner is an optional collaborator: when it is missing, crashes or
overruns its deadline the review continues with zero results and a warning.
The deadline is enforced independently of the run's cancel token.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
from typing import TYPE_CHECKING

from repolens_core.errors import (
    ExternalScanTimeoutError,
    ExternalScanUnavailableError,
    PathTraversalError,
    ToolInputError,
)
from repolens_core.tools.process import run_process

if TYPE_CHECKING:
    from repolens_core.cancel import CancelToken
    from repolens_core.session import RepoSession

logger = logging.getLogger(__name__)

DEFAULT_SCAN_TIMEOUT = 30
DEFAULT_CONFIG = "auto"
MAX_PATTERN_LENGTH = 500
MAX_RESULTS = 100

_CONFIG_RE = re.compile(r"^[a-zA-Z0-9_/.-]+$")


def _build_args(session: RepoSession, config: str | None, pattern: str | None) -> list[str]:
    args = ["semgrep", "scan", "--json", "--quiet", "--no-git-ignore"]
    if pattern:
        if len(pattern) > MAX_PATTERN_LENGTH:
            raise ToolInputError(f"Pattern exceeds {MAX_PATTERN_LENGTH} characters")
        args += ["--lang", "python", "--pattern", pattern]
    else:
        config = config or DEFAULT_CONFIG
        if not _CONFIG_RE.match(config) or config.startswith("-"):
            raise ToolInputError(f"Invalid semgrep config: {config!r}")
        args += ["--config", config]
    for excluded in session.exclude:
        args += ["--exclude", excluded]
    return args + [str(session.root)]


def _normalise(raw: dict, session: RepoSession) -> list[dict]:
    results = []
    for item in raw.get("results", [])[:MAX_RESULTS]:
        path = item.get("path", "")
        try:
            path = session.relpath(path)
        except PathTraversalError:
            logger.debug("semgrep reported a path outside the repository: %s", path)
        extra = item.get("extra", {})
        results.append(
            {
                "ruleId": item.get("check_id", ""),
                "file": path,
                "startLine": item.get("start", {}).get("line", 0),
                "endLine": item.get("end", {}).get("line", 0),
                "message": extra.get("message", ""),
                "severity": extra.get("severity", "INFO"),
                "snippet": (extra.get("lines") or "")[:300],
            }
        )
    return results


async def _run_semgrep(args: list[str], cwd: str, timeout: float, token: CancelToken | None) -> dict:
    if shutil.which("semgrep") is None:
        raise ExternalScanUnavailableError("semgrep is not installed")
    try:
        result = await run_process(args, cwd, timeout, token)
    except FileNotFoundError as e:
        raise ExternalScanUnavailableError("semgrep is not installed") from e
    if result.timed_out:
        raise ExternalScanTimeoutError(f"semgrep timed out after {timeout:.0f}s")
    try:
        return json.loads(result.stdout or "{}")
    except ValueError as e:
        raise ExternalScanUnavailableError(f"semgrep produced unreadable output (exit {result.exit_code})") from e


async def pattern_scan(
    session: RepoSession,
    config: str | None = None,
    pattern: str | None = None,
    timeout: float = DEFAULT_SCAN_TIMEOUT,
    token: CancelToken | None = None,
) -> dict:
    """Run semgrep and return ``{"results": [...], "warning"?: str}``.

    Invalid arguments raise ToolInputError; scanner failures never raise.
    """
    args = _build_args(session, config, pattern)
    try:
        raw = await _run_semgrep(args, str(session.root), timeout, token)
    except (ExternalScanTimeoutError, ExternalScanUnavailableError) as e:
        logger.warning("Pattern scan skipped: %s", e)
        return {"results": [], "warning": str(e)}

    results = _normalise(raw, session)
    response: dict = {"results": results, "total": len(raw.get("results", []))}
    errors = raw.get("errors") or []
    if errors:
        response["warning"] = f"semgrep reported {len(errors)} error(s)"
    return response

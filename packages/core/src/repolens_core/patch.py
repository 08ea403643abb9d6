"""Patch engine: propose, validate and apply single-file unified diffs.

A proposed patch is one contiguous hunk covering the first to the last
changed line, with three lines of context either side. Hunks are applied
with whitespace-trimmed context matching, so re-indented or trailing-space
differences do not fail a patch, but any other mismatch does.

Applying never reuses a validation result: the stored diff is parsed and
applied against the file as it is on disk at apply time.
"""

from __future__ import annotations

import ast
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from repolens_core.errors import (
    ParseFailureError,
    PatchContextMismatchError,
    PatchSyntaxCheckFailedError,
    PathTraversalError,
)
from repolens_core.utils.code import is_source_file

if TYPE_CHECKING:
    from repolens_core.session import RepoSession
    from repolens_store.base import BaseStore
    from repolens_store.models import Patch

logger = logging.getLogger(__name__)

CONTEXT_LINES = 3

_HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


@dataclass
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: list[tuple[str, str]] = field(default_factory=list)  # (" " | "-" | "+", text)


@dataclass
class ParsedDiff:
    file_path: str
    hunks: list[Hunk]


@dataclass
class PatchValidation:
    validated: bool
    message: str


@dataclass
class PatchApplyResult:
    success: bool
    message: str


# ---------------------------------------------------------------------------
# Diff construction and parsing
# ---------------------------------------------------------------------------


def make_unified_diff(file_path: str, old: str, new: str, context: int = CONTEXT_LINES) -> str:
    """Single-hunk diff from the first to the last differing line."""
    old_lines = old.splitlines()
    new_lines = new.splitlines()
    if old_lines == new_lines:
        return ""

    prefix = 0
    while prefix < min(len(old_lines), len(new_lines)) and old_lines[prefix] == new_lines[prefix]:
        prefix += 1
    suffix = 0
    while (
        suffix < min(len(old_lines), len(new_lines)) - prefix
        and old_lines[len(old_lines) - 1 - suffix] == new_lines[len(new_lines) - 1 - suffix]
    ):
        suffix += 1

    old_end = len(old_lines) - suffix
    new_end = len(new_lines) - suffix
    lead_start = max(0, prefix - context)
    tail = old_lines[old_end : min(len(old_lines), old_end + context)]

    body = [" " + line for line in old_lines[lead_start:prefix]]
    body += ["-" + line for line in old_lines[prefix:old_end]]
    body += ["+" + line for line in new_lines[prefix:new_end]]
    body += [" " + line for line in tail]

    old_count = (prefix - lead_start) + (old_end - prefix) + len(tail)
    new_count = (prefix - lead_start) + (new_end - prefix) + len(tail)
    old_start = lead_start + 1 if old_count else lead_start
    new_start = lead_start + 1 if new_count else lead_start

    header = [
        f"--- a/{file_path}",
        f"+++ b/{file_path}",
        f"@@ -{old_start},{old_count} +{new_start},{new_count} @@",
    ]
    return "\n".join(header + body) + "\n"


def parse_unified_diff(diff: str) -> ParsedDiff:
    file_path = ""
    hunks: list[Hunk] = []
    current: Hunk | None = None
    for line in diff.splitlines():
        if line.startswith("--- ") and current is None:
            if not file_path:
                file_path = _strip_prefix(line[4:], "a/")
            continue
        if line.startswith("+++ ") and current is None:
            target = _strip_prefix(line[4:], "b/")
            if target != "/dev/null":
                file_path = target
            continue
        match = _HUNK_HEADER_RE.match(line)
        if match:
            old_start, old_count, new_start, new_count = match.groups()
            current = Hunk(
                old_start=int(old_start),
                old_count=int(old_count) if old_count is not None else 1,
                new_start=int(new_start),
                new_count=int(new_count) if new_count is not None else 1,
            )
            hunks.append(current)
            continue
        if current is None or line.startswith("\\"):
            continue
        op, text = (line[0], line[1:]) if line else (" ", "")
        if op in (" ", "-", "+"):
            current.lines.append((op, text))

    if not file_path or not hunks:
        raise ParseFailureError("Not a unified diff: missing file header or hunks")
    return ParsedDiff(file_path=file_path, hunks=hunks)


def _strip_prefix(path: str, prefix: str) -> str:
    path = path.split("\t", 1)[0].strip()
    return path[len(prefix) :] if path.startswith(prefix) else path


def apply_hunks(content: str, hunks: list[Hunk]) -> str:
    """Apply hunks in order, tracking the line offset introduced by earlier ones."""
    lines = content.splitlines()
    trailing_newline = content.endswith("\n")
    offset = 0
    for number, hunk in enumerate(hunks, start=1):
        start = (hunk.old_start - 1 if hunk.old_count else hunk.old_start) + offset
        if start < 0 or start > len(lines):
            raise PatchContextMismatchError(f"Hunk {number} starts outside the file (line {hunk.old_start})")

        position = start
        replacement: list[str] = []
        for op, text in hunk.lines:
            if op == "+":
                replacement.append(text)
                continue
            if position >= len(lines):
                raise PatchContextMismatchError(f"Hunk {number} runs past the end of the file")
            if lines[position].strip() != text.strip():
                raise PatchContextMismatchError(
                    f"Hunk {number} context mismatch at line {position + 1}: "
                    f"expected {text.strip()!r}, found {lines[position].strip()!r}"
                )
            if op == " ":
                replacement.append(lines[position])
            position += 1

        consumed = position - start
        lines[start:position] = replacement
        offset += len(replacement) - consumed

    result = "\n".join(lines)
    return result + "\n" if trailing_newline and lines else result


def check_syntax(file_path: str, content: str) -> None:
    if not is_source_file(file_path):
        return
    try:
        ast.parse(content, filename=file_path)
    except SyntaxError as e:
        raise PatchSyntaxCheckFailedError(f"Patched {file_path} is not valid Python: line {e.lineno}: {e.msg}") from e


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class PatchEngine:
    """Propose/validate/apply bound to one repository session and store."""

    def __init__(
        self,
        session: RepoSession,
        store: BaseStore,
        on_event: Callable[[str, str, dict], None] | None = None,
    ):
        self.session = session
        self.store = store
        self._on_event = on_event

    def _event(self, run_id: str, type: str, data: dict) -> None:
        if self._on_event is not None:
            self._on_event(run_id, type, data)
        else:
            self.store.insert_event(run_id, type, data=data)

    def propose(self, finding_id: str, file_path: str, original_code: str, replacement_code: str) -> Patch:
        finding = self.store.get_finding(finding_id)
        if finding is None:
            raise ValueError(f"Unknown finding: {finding_id}")
        rel = self.session.relpath(file_path)
        content = self.session.read_text(rel)
        if original_code not in content:
            raise PatchContextMismatchError(f"original_code was not found in {rel}")
        patched = content.replace(original_code, replacement_code, 1)
        diff = make_unified_diff(rel, content, patched)
        if not diff:
            raise ValueError("Replacement is identical to the original code")

        patch = self.store.insert_patch(finding.run_id, finding_id, diff)
        self._event(finding.run_id, "patch_proposed", {"patch_id": patch.id, "finding_id": finding_id, "file": rel})
        logger.info("Proposed patch %s for %s", patch.id, rel)
        return patch

    def _dry_run(self, diff: str) -> tuple[str, str]:
        parsed = parse_unified_diff(diff)
        rel = self.session.relpath(parsed.file_path)
        content = self.session.read_text(rel)
        patched = apply_hunks(content, parsed.hunks)
        check_syntax(rel, patched)
        return rel, patched

    def validate(self, patch_id: str) -> PatchValidation:
        patch = self._require(patch_id)
        try:
            rel, _ = self._dry_run(patch.diff)
            result = PatchValidation(True, f"Patch applies cleanly to {rel}")
        except (
            ParseFailureError,
            PatchContextMismatchError,
            PatchSyntaxCheckFailedError,
            PathTraversalError,
            OSError,
        ) as e:
            result = PatchValidation(False, str(e))

        self.store.update_patch_validation(patch_id, result.validated, result.message)
        self._event(
            patch.run_id,
            "patch_validated",
            {"patch_id": patch_id, "validated": result.validated, "message": result.message},
        )
        return result

    def apply(self, patch_id: str) -> PatchApplyResult:
        patch = self._require(patch_id)
        if not patch.validated:
            return PatchApplyResult(False, "Patch must be validated before it can be applied")
        try:
            rel, patched = self._dry_run(patch.diff)
            self.session.resolve(rel).write_text(patched, encoding="utf-8")
        except (
            ParseFailureError,
            PatchContextMismatchError,
            PatchSyntaxCheckFailedError,
            PathTraversalError,
            OSError,
        ) as e:
            logger.warning("Patch %s no longer applies: %s", patch_id, e)
            return PatchApplyResult(False, f"Patch no longer applies: {e}")

        self.store.insert_user_action(patch.run_id, "apply_patch", finding_id=patch.finding_id, patch_id=patch_id)
        self._event(patch.run_id, "patch_applied", {"patch_id": patch_id, "file": rel})
        return PatchApplyResult(True, f"Applied patch to {rel}")

    def _require(self, patch_id: str) -> Patch:
        patch = self.store.get_patch(patch_id)
        if patch is None:
            raise ValueError(f"Unknown patch: {patch_id}")
        return patch

"""Opening-prompt context for the investigators.

The orchestrator collects repository signals once per run; every
investigator receives the same rendered context. Everything that reaches the
prompt from the repository or from earlier model output is passed through
``sanitize_for_prompt`` first, so it cannot close our own tags or smuggle
control characters into the conversation.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from repolens_core.graph.impact import CriticalFile, ImpactedFile
    from repolens_store.models import Finding

logger = logging.getLogger(__name__)

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_TAG_RE = re.compile(r"<(/?)([A-Za-z_][A-Za-z0-9_-]*)\s*>")

# Caps the file tree at 300 paths; beyond that paths add tokens, not signal.
_TREE_LINE_LIMIT = 300
_DIFF_CHAR_LIMIT = 30_000
_SCAN_RESULT_LIMIT = 50
_KNOWN_FINDING_LIMIT = 100

# Hard ceiling on the rendered context. When breached, sections are dropped
# lowest priority first until it fits.
MAX_CONTEXT_CHARS = 60_000


def sanitize_for_prompt(text: str | None, max_length: int = 2000) -> str:
    """Strip control characters, neutralise tag-like markup and cap length."""
    if not text:
        return ""
    cleaned = _CONTROL_CHARS_RE.sub("", text)
    cleaned = _TAG_RE.sub(lambda m: f"‹{m.group(1)}{m.group(2)}›", cleaned)
    if len(cleaned) > max_length:
        cleaned = cleaned[:max_length] + "... [truncated]"
    return cleaned


@dataclass
class ContextSection:
    title: str
    body: str
    priority: int  # higher survives longer

    def render(self) -> str:
        return f"## {self.title}\n{self.body}"


@dataclass
class ReviewContext:
    """Repository signals gathered before the investigators start."""

    repo_name: str
    mode: str
    file_tree: list[str] = field(default_factory=list)
    import_cycles: list[list[str]] = field(default_factory=list)
    scan_results: list[dict] = field(default_factory=list)
    diff: str = ""
    critical_files: list[CriticalFile] = field(default_factory=list)
    blast_radius: dict[str, list[ImpactedFile]] = field(default_factory=dict)
    known_findings: list[Finding] = field(default_factory=list)

    def sections(self) -> list[ContextSection]:
        sections = []
        if self.diff:
            sections.append(
                ContextSection("Changes under review", _fenced(sanitize_for_prompt(self.diff, _DIFF_CHAR_LIMIT)), 100)
            )
        if self.known_findings:
            sections.append(ContextSection("Known findings (already reported, skip these)", self._known(), 90))
        if self.scan_results:
            sections.append(ContextSection("Pattern scan results", self._scan(), 70))
        if self.critical_files:
            lines = [
                f"- {c.file} (score {c.score}, fan-in {c.fan_in}, fan-out {c.fan_out}): {c.reason}"
                for c in self.critical_files
            ]
            sections.append(ContextSection("Most critical files", "\n".join(lines), 60))
        if self.import_cycles:
            lines = [" -> ".join(cycle + cycle[:1]) for cycle in self.import_cycles]
            sections.append(ContextSection("Import cycles", "\n".join(lines), 50))
        if self.blast_radius:
            sections.append(ContextSection("Blast radius of changed files", self._blast(), 40))
        if self.file_tree:
            sections.append(ContextSection("File tree", self._tree(), 30))
        return sections

    def _known(self) -> str:
        lines = [
            f"- [{f.severity}] {sanitize_for_prompt(f.title, 200)} ({f.agent}"
            + (f", {f.evidence[0].file_path}:{f.evidence[0].start_line})" if f.evidence else ")")
            for f in self.known_findings[:_KNOWN_FINDING_LIMIT]
        ]
        return "\n".join(lines)

    def _scan(self) -> str:
        lines = [
            f"- {r.get('file')}:{r.get('startLine')} [{r.get('severity')}] {r.get('ruleId')}: "
            + sanitize_for_prompt(r.get("message"), 300)
            for r in self.scan_results[:_SCAN_RESULT_LIMIT]
        ]
        if len(self.scan_results) > _SCAN_RESULT_LIMIT:
            lines.append(f"... [{len(self.scan_results) - _SCAN_RESULT_LIMIT} more results not shown]")
        return "\n".join(lines)

    def _blast(self) -> str:
        lines = []
        for changed, impacted in self.blast_radius.items():
            if not impacted:
                lines.append(f"- {changed}: no dependents")
                continue
            nearest = ", ".join(f"{i.file} (d{i.distance})" for i in impacted[:10])
            lines.append(f"- {changed}: {len(impacted)} dependent file(s): {nearest}")
        return "\n".join(lines)

    def _tree(self) -> str:
        tree = self.file_tree
        if len(tree) > _TREE_LINE_LIMIT:
            overflow = len(tree) - _TREE_LINE_LIMIT
            return "\n".join(tree[:_TREE_LINE_LIMIT]) + f"\n... [{overflow} more files not shown]"
        return "\n".join(tree)


def _fenced(text: str) -> str:
    return f"```diff\n{text}\n```"


def build_context_section(context: ReviewContext, max_chars: int = MAX_CONTEXT_CHARS) -> str:
    """Render the context, dropping the lowest-priority sections when over budget."""
    sections = context.sections()
    rendered = [s.render() for s in sections]
    while sections and sum(len(r) for r in rendered) > max_chars:
        lowest = min(range(len(sections)), key=lambda i: sections[i].priority)
        logger.debug("Context over budget, dropping section %r", sections[lowest].title)
        del sections[lowest]
        del rendered[lowest]
    return "\n\n".join(rendered)


def build_investigation_prompt(context: ReviewContext, max_chars: int = MAX_CONTEXT_CHARS) -> str:
    scope = "the changes below and everything they affect" if context.mode == "diff" else "the whole repository"
    body = build_context_section(context, max_chars)
    return f"""Review `{sanitize_for_prompt(context.repo_name, 200)}`. Scope: {scope}.

{body}"""


def build_challenge_prompt(findings: list[Finding]) -> str:
    lines = []
    for number, f in enumerate(findings, start=1):
        location = f"{f.evidence[0].file_path}:{f.evidence[0].start_line}" if f.evidence else "no evidence"
        lines.append(
            f"{number}. id={f.id} [{f.severity.upper()}] {sanitize_for_prompt(f.title, 300)} "
            f"({f.agent}, confidence {f.confidence:.2f}, {location})\n"
            f"   {sanitize_for_prompt(f.description, 1000)}"
        )
    return "Findings to challenge:\n\n" + "\n".join(lines)


def build_explain_prompt(findings: list[Finding]) -> str:
    lines = []
    for f in findings:
        location = (
            f"{f.evidence[0].file_path}:{f.evidence[0].start_line}-{f.evidence[0].end_line}" if f.evidence else "n/a"
        )
        lines.append(
            f"- id={f.id} [{f.severity}] {sanitize_for_prompt(f.title, 300)} at {location}\n"
            f"  {sanitize_for_prompt(f.description, 1000)}"
        )
    return "Findings to explain:\n\n" + "\n".join(lines)

"""Input schemas for every tool exposed to agents and protocol clients.

The JSON schema handed to the model is generated from these models, and
the same models validate the model's arguments before a handler runs.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ToolInput(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ReadFileInput(ToolInput):
    path: str = Field(..., description="File path relative to the repository root")
    start_line: Optional[int] = Field(default=None, ge=1, description="First line to return (1-based)")
    end_line: Optional[int] = Field(default=None, ge=1, description="Last line to return (inclusive)")


class ListTreeInput(ToolInput):
    max_depth: Optional[int] = Field(default=None, ge=0, description="Maximum directory depth")
    pattern: Optional[str] = Field(default=None, description="Glob filter, e.g. '*.py' or 'app/**/models.py'")


class SearchTextInput(ToolInput):
    pattern: str = Field(..., min_length=1, description="Regular expression to search for")
    glob: Optional[str] = Field(default=None, description="Restrict the search to files matching this glob")
    max_results: int = Field(default=50, ge=1, le=500, description="Maximum number of matches")


class DiffInput(ToolInput):
    ref1: Optional[str] = Field(default=None, description="Base ref (commit, branch or tag)")
    ref2: Optional[str] = Field(default=None, description="Compare ref; defaults to the working tree")
    staged: bool = Field(default=False, description="Diff the index instead of the working tree")


class CallGraphInput(ToolInput):
    subdirectory: Optional[str] = Field(default=None, description="Only report edges touching this directory")


class SymbolLookupInput(ToolInput):
    name: str = Field(..., min_length=1, description="Symbol name, e.g. 'load_config' or 'UserService'")
    file_hint: Optional[str] = Field(default=None, description="File to search first")


class ImpactAnalysisInput(ToolInput):
    file: str = Field(..., description="File whose blast radius to compute")
    max_depth: int = Field(default=3, ge=0, le=10, description="Maximum number of hops")


class ImportGraphInput(ToolInput):
    pass


class CriticalFilesInput(ToolInput):
    limit: int = Field(default=20, ge=1, le=200, description="Number of files to return")


class PatternScanInput(ToolInput):
    config: Optional[str] = Field(default=None, description="Semgrep config, e.g. 'p/python' or 'auto'")
    pattern: Optional[str] = Field(default=None, description="Ad-hoc semgrep pattern (overrides config)")


class ExecCommandInput(ToolInput):
    command: str = Field(..., min_length=1, description="Read-only shell command, e.g. 'git log --oneline -20'")
    timeout: Optional[float] = Field(
        default=None, gt=0, le=60, description="Seconds before the command is killed (defaults to exec_timeout)"
    )


class WebSearchInput(ToolInput):
    query: str = Field(..., min_length=1, description="Search query")
    count: int = Field(default=5, ge=1, le=10, description="Number of results")


class ProposePatchInput(ToolInput):
    finding_id: str = Field(..., description="Finding the patch fixes")
    file_path: str = Field(..., description="File to change")
    original_code: str = Field(..., min_length=1, description="Exact code to replace, copied from the file")
    replacement_code: str = Field(..., description="Code to put in its place")


class PatchIdInput(ToolInput):
    patch_id: str = Field(..., description="Patch id returned by propose_patch")

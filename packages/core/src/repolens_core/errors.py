"""Exception taxonomy for repolens.

Tool handlers raise these; the tool router turns them into error results fed
back to the agent, while direct callers (CLI, protocol server) see them as
ordinary exceptions.
"""

from __future__ import annotations


class RepolensError(Exception):
    """Base class for every error raised deliberately by repolens."""


class PathTraversalError(RepolensError):
    """A path argument resolves outside the repository root."""

    def __init__(self, path: str):
        super().__init__(f"Path escapes the repository root: {path}")
        self.path = path


class InvalidRefArgumentError(RepolensError):
    """A git ref contains unsafe characters or looks like a flag."""

    def __init__(self, ref: str):
        super().__init__(f"Invalid git ref: {ref!r}")
        self.ref = ref


class ToolNotAllowlistedError(RepolensError):
    """A shell command, subcommand or construct is not permitted."""


class ParseFailureError(RepolensError):
    """Source, diff or model output could not be parsed."""


class PatchContextMismatchError(RepolensError):
    """A hunk's context does not match the current file content."""


class PatchSyntaxCheckFailedError(RepolensError):
    """The patched content is not syntactically valid."""


class ModelAPIError(RepolensError):
    """The model provider kept failing after all retries."""


class RunCancelledError(RepolensError):
    """The run's cancellation token fired."""

    def __init__(self, reason: str = "Review cancelled by user"):
        super().__init__(reason)
        self.reason = reason


class ExternalScanTimeoutError(RepolensError):
    """The external pattern scanner exceeded its deadline and was killed."""


class ExternalScanUnavailableError(RepolensError):
    """The external pattern scanner is not installed or failed to start."""


class UnknownToolError(RepolensError):
    """The requested tool name is not registered."""

    def __init__(self, name: str):
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class ToolInputError(RepolensError):
    """Tool arguments failed schema validation."""

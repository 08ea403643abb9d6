"""Sandboxed execution of read-only shell commands.

A command is accepted only when every stage of its pipeline starts with an
allowlisted program and none of them can write: no redirection, no command
chaining or substitution, no mutating git subcommands, no in-place edits, and
no options or sed/awk programs that write files or start other programs.
"""

from __future__ import annotations

import logging
import os
import shlex
from typing import TYPE_CHECKING

from repolens_core.errors import ToolNotAllowlistedError
from repolens_core.tools.process import run_shell, truncate

if TYPE_CHECKING:
    from repolens_core.cancel import CancelToken
    from repolens_core.session import RepoSession

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10
MAX_TIMEOUT = 60

ALLOWED_COMMANDS = frozenset(
    {
        "wc", "find", "ls", "cat", "head", "tail", "grep", "rg", "git", "du", "file",
        "stat", "sort", "uniq", "tr", "cut", "awk", "sed", "tree", "diff",
    }
)  # fmt: skip

BLOCKED_GIT_SUBCOMMANDS = frozenset(
    {
        "push", "commit", "merge", "rebase", "reset", "checkout", "switch", "restore", "branch",
        "tag", "stash", "cherry-pick", "revert", "clean", "gc", "prune", "rm", "mv", "add",
        "apply", "am", "pull", "fetch", "clone", "init", "config", "worktree", "submodule",
        "format-patch", "bundle", "update-ref", "update-index", "symbolic-ref", "notes", "replace",
        "filter-branch", "reflog", "bisect", "repack", "pack-refs", "maintenance", "difftool",
        "mergetool", "send-email", "instaweb", "daemon", "credential",
    }
)  # fmt: skip

WRITE_UTILITIES = frozenset({"rm", "mv", "cp", "tee", "dd", "chmod", "chown", "truncate", "install"})

_FIND_WRITE_ACTIONS = ("-delete", "-exec", "-execdir", "-ok", "-okdir", "-fprint", "-fls")

# uniq options that consume the following argument
_UNIQ_VALUE_OPTIONS = frozenset({"-f", "-s", "-w"})


def _is_in_place_flag(arg: str) -> bool:
    if arg.startswith("--"):
        return arg.startswith("--in-place")
    return arg.startswith("-") and "i" in arg[1:]


def _skip_delimited(script: str, i: int, delim: str) -> int:
    """Return the index just past the next unescaped ``delim`` at or after ``i``."""
    while i < len(script):
        if script[i] == "\\":
            i += 2
            continue
        if script[i] == delim:
            return i + 1
        i += 1
    return i


def _sed_script_writes(script: str) -> bool:
    """True when a sed script uses a command or flag that writes files or runs programs."""
    i, n = 0, len(script)
    while i < n:
        ch = script[i]
        if ch in " \t\n;{}!0123456789$,~+":
            i += 1
            continue
        if ch == "/":
            i = _skip_delimited(script, i + 1, "/")
            continue
        if ch == "\\" and i + 1 < n:
            i = _skip_delimited(script, i + 2, script[i + 1])
            continue
        if ch in "wWe":
            return True
        if ch in "sy" and i + 1 < n:
            delim = script[i + 1]
            i = _skip_delimited(script, i + 2, delim)
            i = _skip_delimited(script, i, delim)
            if ch == "s":
                start = i
                while i < n and script[i] not in ";}\n":
                    i += 1
                if any(flag in "we" for flag in script[start:i]):
                    return True
            continue
        if ch in "aicbtT:rR":
            # text, label or file name runs to the end of the line
            while i < n and script[i] != "\n":
                if ch in "btT" and script[i] == ";":
                    break
                i += 1
            continue
        i += 1
    return False


def _sed_scripts(args: list[str]) -> list[str]:
    """Collect the script expressions of a sed invocation."""
    scripts: list[str] = []
    positional: list[str] = []
    it = iter(args)
    for arg in it:
        if arg in ("--expression", "--file") or arg.startswith(("--expression=", "--file=")):
            if arg.startswith("--file"):
                raise ToolNotAllowlistedError("sed scripts read from files are not allowed")
            scripts.append(arg.split("=", 1)[1] if "=" in arg else next(it, ""))
        elif arg.startswith("-") and not arg.startswith("--") and len(arg) > 1:
            # short options cluster, e.g. -ne 'p'
            for pos, flag in enumerate(arg[1:], start=1):
                if flag == "f":
                    raise ToolNotAllowlistedError("sed scripts read from files are not allowed")
                if flag == "e":
                    rest = arg[pos + 1 :]
                    scripts.append(rest if rest else next(it, ""))
                    break
        elif not arg.startswith("-"):
            positional.append(arg)
    if not scripts and positional:
        scripts.append(positional[0])
    return scripts


def _uniq_positionals(args: list[str]) -> int:
    count = 0
    skip = False
    for arg in args:
        if skip:
            skip = False
        elif arg in _UNIQ_VALUE_OPTIONS:
            skip = True
        elif arg == "-" or not arg.startswith("-"):
            count += 1
    return count


def _tokenize(command: str) -> list[str]:
    lexer = shlex.shlex(command, posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    try:
        return list(lexer)
    except ValueError as e:
        raise ToolNotAllowlistedError(f"Cannot parse command: {e}") from e


def _check_stage(stage: list[str], position: int) -> None:
    program = os.path.basename(stage[0])
    if position > 0 and program in WRITE_UTILITIES:
        raise ToolNotAllowlistedError(f"Piping into '{program}' is not allowed")
    if program not in ALLOWED_COMMANDS:
        raise ToolNotAllowlistedError(
            f"Command '{program}' is not allowlisted. Allowed: {', '.join(sorted(ALLOWED_COMMANDS))}"
        )

    args = stage[1:]
    if program == "sed":
        if any(_is_in_place_flag(a) for a in args):
            raise ToolNotAllowlistedError("'sed -i' edits files in place and is not allowed")
        if any(_sed_script_writes(s) for s in _sed_scripts(args)):
            raise ToolNotAllowlistedError("sed commands that write files or run programs are not allowed")
    if program == "find" and any(a.startswith(_FIND_WRITE_ACTIONS) for a in args):
        raise ToolNotAllowlistedError("find actions that delete, write or execute are not allowed")
    if program == "sort" and any(
        a == "-o" or a.startswith(("--output", "--compress-program")) for a in args
    ):
        raise ToolNotAllowlistedError("'sort -o' and '--compress-program' are not allowed")
    if program == "rg" and any(a.startswith("--pre") for a in args):
        raise ToolNotAllowlistedError("'rg --pre' runs a preprocessor program and is not allowed")
    if program == "tree" and any(a.startswith("-o") for a in args):
        raise ToolNotAllowlistedError("'tree -o' writes files and is not allowed")
    if program == "uniq" and _uniq_positionals(args) > 1:
        raise ToolNotAllowlistedError("'uniq' with an output file is not allowed")
    if program == "file" and any(a in ("-C", "--compile") for a in args):
        raise ToolNotAllowlistedError("'file -C' writes files and is not allowed")

    if program == "git":
        subcommand = next((a for a in args if not a.startswith("-")), None)
        leading = args[: args.index(subcommand)] if subcommand else args
        if any(a in ("-c", "-C") or a.startswith("--exec-path") for a in leading):
            raise ToolNotAllowlistedError("git global options are not allowed")
        if any(a.startswith("--output") for a in args):
            raise ToolNotAllowlistedError("'git --output' writes files and is not allowed")
        if any(a == "-O" or a.startswith(("--open-files-in-pager", "--ext-diff")) for a in args):
            raise ToolNotAllowlistedError("git options that run external programs are not allowed")
        if subcommand in BLOCKED_GIT_SUBCOMMANDS:
            raise ToolNotAllowlistedError(f"'git {subcommand}' modifies repository state and is not allowed")
    if program == "awk":
        if any(a in ("-f", "--file") or a.startswith("--file=") for a in args):
            raise ToolNotAllowlistedError("awk programs read from files are not allowed")
        if any("system" in a or "getline" in a or ">" in a or "|" in a for a in args):
            raise ToolNotAllowlistedError("awk programs may not run commands or write files")


def validate_command(command: str) -> list[list[str]]:
    """Split a command into pipeline stages, raising if any part is unsafe."""
    if not command.strip():
        raise ToolNotAllowlistedError("Empty command")
    if "`" in command or "$(" in command or "${" in command:
        raise ToolNotAllowlistedError("Command substitution is not allowed")
    if "\n" in command or "\r" in command:
        raise ToolNotAllowlistedError("Multi-line commands are not allowed")

    stages: list[list[str]] = [[]]
    for token in _tokenize(command):
        if token and all(ch in "|&;<>()" for ch in token):
            if token == "|":
                stages.append([])
                continue
            if ">" in token:
                raise ToolNotAllowlistedError("Output redirection is not allowed")
            raise ToolNotAllowlistedError(f"Shell operator '{token}' is not allowed")
        stages[-1].append(token)

    if any(not stage for stage in stages):
        raise ToolNotAllowlistedError("Empty pipeline stage")
    for position, stage in enumerate(stages):
        _check_stage(stage, position)
    return stages


async def exec_command(
    session: RepoSession,
    command: str,
    timeout: float = DEFAULT_TIMEOUT,
    token: CancelToken | None = None,
) -> dict:
    validate_command(command)
    timeout = min(max(timeout, 1), MAX_TIMEOUT)
    logger.debug("exec: %s", command)
    result = await run_shell(command, str(session.root), timeout, token)
    response = {
        "stdout": truncate(result.stdout),
        "stderr": truncate(result.stderr, 2000),
        "exitCode": result.exit_code,
    }
    if result.timed_out:
        response["warning"] = f"Command killed after {timeout:.0f}s timeout"
    return response

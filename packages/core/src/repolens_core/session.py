"""Repository session: the explicit context passed to every engine and tool.

Each session owns its repository root, exclude patterns, the index cache it
reads and writes, and a per-session cache of parsed syntax trees. Nothing in
repolens_core keeps an "active repository" global, so several sessions can
coexist in one process.
"""

from __future__ import annotations

import ast
import hashlib
import logging
import os
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING

from repolens_core.errors import ParseFailureError, PathTraversalError
from repolens_core.utils.code import is_code_file, is_excluded, is_skipped_dir, is_source_file

if TYPE_CHECKING:
    from repolens_store.base import BaseStore
    from repolens_store.models import CodeIndexEntry

logger = logging.getLogger(__name__)


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


class MemoryIndexCache:
    """Index cache used when no store is configured. Lives as long as the session."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], CodeIndexEntry] = {}

    def get_code_index(self, repo_path: str) -> list[CodeIndexEntry]:
        return [e for (repo, _), e in sorted(self._entries.items()) if repo == repo_path]

    def upsert_code_index(self, entry: CodeIndexEntry) -> None:
        self._entries[(entry.repo_path, entry.file_path)] = entry

    def delete_code_index(self, repo_path: str, file_path: str) -> None:
        self._entries.pop((repo_path, file_path), None)


class RepoSession:
    def __init__(self, root: str | Path, exclude: list[str] | None = None, store: BaseStore | None = None):
        self.root = Path(root).expanduser().resolve()
        self.exclude = list(exclude or [])
        self.store = store
        self.index_cache = store if store is not None else MemoryIndexCache()
        self.name = self.root.name
        self.branch = "unknown"
        self._trees: dict[str, tuple[str, ast.Module]] = {}

    @property
    def repo_key(self) -> str:
        """Key under which this repository's runs and cache entries are stored."""
        return str(self.root)

    # ------------------------------------------------------------------ #
    # Paths                                                                #
    # ------------------------------------------------------------------ #

    def resolve(self, path: str) -> Path:
        """Resolve ``path`` against the root, rejecting anything outside it.

        Symlinks are resolved first, so a link pointing out of the
        repository is rejected as well.
        """
        candidate = Path(path)
        full = (candidate if candidate.is_absolute() else self.root / candidate).resolve()
        if full != self.root and self.root not in full.parents:
            raise PathTraversalError(path)
        return full

    def relpath(self, path: str | Path) -> str:
        full = self.resolve(str(path))
        return full.relative_to(self.root).as_posix() if full != self.root else "."

    def list_files(self, subdir: str | None = None, max_depth: int | None = None) -> list[str]:
        """Repository-relative posix paths of every code file, sorted."""
        start = self.resolve(subdir) if subdir else self.root
        files: list[str] = []
        for dirpath, dirnames, filenames in os.walk(start):
            rel_dir = Path(dirpath).relative_to(self.root)
            depth = len(Path(dirpath).relative_to(start).parts)
            dirnames[:] = sorted(
                d for d in dirnames if not is_skipped_dir(d) and not is_excluded((rel_dir / d).as_posix(), self.exclude)
            )
            if max_depth is not None and depth >= max_depth:
                dirnames[:] = []
            for name in filenames:
                rel = (rel_dir / name).as_posix()
                if not is_code_file(name) or is_excluded(rel, self.exclude):
                    continue
                files.append(rel)
        return sorted(files)

    def source_files(self) -> list[str]:
        return [f for f in self.list_files() if is_source_file(f)]

    def read_text(self, path: str) -> str:
        return self.resolve(path).read_text(encoding="utf-8", errors="replace")

    # ------------------------------------------------------------------ #
    # Syntax trees                                                         #
    # ------------------------------------------------------------------ #

    def parse(self, path: str, content: str | None = None) -> ast.Module:
        """Parse a repository file, reusing the tree while its content is unchanged.

        Raises ParseFailureError when the file is not valid Python.
        """
        if content is None:
            content = self.read_text(path)
        digest = content_hash(content)
        cached = self._trees.get(path)
        if cached and cached[0] == digest:
            return cached[1]
        try:
            tree = ast.parse(content, filename=path)
        except (SyntaxError, ValueError) as e:
            raise ParseFailureError(f"{path}: {e}") from e
        self._trees[path] = (digest, tree)
        return tree


def open_repository(path: str, store: BaseStore | None = None, exclude: list[str] | None = None) -> RepoSession:
    """Open a repository directory and detect its current branch."""
    root = Path(path).expanduser()
    if not root.is_dir():
        raise NotADirectoryError(f"Not a directory: {path}")
    session = RepoSession(root, exclude=exclude, store=store)
    session.branch = _detect_branch(session.root)
    logger.info("Opened repository %s (branch %s)", session.root, session.branch)
    return session


def _detect_branch(root: Path) -> str:
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"],
            cwd=root,
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return "unknown"
    if result.returncode != 0:
        return "unknown"
    return result.stdout.strip() or "unknown"

import fnmatch

NON_CODE_EXTENSIONS = {
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".svg",
    ".ico",
    ".webp",
    ".pdf",
    ".woff",
    ".woff2",
    ".ttf",
    ".mp4",
    ".mp3",
    ".zip",
    ".tar",
    ".gz",
    ".whl",
    ".pyc",
    ".so",
    ".db",
    ".sqlite",
    ".lock",  # e.g. poetry.lock, Pipfile.lock
}

# Directories that never hold first-party source: virtualenvs, build output,
# tool caches and vendored dependencies.
SKIPPED_DIRS = {
    "node_modules",
    "venv",
    "env",
    "__pycache__",
    "build",
    "dist",
    "site-packages",
    "vendor",
    "htmlcov",
}

SOURCE_EXTENSION = ".py"


def is_code_file(file_name: str) -> bool:
    return not any(file_name.lower().endswith(ext) for ext in NON_CODE_EXTENSIONS)


def is_source_file(file_name: str) -> bool:
    """True for files the indexer parses."""
    return file_name.endswith(SOURCE_EXTENSION)


def is_skipped_dir(name: str) -> bool:
    return name.startswith(".") or name in SKIPPED_DIRS or name.endswith(".egg-info")


def is_excluded(filename: str, patterns: list[str]) -> bool:
    """Return True if filename matches any exclude pattern.

    Supports:
    - fnmatch globs on the full path: "src/generated/*.py"
    - fnmatch globs on the basename: "*_pb2.py"
    - Directory names/prefixes: "migrations/", "tests" (matches any file within that tree)
    """
    for pattern in patterns:
        if fnmatch.fnmatch(filename, pattern):
            return True
        if fnmatch.fnmatch(filename.rsplit("/", 1)[-1], pattern):
            return True
        prefix = pattern.rstrip("/") + "/"
        if filename.startswith(prefix) or ("/" + prefix) in filename:
            return True
    return False

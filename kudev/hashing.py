"""Deterministic content hashing of a source tree.

The digest covers the relative path and bytes of every non-excluded file, so
a pure rename changes it. Per-file digests are sorted before being combined,
which keeps the result independent of directory traversal order.
"""

import hashlib
import logging
import os
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Iterable, Optional

from .errors import HashError, NoSourceFilesError

logger = logging.getLogger(__name__)

DIGEST_LENGTH = 8
_CHUNK_SIZE = 64 * 1024

DEFAULT_EXCLUSIONS = (
    ".git",
    ".gitignore",
    ".kudev.yaml",
    ".kudev",
    "node_modules",
    "vendor",
    "__pycache__",
    ".pytest_cache",
    "*.log",
    "*.tmp",
    ".DS_Store",
    "Thumbs.db",
    ".idea",
    ".vscode",
    "*.swp",
    "*.swo",
    "coverage.out",
    "coverage.html",
)


def default_exclusions() -> list[str]:
    """Return a copy of the patterns that are always excluded."""
    return list(DEFAULT_EXCLUSIONS)


def _glob_match(name: str, pattern: str) -> bool:
    """Shell-style match where '*' and '?' never cross a '/'."""
    name_parts = name.split("/")
    pattern_parts = pattern.split("/")
    if len(name_parts) != len(pattern_parts):
        return False
    return all(fnmatchcase(n, p) for n, p in zip(name_parts, pattern_parts))


def match_pattern(rel_path: str, pattern: str) -> bool:
    """
    Check if a relative path matches one exclusion pattern.

    Supports exact segment names (".git" matches ".git/anything"), glob
    patterns against a segment ("*.log" matches "logs/debug.log"), glob
    patterns against the full path ("src/*.tmp") and directory prefixes.

    Args:
        rel_path: Path relative to the source root, "/"-separated
        pattern: Exclusion pattern

    Returns:
        True if the path is matched
    """
    pattern = pattern.replace(os.sep, "/")

    for part in rel_path.split("/"):
        if part == pattern or _glob_match(part, pattern):
            return True

    if _glob_match(rel_path, pattern):
        return True

    return rel_path.startswith(pattern + "/")


def should_exclude(rel_path: str, patterns: Iterable[str]) -> bool:
    """
    Check if a relative path is excluded by any pattern.

    Args:
        rel_path: Path relative to the source root
        patterns: Exclusion patterns

    Returns:
        True if the path should be skipped
    """
    rel_path = rel_path.replace(os.sep, "/")
    if rel_path in ("", "."):
        return False
    return any(match_pattern(rel_path, pattern) for pattern in patterns)


def load_dockerignore(source_dir: str | Path) -> list[str]:
    """
    Read exclusion patterns from ``.dockerignore``.

    Args:
        source_dir: Directory containing the file

    Returns:
        Patterns, or an empty list if there is no .dockerignore
    """
    path = Path(source_dir) / ".dockerignore"
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        return []

    patterns = []
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        patterns.append(line)
    return patterns


class HashCalculator:
    """Computes deterministic digests of a source directory."""

    def __init__(
        self,
        source_dir: str | Path,
        exclusions: Optional[Iterable[str]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize hash calculator.

        Args:
            source_dir: Root directory to hash
            exclusions: Extra patterns to skip, applied on top of the defaults
            logger: Logger to use (defaults to the module logger)
        """
        self.source_dir = Path(source_dir)
        self.exclusions = default_exclusions() + list(exclusions or [])
        self.logger = logger or logging.getLogger(__name__)

    def should_exclude(self, rel_path: str) -> bool:
        """Check a path relative to the source root against all exclusions."""
        return should_exclude(rel_path, self.exclusions)

    def calculate(self) -> str:
        """
        Compute the digest of all non-excluded files.

        Returns:
            8-character lowercase hex digest

        Raises:
            NoSourceFilesError: If every file is excluded or the tree is empty
            HashError: If the tree cannot be read
        """
        file_hashes = []

        def _raise(error: OSError) -> None:
            raise error

        try:
            for dirpath, dirnames, filenames in os.walk(self.source_dir, onerror=_raise):
                rel_dir = os.path.relpath(dirpath, self.source_dir)

                # Prune excluded directories so os.walk never descends into them
                dirnames[:] = [
                    d for d in dirnames if not self.should_exclude(self._join(rel_dir, d))
                ]

                for filename in filenames:
                    rel_path = self._join(rel_dir, filename)
                    if self.should_exclude(rel_path):
                        continue
                    file_hashes.append(self._hash_file(Path(dirpath) / filename, rel_path))
        except OSError as e:
            raise HashError(f"failed to hash {self.source_dir}", cause=e) from e

        if not file_hashes:
            raise NoSourceFilesError(str(self.source_dir))

        file_hashes.sort()

        final = hashlib.sha256()
        for file_hash in file_hashes:
            final.update(file_hash.encode("ascii"))

        digest = final.hexdigest()[:DIGEST_LENGTH]
        self.logger.debug(f"Hashed {len(file_hashes)} files in {self.source_dir}: {digest}")
        return digest

    @staticmethod
    def _join(rel_dir: str, name: str) -> str:
        if rel_dir == ".":
            return name
        return f"{rel_dir}/{name}".replace(os.sep, "/")

    @staticmethod
    def _hash_file(abs_path: Path, rel_path: str) -> str:
        hasher = hashlib.sha256()
        hasher.update(rel_path.encode("utf-8"))
        with open(abs_path, "rb") as f:
            for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
                hasher.update(chunk)
        return hasher.hexdigest()

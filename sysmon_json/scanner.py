"""Discovery of input documents."""

import fnmatch
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from .errors import DiscoveryError
from .models import MEGABYTE, DocumentFormat, SkippedFile

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10
DEFAULT_MAX_FILE_SIZE = 10 * MEGABYTE


@dataclass(frozen=True)
class DiscoveredFile:
    """A candidate document, numbered in discovery order."""
    index: int
    path: Path
    relative_path: str
    size: int
    format: DocumentFormat


@dataclass
class DiscoveryResult:
    """Files found by a traversal, plus everything it passed over."""
    files: list[DiscoveredFile] = field(default_factory=list)
    skipped: list[SkippedFile] = field(default_factory=list)
    errors: list[DiscoveryError] = field(default_factory=list)


def matches_ignore(relative_path: str, patterns: Iterable[str]) -> bool:
    """Check a POSIX relative path (or its last component) against glob patterns."""
    name = relative_path.rsplit("/", 1)[-1]
    return any(
        fnmatch.fnmatchcase(relative_path, pattern) or fnmatch.fnmatchcase(name, pattern)
        for pattern in patterns
    )


class _Walker:
    """Depth-first, name-ordered traversal state for one discover() call."""

    def __init__(
        self,
        max_depth: int,
        max_file_size: int,
        ignore_patterns: tuple[str, ...],
        exclude: set[Path]
    ):
        self.max_depth = max_depth
        self.max_file_size = max_file_size
        self.ignore_patterns = ignore_patterns
        self.exclude = exclude
        self.visited: set[tuple[int, int]] = set()
        self.result = DiscoveryResult()

    def walk(self, directory: Path, prefix: str, depth: int) -> None:
        """Visit the entries of ``directory``, which sit at ``depth``."""
        try:
            stat = directory.stat()
        except OSError as e:
            self._record_error(directory, e)
            return

        key = (stat.st_dev, stat.st_ino)
        if key in self.visited:
            logger.debug("Skipping already visited directory %s", directory)
            return
        self.visited.add(key)

        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda entry: entry.name)
        except OSError as e:
            self._record_error(directory, e)
            return

        for entry in entries:
            relative_path = prefix + entry.name
            path = Path(entry.path)

            if self.exclude and path.resolve() in self.exclude:
                continue
            if matches_ignore(relative_path, self.ignore_patterns):
                logger.debug("Ignoring %s", relative_path)
                continue

            if entry.is_dir():
                if depth < self.max_depth:
                    self.walk(path, relative_path + "/", depth + 1)
                else:
                    logger.debug("Skipping %s: deeper than %d", relative_path, self.max_depth)
            elif entry.is_file():
                self.consider(path, relative_path)

    def consider(self, path: Path, relative_path: str) -> None:
        """Add a file to the result unless its extension or size rules it out."""
        fmt = DocumentFormat.from_path(path)
        if fmt is None:
            logger.debug("Skipping %s: unsupported extension", relative_path)
            return

        try:
            size = path.stat().st_size
        except OSError as e:
            self.result.skipped.append(SkippedFile(path, relative_path, f"cannot stat: {e}"))
            return

        if size > self.max_file_size:
            logger.info("Skipping %s: too large (%d bytes)", relative_path, size)
            self.result.skipped.append(SkippedFile(
                path,
                relative_path,
                f"too large ({size} bytes > {self.max_file_size} bytes)"
            ))
            return

        files = self.result.files
        files.append(DiscoveredFile(len(files), path, relative_path, size, fmt))

    def _record_error(self, directory: Path, error: OSError) -> None:
        discovery_error = DiscoveryError(directory, error.strerror or str(error))
        logger.warning("%s", discovery_error)
        self.result.errors.append(discovery_error)


def discover(
    root: Path,
    max_depth: int = DEFAULT_MAX_DEPTH,
    max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    ignore_patterns: Iterable[str] = (),
    exclude: Iterable[Path] = ()
) -> DiscoveryResult:
    """
    Find convertible documents under a path.

    Args:
        root: A single file or a directory to traverse
        max_depth: Deepest entry level to visit (files directly in root are level 1)
        max_file_size: Files larger than this many bytes are skipped and reported
        ignore_patterns: Glob patterns matched against POSIX relative paths
        exclude: Paths never yielded or descended into (e.g. the output location)

    Returns:
        DiscoveryResult with files in deterministic depth-first, name-sorted order
    """
    root = Path(root)
    walker = _Walker(
        max_depth,
        max_file_size,
        tuple(ignore_patterns),
        {Path(p).resolve() for p in exclude}
    )

    if root.is_file():
        if not matches_ignore(root.name, walker.ignore_patterns):
            walker.consider(root, root.name)
    else:
        walker.walk(root, "", 1)

    result = walker.result
    logger.info(
        "Discovered %d file(s) under %s (%d skipped, %d unreadable)",
        len(result.files), root, len(result.skipped), len(result.errors)
    )
    return result

"""Data models for sysmon_json."""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import xxhash

from .errors import DiscoveryError

MEGABYTE = 1024 * 1024


@dataclass
class Text:
    """A text leaf inside an element."""
    content: str


@dataclass
class Element:
    """An element with a name, ordered attributes and ordered children."""
    name: str
    attributes: dict[str, str] = field(default_factory=dict)
    children: list[Union["Element", Text]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Element name must not be empty")

    def elements(self) -> list["Element"]:
        """Child elements, skipping text leaves."""
        return [child for child in self.children if isinstance(child, Element)]

    @property
    def text(self) -> str:
        return "".join(child.content for child in self.children if isinstance(child, Text))


Node = Union[Element, Text]


@dataclass
class Document:
    """One parsed configuration file."""
    root: Element


class DocumentFormat(Enum):
    """Serialization formats a document can be read from or written to."""
    XML = "xml"
    JSON = "json"

    @property
    def extension(self) -> str:
        return "." + self.value

    @property
    def other(self) -> "DocumentFormat":
        return DocumentFormat.JSON if self is DocumentFormat.XML else DocumentFormat.XML

    @classmethod
    def from_path(cls, path: Path) -> Optional["DocumentFormat"]:
        suffix = path.suffix.lower().lstrip(".")
        for member in cls:
            if member.value == suffix:
                return member
        return None


def child_labels(children: list[Node]) -> list[Optional[str]]:
    """
    Label each child element for use in tree paths.

    Elements are labelled by tag, with a 1-based ``[n]`` suffix when the
    parent holds more than one element of that tag. Text leaves get None.
    """
    totals: dict[str, int] = {}
    for child in children:
        if isinstance(child, Element):
            totals[child.name] = totals.get(child.name, 0) + 1

    seen: dict[str, int] = {}
    labels: list[Optional[str]] = []
    for child in children:
        if not isinstance(child, Element):
            labels.append(None)
            continue
        seen[child.name] = seen.get(child.name, 0) + 1
        if totals[child.name] > 1:
            labels.append(f"{child.name}[{seen[child.name]}]")
        else:
            labels.append(child.name)
    return labels


def fingerprint(node: Node) -> str:
    """Compute a structural hash of a node using xxhash (attribute order ignored)."""
    hasher = xxhash.xxh64()
    _feed(hasher, node)
    return hasher.hexdigest()


def _feed(hasher: "xxhash.xxh64", node: Node) -> None:
    # Length-prefixed parts so that adjacent values cannot run together
    if isinstance(node, Text):
        _feed_str(hasher, "T")
        _feed_str(hasher, node.content)
        return
    _feed_str(hasher, "E")
    _feed_str(hasher, node.name)
    hasher.update(len(node.attributes).to_bytes(4, "big"))
    for name in sorted(node.attributes):
        _feed_str(hasher, name)
        _feed_str(hasher, node.attributes[name])
    hasher.update(len(node.children).to_bytes(4, "big"))
    for child in node.children:
        _feed(hasher, child)


def _feed_str(hasher: "xxhash.xxh64", value: str) -> None:
    data = value.encode("utf-8")
    hasher.update(len(data).to_bytes(4, "big"))
    hasher.update(data)


@dataclass(frozen=True)
class ProcessingOptions:
    """Resolved options for one run."""
    max_file_size: int = 10 * MEGABYTE
    max_depth: int = 10
    workers: Optional[int] = None
    verify: bool = False
    silent: bool = False
    backup: bool = False
    ignore_patterns: tuple[str, ...] = ()
    skip_preprocessing: bool = False
    recursive: bool = False

    @property
    def worker_count(self) -> int:
        return self.workers or os.cpu_count() or 1

    @property
    def effective_depth(self) -> int:
        """Depth limit for discovery; non-recursive runs only see the top level."""
        return self.max_depth if self.recursive else 1


class JobStatus(Enum):
    """Outcome of one job."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class JobDescriptor:
    """One unit of per-file work."""
    index: int
    source: Path
    destination: Path
    source_format: DocumentFormat
    target_format: DocumentFormat
    backup: bool = False
    verify: bool = False
    preprocess: bool = True


@dataclass
class JobResult:
    """Result of processing one job."""
    job: JobDescriptor
    status: JobStatus
    message: Optional[str] = None
    bytes_processed: int = 0
    backup_path: Optional[Path] = None


@dataclass(frozen=True)
class SkippedFile:
    """A file discovery passed over, with the reason."""
    path: Path
    relative_path: str
    reason: str


@dataclass
class BatchReport:
    """Aggregated results of a run."""
    discovered: int
    results: list[JobResult] = field(default_factory=list)
    skipped_files: list[SkippedFile] = field(default_factory=list)
    discovery_errors: list[DiscoveryError] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for result in self.results if result.status is JobStatus.SUCCESS)

    @property
    def failure_count(self) -> int:
        return sum(1 for result in self.results if result.status is JobStatus.FAILED)

    @property
    def skipped_count(self) -> int:
        skipped_jobs = sum(1 for result in self.results if result.status is JobStatus.SKIPPED)
        return skipped_jobs + len(self.skipped_files)

    @property
    def failures(self) -> list[JobResult]:
        """Failed jobs in discovery order."""
        return [result for result in self.results if result.status is JobStatus.FAILED]

    @property
    def exit_code(self) -> int:
        return 1 if self.failure_count else 0

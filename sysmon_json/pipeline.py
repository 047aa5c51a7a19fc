"""Batch conversion and merge pipeline."""

import contextlib
import logging
import os
import queue
import shutil
import signal
import sys
import tempfile
import threading
from pathlib import Path
from typing import Iterator, Optional, Sequence, TextIO

from tqdm import tqdm

from .adapters import DEFAULT_CODEC, Codec, preprocess
from .errors import ConversionError, ConversionIOError, ParseError
from .merger import SYSMON_POLICY, MergePlan, MergePolicy, merge
from .models import (
    BatchReport,
    Document,
    DocumentFormat,
    JobDescriptor,
    JobResult,
    JobStatus,
    ProcessingOptions,
)
from .scanner import DiscoveredFile, discover
from .verifier import verify_output

logger = logging.getLogger(__name__)

# Queue sentinel telling a consumer thread to exit
_STOP = None


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


# Read once at import; os.umask() can only be queried by setting it
_UMASK = _current_umask()


def _long_path(path: Path) -> str:
    """Convert path to long path format on Windows to handle paths > 260 chars."""
    path_str = str(path.resolve())
    if os.name == 'nt' and not path_str.startswith('\\\\?\\'):
        return '\\\\?\\' + path_str
    return path_str


# =========================================================================
# Output handling
# =========================================================================

def backup_path_for(path: Path) -> Path:
    """Return ``<path>.bak``, or the first free ``<path>.bak.N``."""
    candidate = path.with_name(path.name + ".bak")
    counter = 1
    while candidate.exists():
        candidate = path.with_name(f"{path.name}.bak.{counter}")
        counter += 1
    return candidate


def create_backup(path: Path) -> Path:
    """Copy an existing file to a free backup path and return that path."""
    backup = backup_path_for(path)
    try:
        shutil.copy2(_long_path(path), _long_path(backup))
    except (OSError, shutil.Error) as e:
        raise ConversionIOError(path, e, "back up") from e
    logger.info("Created backup %s", backup)
    return backup


def atomic_write(destination: Path, payload: bytes) -> None:
    """Write a file through a temporary sibling so readers never see a partial file."""
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=destination.parent,
            prefix=f".{destination.name}.",
            suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            if destination.exists():
                shutil.copymode(destination, tmp_name)
            else:
                os.chmod(tmp_name, 0o666 & ~_UMASK)
            os.replace(tmp_name, destination)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise
    except OSError as e:
        raise ConversionIOError(destination, e, "write") from e


def write_output(destination: Path, payload: bytes, backup: bool) -> Optional[Path]:
    """Back up an existing destination when asked, then write. Returns the backup path."""
    backup_path = None
    if backup and destination.exists():
        backup_path = create_backup(destination)
    atomic_write(destination, payload)
    return backup_path


def _read_source(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise ConversionIOError(path, e, "read") from e


def _commit(job: JobDescriptor, document: Document, codec: Codec) -> Optional[Path]:
    """Serialize, back up, write and optionally verify one output."""
    payload = codec.serialize(document, job.target_format)
    backup_path = write_output(job.destination, payload, job.backup)
    if job.verify:
        verify_output(job.destination, document, job.target_format, job.source_format, codec)
    return backup_path


# =========================================================================
# Jobs
# =========================================================================

def job_for(
    file: DiscoveredFile,
    destination: Path,
    options: ProcessingOptions
) -> JobDescriptor:
    """Describe the conversion of one discovered file to ``destination``."""
    return JobDescriptor(
        index=file.index,
        source=file.path,
        destination=destination,
        source_format=file.format,
        target_format=file.format.other,
        backup=options.backup,
        verify=options.verify,
        preprocess=not options.skip_preprocessing
    )


def build_jobs(
    files: Sequence[DiscoveredFile],
    output_root: Path,
    options: ProcessingOptions
) -> list[JobDescriptor]:
    """Map discovered files into ``output_root``, keeping relative paths and swapping extensions."""
    jobs = []
    for file in files:
        destination = (output_root / file.relative_path).with_suffix(file.format.other.extension)
        jobs.append(job_for(file, destination, options))
    return jobs


def process_job(job: JobDescriptor, codec: Codec = DEFAULT_CODEC) -> JobResult:
    """
    Convert one file. Errors end this job only and are returned as a failed result.
    """
    size = 0
    try:
        raw = _read_source(job.source)
        size = len(raw)
        data = preprocess(raw, job.source_format) if job.preprocess else raw
        document = codec.parse(data, job.source_format)
        backup_path = _commit(job, document, codec)
    except ConversionError as e:
        logger.debug("Failed to convert %s: %s", job.source, e)
        return JobResult(job, JobStatus.FAILED, str(e), size)
    except Exception as e:
        logger.exception("Unexpected error converting %s", job.source)
        return JobResult(job, JobStatus.FAILED, f"unexpected error: {e}", size)

    logger.debug("Converted %s -> %s", job.source, job.destination)
    return JobResult(job, JobStatus.SUCCESS, None, size, backup_path)


# =========================================================================
# Progress
# =========================================================================

class ProgressState:
    """Counters for one run, written only by the progress reporter."""

    def __init__(self, discovered: int = 0):
        self._lock = threading.Lock()
        self.discovered = discovered
        self.succeeded = 0
        self.failed = 0
        self.skipped = 0
        self.bytes_processed = 0

    @property
    def completed(self) -> int:
        return self.succeeded + self.failed + self.skipped

    def record(self, result: JobResult) -> None:
        with self._lock:
            if result.status is JobStatus.SUCCESS:
                self.succeeded += 1
            elif result.status is JobStatus.FAILED:
                self.failed += 1
            else:
                self.skipped += 1
            self.bytes_processed += result.bytes_processed

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "discovered": self.discovered,
                "completed": self.completed,
                "succeeded": self.succeeded,
                "failed": self.failed,
                "skipped": self.skipped,
                "bytes_processed": self.bytes_processed,
            }


def format_progress(result: JobResult, state: ProgressState) -> str:
    """One human-readable line for a finished job."""
    job = result.job
    line = f"[{state.completed}/{state.discovered}] {result.status.value}: {job.source} -> {job.destination}"
    if result.message:
        line += f" ({result.message})"
    return line


class ProgressReporter(threading.Thread):
    """Single consumer of job results; owns the progress state and all progress output."""

    def __init__(
        self,
        results: "queue.Queue[Optional[JobResult]]",
        state: ProgressState,
        silent: bool,
        stream: TextIO
    ):
        super().__init__(name="progress-reporter")
        self.results = results
        self.state = state
        self.silent = silent
        self.stream = stream
        self.collected: list[JobResult] = []

    def run(self) -> None:
        with tqdm(
            total=self.state.discovered,
            desc="Converting",
            unit="file",
            disable=self.silent,
            file=self.stream
        ) as pbar:
            while True:
                result = self.results.get()
                if result is _STOP:
                    break
                self.state.record(result)
                self.collected.append(result)
                pbar.update(1)
                if not self.silent:
                    pbar.write(format_progress(result, self.state), file=self.stream)


# =========================================================================
# Worker pool
# =========================================================================

@contextlib.contextmanager
def _cancel_on_signals(cancel: threading.Event) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cancellation request while the block runs."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum, frame):
        logger.warning("Received signal %d: finishing running jobs, dispatching no more", signum)
        cancel.set()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, handler)
    try:
        yield
    finally:
        for signum, old_handler in previous.items():
            signal.signal(signum, old_handler)


def _worker(
    work: "queue.Queue[Optional[JobDescriptor]]",
    results: "queue.Queue[Optional[JobResult]]",
    codec: Codec,
    cancel: threading.Event
) -> None:
    while True:
        job = work.get()
        if job is _STOP:
            return
        if cancel.is_set():
            results.put(JobResult(job, JobStatus.SKIPPED, "cancelled"))
            continue
        results.put(process_job(job, codec))


class BatchPipeline:
    """Runs independent conversion jobs on a fixed pool of worker threads."""

    def __init__(
        self,
        options: ProcessingOptions,
        codec: Codec = DEFAULT_CODEC,
        stream: Optional[TextIO] = None,
        cancel: Optional[threading.Event] = None
    ):
        self.options = options
        self.codec = codec
        self.stream = stream
        self.cancel = cancel or threading.Event()

    def run(self, jobs: Sequence[JobDescriptor]) -> list[JobResult]:
        """
        Process every job and return the results in discovery order.

        Jobs not yet started when cancellation is requested come back as
        skipped; jobs already running are allowed to finish.
        """
        if not jobs:
            return []

        worker_count = max(1, min(self.options.worker_count, len(jobs)))
        work: "queue.Queue[Optional[JobDescriptor]]" = queue.Queue(maxsize=worker_count * 2)
        results: "queue.Queue[Optional[JobResult]]" = queue.Queue()
        state = ProgressState(len(jobs))

        reporter = ProgressReporter(results, state, self.options.silent, self.stream or sys.stderr)
        reporter.start()

        workers = [
            threading.Thread(
                target=_worker,
                args=(work, results, self.codec, self.cancel),
                name=f"worker-{n}"
            )
            for n in range(worker_count)
        ]
        for thread in workers:
            thread.start()
        logger.info("Processing %d job(s) with %d worker(s)", len(jobs), worker_count)

        with _cancel_on_signals(self.cancel):
            try:
                for job in jobs:
                    if self.cancel.is_set():
                        results.put(JobResult(job, JobStatus.SKIPPED, "cancelled"))
                    else:
                        work.put(job)
            finally:
                for _ in workers:
                    work.put(_STOP)
                for thread in workers:
                    thread.join()

        results.put(_STOP)
        reporter.join()

        snapshot = state.snapshot()
        logger.info(
            "Finished %d/%d job(s): %d succeeded, %d failed, %d skipped, %d bytes read",
            snapshot["completed"], snapshot["discovered"], snapshot["succeeded"],
            snapshot["failed"], snapshot["skipped"], snapshot["bytes_processed"]
        )
        return sorted(reporter.collected, key=lambda result: result.job.index)


# =========================================================================
# Entry points
# =========================================================================

def run_batch(
    input_path: Path,
    output_path: Path,
    options: ProcessingOptions,
    codec: Codec = DEFAULT_CODEC,
    stream: Optional[TextIO] = None,
    cancel: Optional[threading.Event] = None
) -> BatchReport:
    """
    Convert a single file or every document under a directory.

    For a file input ``output_path`` is the output file; for a directory it is
    the output root, mirroring the input layout.
    """
    discovery = discover(
        input_path,
        max_depth=options.effective_depth,
        max_file_size=options.max_file_size,
        ignore_patterns=options.ignore_patterns,
        exclude=[output_path]
    )

    if input_path.is_file():
        jobs = [job_for(file, output_path, options) for file in discovery.files]
    else:
        jobs = build_jobs(discovery.files, output_path, options)

    results = BatchPipeline(options, codec, stream, cancel).run(jobs)
    return BatchReport(
        discovered=len(discovery.files),
        results=results,
        skipped_files=discovery.skipped,
        discovery_errors=discovery.errors
    )


def run_merge(
    input_path: Path,
    output_path: Path,
    options: ProcessingOptions,
    policy: MergePolicy = SYSMON_POLICY,
    codec: Codec = DEFAULT_CODEC,
    stream: Optional[TextIO] = None
) -> BatchReport:
    """
    Merge every document under ``input_path`` into ``output_path``.

    Documents are merged in discovery order on the calling thread, so later
    files take precedence. The single output gets the usual backup, atomic
    write and verification handling.
    """
    discovery = discover(
        input_path,
        max_depth=options.effective_depth,
        max_file_size=options.max_file_size,
        ignore_patterns=options.ignore_patterns,
        exclude=[output_path]
    )
    report = BatchReport(
        discovered=len(discovery.files),
        skipped_files=discovery.skipped,
        discovery_errors=discovery.errors
    )
    if not discovery.files:
        logger.warning("No documents to merge under %s", input_path)
        return report

    output_format = DocumentFormat.from_path(output_path) or DocumentFormat.XML
    job = JobDescriptor(
        index=0,
        source=input_path,
        destination=output_path,
        source_format=output_format,
        target_format=output_format,
        backup=options.backup,
        verify=options.verify,
        preprocess=not options.skip_preprocessing
    )
    result = _merge_job(job, discovery.files, policy, codec)
    report.results.append(result)

    state = ProgressState(1)
    state.record(result)
    if not options.silent:
        tqdm.write(format_progress(result, state), file=stream or sys.stderr)
    return report


def _merge_job(
    job: JobDescriptor,
    files: Sequence[DiscoveredFile],
    policy: MergePolicy,
    codec: Codec
) -> JobResult:
    size = 0
    try:
        documents = []
        for file in files:
            raw = _read_source(file.path)
            size += len(raw)
            data = preprocess(raw, file.format) if job.preprocess else raw
            try:
                documents.append(codec.parse(data, file.format))
            except ParseError as e:
                raise ParseError(f"{file.relative_path}: {e}") from e

        merged = merge(MergePlan(documents, policy))
        backup_path = _commit(job, merged, codec)
    except ConversionError as e:
        logger.error("Merge into %s failed: %s", job.destination, e)
        return JobResult(job, JobStatus.FAILED, str(e), size)
    except Exception as e:
        logger.exception("Unexpected error merging into %s", job.destination)
        return JobResult(job, JobStatus.FAILED, f"unexpected error: {e}", size)

    logger.info("Merged %d document(s) into %s", len(files), job.destination)
    return JobResult(job, JobStatus.SUCCESS, None, size, backup_path)

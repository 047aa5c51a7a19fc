"""Command-line interface for sysmon_json."""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from tqdm.contrib.logging import logging_redirect_tqdm

from .models import MEGABYTE, BatchReport, DocumentFormat, JobStatus, ProcessingOptions
from .pipeline import run_batch, run_merge

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Convert Sysmon configurations between XML and JSON, or merge them.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s -i sysmonconfig.xml
  %(prog)s -i configs/ -r -o converted/ --workers 4 --verify
  %(prog)s -i sysmon-modular/ -r -m -o merged.xml --backup
        """
    )

    parser.add_argument("-i", "--input", type=Path, required=True, help="Input file or directory path")
    parser.add_argument("-o", "--output", type=Path, help="Output file or directory path")
    parser.add_argument("-r", "--recursive", action="store_true", help="Process directories recursively")
    parser.add_argument(
        "-b", "--batch",
        action="store_true",
        help="Process input as a directory containing multiple files"
    )
    parser.add_argument(
        "-m", "--merge",
        action="store_true",
        help="Merge all configs in the input directory into a single file"
    )
    parser.add_argument("--max-size", type=int, default=10, help="Maximum file size in MB (default: 10)")
    parser.add_argument("--max-depth", type=int, default=10, help="Maximum recursion depth (default: 10)")
    parser.add_argument(
        "--workers",
        type=int,
        help="Number of worker threads (default: number of CPU cores)"
    )
    parser.add_argument("--verify", action="store_true", help="Verify output after conversion")
    parser.add_argument("--silent", action="store_true", help="Suppress progress output")
    parser.add_argument("--backup", action="store_true", help="Create backups of existing files")
    parser.add_argument(
        "--ignore",
        dest="ignore_patterns",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Glob pattern to ignore (can be specified multiple times)"
    )
    parser.add_argument(
        "--skip-preprocessing",
        action="store_true",
        help="Skip encoding and whitespace normalization of inputs"
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default="INFO",
        help="Logging level (default: INFO)"
    )

    return parser.parse_args(argv)


def _fail(message: str) -> None:
    print(f"Error: {message}")
    sys.exit(1)


def validate_args(args: argparse.Namespace) -> None:
    """Validate command-line arguments."""
    if not args.input.exists():
        _fail(f"Input path does not exist: {args.input}")
    if args.merge and not args.input.is_dir():
        _fail("Merge mode requires input to be a directory")
    if args.batch and not args.input.is_dir():
        _fail("Batch mode requires input to be a directory")
    if args.input.is_file() and DocumentFormat.from_path(args.input) is None:
        _fail(f"Unsupported input file type: {args.input}")
    if args.merge and args.output is not None and DocumentFormat.from_path(args.output) is None:
        _fail(f"Merge output must end in .xml or .json: {args.output}")
    if args.max_size <= 0:
        _fail("--max-size must be a positive number of megabytes")
    if args.max_depth < 1:
        _fail("--max-depth must be at least 1")
    if args.workers is not None and args.workers < 1:
        _fail("--workers must be at least 1")


def build_options(args: argparse.Namespace) -> ProcessingOptions:
    """Turn parsed arguments into processing options."""
    return ProcessingOptions(
        max_file_size=args.max_size * MEGABYTE,
        max_depth=args.max_depth,
        workers=args.workers,
        verify=args.verify,
        silent=args.silent,
        backup=args.backup,
        ignore_patterns=tuple(args.ignore_patterns),
        skip_preprocessing=args.skip_preprocessing,
        recursive=args.recursive
    )


def resolve_output(args: argparse.Namespace) -> Path:
    """
    Work out the output path when none was given.

    Merge writes ``<input>/merged.xml``, directories convert into a sibling
    ``<input>_converted`` directory, and single files swap their extension.
    """
    if args.output is not None:
        return args.output
    if args.merge:
        return args.input / "merged.xml"
    if args.batch or args.input.is_dir():
        resolved = args.input.resolve()
        return resolved.with_name(f"{resolved.name or 'output'}_converted")
    fmt = DocumentFormat.from_path(args.input) or DocumentFormat.JSON
    return args.input.with_suffix(fmt.other.extension)


def configure_logging(level: str) -> None:
    """Send sysmon_json log records to stderr at the given level."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_sysmon_json_console", False):
            root.removeHandler(handler)
            handler.close()

    console = logging.StreamHandler(stream=sys.stderr)
    console.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
    console._sysmon_json_console = True  # type: ignore[attr-defined]
    root.addHandler(console)
    logging.getLogger("sysmon_json").setLevel(level)


def print_summary(report: BatchReport, output: Path, merge: bool) -> None:
    """Print the end-of-run summary."""
    print("\n" + "=" * 60)
    print("MERGE COMPLETE" if merge else "CONVERSION COMPLETE")
    print("=" * 60)
    print(f"Files discovered: {report.discovered}")
    print(f"{'Merged' if merge else 'Converted'}: {report.success_count}")
    print(f"Skipped: {report.skipped_count}")
    for skipped in report.skipped_files:
        print(f"  - {skipped.relative_path}: {skipped.reason}")
    for result in report.results:
        if result.status is JobStatus.SKIPPED:
            print(f"  - {result.job.source}: {result.message}")
    print(f"Failed: {report.failure_count}")
    for result in report.failures:
        print(f"  - {result.job.source}")
        print(f"    {result.message}")
    if report.discovery_errors:
        print(f"Unreadable directories: {len(report.discovery_errors)}")
        for error in report.discovery_errors:
            print(f"  - {error.path}: {error.reason}")
    print(f"Output: {output}")


def run(args: argparse.Namespace) -> int:
    """Run the requested mode and return the process exit code."""
    configure_logging(args.log_level)
    options = build_options(args)
    output = resolve_output(args)

    print("=" * 60)
    if args.merge:
        print("SYSMON CONFIG MERGE")
    else:
        print("SYSMON CONFIG CONVERSION")
    print("=" * 60)
    print(f"Input:  {args.input}")
    print(f"Output: {output}")

    with logging_redirect_tqdm():
        if args.merge:
            report = run_merge(args.input, output, options)
        else:
            report = run_batch(args.input, output, options)

    print_summary(report, output, args.merge)
    return report.exit_code


def main() -> None:
    """Main entry point."""
    args = parse_args()
    validate_args(args)

    try:
        exit_code = run(args)
    except KeyboardInterrupt:
        print("\n\nInterrupted! Outputs already written are complete.")
        sys.exit(1)
    sys.exit(exit_code)

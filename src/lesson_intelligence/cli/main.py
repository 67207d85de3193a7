"""
CLI Interface Module

Command-line interface for the Lesson Intelligence System: submit PDF
documents, run or retry jobs, poll their status, fetch assembled lessons and
validate the configuration.

This module is the entry point of the `lesson-intelligence` console script.
"""

import argparse
import json
import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from dotenv import load_dotenv
from tqdm import tqdm

from ..models.data_structures import EnrichmentType, JobStatus, JobStatusReport
from ..service.job_service import JobService
from ..utils.config_loader import Config, SystemConfig
from ..utils.error_handlers import (
    ConfigurationError,
    DatabaseError,
    JobNotFoundError,
    JobStateError,
)
from ..utils.file_utils import ensure_directory

logger = logging.getLogger(__name__)

# Constants
DEFAULT_CONFIG_PATH = "config/pipeline_config.yaml"
DEFAULT_LIST_LIMIT = 50
SEPARATOR_WIDTH = 60
WIDE_SEPARATOR_WIDTH = 90
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

__version__ = "0.1.0"


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    log_file: Optional[str] = None,
) -> None:
    """Configure logging for the CLI application.

    Application output goes to stdout, logs go to stderr and, when a log
    directory and file name are configured, to that file as well.

    Args:
        log_level: Logging level as string (DEBUG, INFO, WARNING, ERROR).
        log_dir: Optional directory of the log file.
        log_file: Optional log file name inside `log_dir`.
    """
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_dir and log_file:
        ensure_directory(log_dir)
        handlers.append(logging.FileHandler(Path(log_dir) / log_file, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


@contextmanager
def get_job_service(config: SystemConfig) -> Iterator[JobService]:
    """Context manager building the job service and shutting it down on exit."""
    service = JobService.from_config(config)
    try:
        yield service
    finally:
        service.shutdown()


def handle_error(context: str, error: Exception) -> int:
    """Centralized error handling for commands.

    Returns:
        Exit code 1.
    """
    if isinstance(error, FileNotFoundError):
        logger.error(f"{context}: File not found - {error}")
    elif isinstance(error, ValueError):
        logger.error(f"{context}: Invalid value - {error}")
    elif isinstance(
        error, (ConfigurationError, DatabaseError, JobNotFoundError, JobStateError)
    ):
        logger.error(f"{context}: {error}")
    else:
        logger.error(f"{context}: {error}", exc_info=True)
    return 1


def wait_with_progress(
    service: JobService, job_id: str, timeout: Optional[float] = None
) -> JobStatusReport:
    """Poll a job until it settles, drawing a progress bar on stderr."""
    with tqdm(total=100, desc=job_id, unit="%", bar_format="{l_bar}{bar}| {n:.0f}%") as bar:

        def on_update(report: JobStatusReport) -> None:
            bar.update(report.progress_percent - bar.n)
            postfix = report.message
            if report.eta_seconds is not None and not report.status.is_terminal:
                postfix += f", ~{report.eta_seconds:.0f}s left in stage"
            bar.set_postfix_str(postfix, refresh=True)

        return service.wait_for(job_id, timeout=timeout, on_update=on_update)


def main(argv: Optional[List[str]] = None) -> int:
    """Execute the main CLI entry point.

    Returns:
        Exit code: 0 for success, non-zero for errors.

    Example:
        $ lesson-intelligence submit course.pdf --user alice --wait
        $ lesson-intelligence status JOB-20240101-120000-1a2b3c4d
    """
    parser = setup_argument_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"Lesson Intelligence System v{__version__}")
        return 0

    if args.command is None:
        parser.print_help()
        return 1

    load_dotenv()

    try:
        config = Config.load(args.config)
    except (FileNotFoundError, KeyError, ValueError) as e:
        setup_logging(args.log_level or "INFO")
        return handle_error("Could not load configuration", e)

    setup_logging(
        args.log_level or config.logging.get("level", "INFO"),
        log_dir=config.logging.get("log_dir"),
        log_file=config.logging.get("log_file"),
    )

    command_map = {
        "submit": command_submit,
        "run": command_run,
        "status": command_status,
        "result": command_result,
        "retry": command_retry,
        "list": command_list_jobs,
        "validate-config": command_validate_config,
    }

    try:
        return command_map[args.command](args, config)
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user")
        return 130
    except Exception as e:
        return handle_error(f"Command {args.command} failed", e)


def _finish(service: JobService, job_id: str, wait: bool, timeout: Optional[float]) -> int:
    if wait:
        report = wait_with_progress(service, job_id, timeout)
    else:
        print(f"Job {job_id} scheduled; waiting for it to settle")
        report = service.wait_for(job_id, timeout=timeout)
    print_status_report(report)
    return 0 if report.status == JobStatus.READY else 1


def command_submit(args: argparse.Namespace, config: SystemConfig) -> int:
    """Submit one or more PDF documents as a single lesson and run its job."""
    pdf_paths = [Path(p) for p in args.pdf_paths]
    for pdf_path in pdf_paths:
        if not pdf_path.is_file():
            raise FileNotFoundError(str(pdf_path))

    options = {
        "enrichment": args.enrichment,
        "language": args.language,
        "voice": args.voice,
    }
    with get_job_service(config) as service:
        job_id = service.submit_job(
            args.user,
            [pdf_path.read_bytes() for pdf_path in pdf_paths],
            options,
        )
        print(f"Submitted job: {job_id}")
        return _finish(service, job_id, args.wait, args.timeout)


def command_run(args: argparse.Namespace, config: SystemConfig) -> int:
    """Run (or resume) an existing non-terminal job."""
    with get_job_service(config) as service:
        service.schedule(args.job_id)
        return _finish(service, args.job_id, args.wait, args.timeout)


def command_retry(args: argparse.Namespace, config: SystemConfig) -> int:
    """Retry a job; an errored job is retried as a new job."""
    with get_job_service(config) as service:
        job_id = service.retry_job(args.job_id)
        if job_id != args.job_id:
            print(f"Retrying {args.job_id} as new job: {job_id}")
        return _finish(service, job_id, args.wait, args.timeout)


def command_status(args: argparse.Namespace, config: SystemConfig) -> int:
    with get_job_service(config) as service:
        report = service.get_status(args.job_id, user_id=args.user)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print_status_report(report)
    return 0


def command_result(args: argparse.Namespace, config: SystemConfig) -> int:
    """Print or save the assembled lesson of a ready job."""
    with get_job_service(config) as service:
        result = service.get_result(args.job_id, user_id=args.user)

    content = json.dumps(result, indent=2, ensure_ascii=False)
    if args.output:
        output_path = Path(args.output)
        ensure_directory(str(output_path.parent))
        output_path.write_text(content, encoding="utf-8")
        print(f"✓ Lesson written to: {output_path}")
    else:
        print(content)
    return 0


def command_list_jobs(args: argparse.Namespace, config: SystemConfig) -> int:
    if args.limit < 1:
        logger.error("--limit must be at least 1")
        return 1

    status = JobStatus(args.status) if args.status else None
    with get_job_service(config) as service:
        jobs = service.list_jobs(user_id=args.user, status=status, limit=args.limit)

    print("\n" + "=" * WIDE_SEPARATOR_WIDTH)
    print(f"Found {len(jobs)} job(s)")
    print("=" * WIDE_SEPARATOR_WIDTH)
    print(f"{'Job ID':<34} {'User':<16} {'Status':<9} {'Progress':<9} {'Message'}")
    print("-" * WIDE_SEPARATOR_WIDTH)
    for job in jobs:
        print(
            f"{job.job_id:<34} {job.user_id[:15]:<16} {job.status.value:<9} "
            f"{job.progress_percent:>7.1f}%  {job.message}"
        )
    print("=" * WIDE_SEPARATOR_WIDTH)
    return 0


def command_validate_config(args: argparse.Namespace, config: SystemConfig) -> int:
    """Validate the loaded configuration and print the problems found."""
    errors = Config.validate(config)
    if errors:
        print(f"✗ Configuration has {len(errors)} problem(s):")
        for error in errors:
            print(f"  - {error}")
        return 1
    print("✓ Configuration is valid")
    return 0


def setup_argument_parser() -> argparse.ArgumentParser:
    """Configure the argument parser with all CLI commands and options."""
    parser = argparse.ArgumentParser(
        description="Lesson Intelligence System - CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Submit a document and follow its progress
  %(prog)s submit course.pdf --user alice --enrichment quiz --wait

  # Submit several documents as one lesson
  %(prog)s submit part1.pdf part2.pdf --user alice --wait

  # Resume an interrupted job
  %(prog)s run JOB-20240101-120000-1a2b3c4d --wait

  # Save the assembled lesson
  %(prog)s result JOB-20240101-120000-1a2b3c4d --output lesson.json
        """,
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to configuration file (default: %(default)s)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: logging.level from the configuration)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    def add_wait_arguments(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--wait", action="store_true", help="Show a progress bar until the job settles"
        )
        sub.add_argument(
            "--timeout", type=float, default=None, help="Give up waiting after N seconds"
        )

    submit_parser = subparsers.add_parser(
        "submit",
        help="Submit PDF documents",
        description="Store PDF documents and run one lesson job over them, in order.",
    )
    submit_parser.add_argument("pdf_paths", nargs="+", help="Paths to the PDF documents")
    submit_parser.add_argument("--user", required=True, help="Owner of the job")
    submit_parser.add_argument(
        "--enrichment",
        choices=[e.value for e in EnrichmentType],
        default=EnrichmentType.QUIZ.value,
        help="Enrichment generated per section (default: %(default)s)",
    )
    submit_parser.add_argument(
        "--language", default="en", help="Document language code (default: %(default)s)"
    )
    submit_parser.add_argument(
        "--voice",
        choices=["female", "male"],
        default="female",
        help="Narration voice for audio enrichment (default: %(default)s)",
    )
    add_wait_arguments(submit_parser)

    run_parser = subparsers.add_parser("run", help="Run or resume a job")
    run_parser.add_argument("job_id", help="Job ID")
    add_wait_arguments(run_parser)

    retry_parser = subparsers.add_parser("retry", help="Retry a job")
    retry_parser.add_argument("job_id", help="Job ID")
    add_wait_arguments(retry_parser)

    status_parser = subparsers.add_parser("status", help="Show job status")
    status_parser.add_argument("job_id", help="Job ID")
    status_parser.add_argument("--user", default=None, help="Require this owner")
    status_parser.add_argument("--json", action="store_true", help="Print as JSON")

    result_parser = subparsers.add_parser("result", help="Fetch an assembled lesson")
    result_parser.add_argument("job_id", help="Job ID")
    result_parser.add_argument("--user", default=None, help="Require this owner")
    result_parser.add_argument("--output", "-o", help="Write the lesson JSON to a file")

    list_parser = subparsers.add_parser("list", help="List jobs")
    list_parser.add_argument("--user", default=None, help="Filter by owner")
    list_parser.add_argument(
        "--status", choices=[s.value for s in JobStatus], help="Filter by status"
    )
    list_parser.add_argument(
        "--limit",
        type=int,
        default=DEFAULT_LIST_LIMIT,
        help="Maximum number of results (default: %(default)s)",
    )

    subparsers.add_parser(
        "validate-config",
        help="Validate configuration",
        description="Check the configuration file for errors.",
    )

    return parser


def print_status_report(report: JobStatusReport) -> None:
    """Print a formatted job status report."""
    print("\n" + "=" * SEPARATOR_WIDTH)
    print("JOB STATUS")
    print("=" * SEPARATOR_WIDTH)
    print(f"Job ID: {report.job_id}")
    if report.retry_of:
        print(f"Retry of: {report.retry_of}")
    print(f"Status: {report.status.value}")
    print(f"Stage: {report.stage.value if report.stage else '-'}")
    print(f"Progress: {report.progress_percent:.1f}%")
    print(f"Message: {report.message}")
    if report.eta_seconds is not None and not report.status.is_terminal:
        print(f"Time left in stage: ~{report.eta_seconds:.0f}s")
    if report.error_message:
        print(f"Error: {report.error_message}")
    if report.failed_units:
        print(f"\nFailed units ({len(report.failed_units)}):")
        for unit in report.failed_units:
            print(f"  - {unit['stage']} {unit['unit_index']}: {unit['error']}")
    print("=" * SEPARATOR_WIDTH + "\n")


if __name__ == "__main__":
    sys.exit(main())

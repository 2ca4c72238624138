from __future__ import annotations

import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

# Note: TRACE level already exists in loguru at level 5 (below DEBUG which is 10)
# Command output is logged there so --debug shows everything the tools print.


def _should_log_command_output(record) -> bool:
    """Filter raw command output - only show in TRACE mode."""
    tags = record["extra"].get("tags", [])
    if "command-output" in tags:
        return record["level"].no <= logger.level("TRACE").no
    return True


def resolve_level(*, quiet: bool = False, verbose: bool = False, debug: bool = False) -> str:
    """Map the mutually exclusive verbosity flags onto a loguru level name."""
    if debug:
        return "TRACE"
    if verbose:
        return "DEBUG"
    if quiet:
        return "WARNING"
    return "INFO"


def setup_logging(
    *,
    quiet: bool = False,
    verbose: bool = False,
    debug: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup console logging and, when a log directory is given, file sinks.

    Logging Tiers:
    - ERROR: step failures, teardown failures
    - WARNING: non-fatal conditions (undersized image, missing mkfs config)
    - SUCCESS/INFO: step start/completion, artifacts written
    - DEBUG: layout decisions, commands executed
    - TRACE: raw command output

    Log Files (only when log_dir is set):
    - build.log: everything at the console level or above
    - structured.jsonl: structured JSON records for analysis

    Args:
        quiet: Only report warnings and errors
        verbose: Enable DEBUG level logging
        debug: Enable TRACE level logging (command output included)
        log_dir: Directory for file sinks, usually an explicit workdir
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    console_level = resolve_level(quiet=quiet, verbose=verbose, debug=debug)

    # SINK 1: Console (stderr)
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_should_log_command_output,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <15}</cyan> | "
            "<blue>{extra[job_id]: <28}</blue> | "
            "{message}"
        ),
    )

    if log_dir is not None:
        add_file_sinks(log_dir, level=console_level, debug=debug)
    return logger


def add_file_sinks(log_dir: Path, *, level: str = "INFO", debug: bool = False) -> None:
    """Write build.log and structured.jsonl under ``log_dir``, creating it."""
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Build log
    logger.add(
        log_dir / "build.log",
        level=level,
        rotation="10 MB",
        retention=3,
        backtrace=debug,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <15} | "
            "{extra[job_id]: <28} | "
            "{message}"
        ),
    )

    # SINK 3: Structured JSON Log
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention=3,
        serialize=True,
        format="{message}",
    )


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["disk", "storage"])
        source: Source component (e.g., "gadget", "disk", "grub")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "step", "make_disk")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("step", step="make_disk") as log:
            log.debug("Writing partition table")
    """
    label = details.get("step", operation)
    job_id = f"{label}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{label} started")

        try:
            yield log
            duration = time.time() - start_time
            log.success(f"{label} completed", duration_seconds=round(duration, 2))
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{label} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the domain.
    """

    @staticmethod
    def for_state_machine(job_id: str | None = None) -> Logger:
        """Logger for step sequencing, resume and teardown."""
        if job_id is None:
            job_id = f"build-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="statemachine", tags=["build"])

    @staticmethod
    def for_gadget() -> Logger:
        """Logger for gadget loading and layout decisions."""
        return logger.bind(source="gadget", tags=["gadget", "layout"])

    @staticmethod
    def for_placement() -> Logger:
        """Logger for partition image preparation."""
        return logger.bind(source="placement", tags=["placement", "storage"])

    @staticmethod
    def for_disk() -> Logger:
        """Logger for disk image assembly."""
        return logger.bind(source="disk", tags=["disk", "storage"])

    @staticmethod
    def for_bootloader() -> Logger:
        """Logger for bootloader content handling and installation."""
        return logger.bind(source="bootloader", tags=["bootloader"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for external commands and filesystem operations."""
        return logger.bind(source="system", tags=["system"])

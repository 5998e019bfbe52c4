from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "ARCH_VM_BUILDER_LOG_DIR",
        Path.home() / ".local" / "state" / "arch-vm-builder" / "logs",
    )
)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Failed stages, cleanup that could not release resources
    - SUCCESS/INFO: Build stages, variants started and finished
    - DEBUG: Every external command and its output on failure
    - TRACE: Output of successful commands

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/arch-vm-builder/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "BUILD"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr)
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <12}</cyan> | "
            "<blue>{extra[job_id]: <22}</blue> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <12} | "
            "{extra[job_id]: <22} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <12} | "
                "{extra[job_id]: <22} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        serialize=True,
        format="{message}",
    )

    return logger


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
        tags: Tags for filtering (e.g., ["variant", "pipeline"])
        source: Source component (e.g., "disk", "loop", "variant")

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
    Context manager for tracking build stages with automatic timing.

    Logs the stage start, completion and failure with its duration.

    Args:
        operation: Operation name (e.g., "bootstrap", "variant")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("bootstrap", mirror=mirror) as log:
            log.debug("Writing pacman.conf")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except BaseException as e:
            duration = time.time() - start_time
            log.error(
                "{} failed: {}",
                operation.capitalize(),
                e,
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_command() -> Logger:
        """Logger for external command invocations."""
        return logger.bind(source="command", tags=["command"])

    @staticmethod
    def for_loop() -> Logger:
        """Logger for loop device and mount handling."""
        return logger.bind(source="loop", tags=["loop", "storage"])

    @staticmethod
    def for_disk() -> Logger:
        """Logger for partitioning and formatting."""
        return logger.bind(source="disk", tags=["disk", "storage"])

    @staticmethod
    def for_bootstrap() -> Logger:
        """Logger for the base system install."""
        return logger.bind(source="bootstrap", tags=["bootstrap"])

    @staticmethod
    def for_variant(name: str, job_id: str | None = None) -> Logger:
        """Logger for one variant going through the pipeline."""
        if job_id is None:
            job_id = f"{name}-{uuid.uuid4().hex[:8]}"
        return logger.bind(
            job_id=job_id, source="variant", tags=["variant", "pipeline"], variant=name
        )

    @staticmethod
    def for_cleanup() -> Logger:
        """Logger for the process-wide cleanup guard."""
        return logger.bind(source="cleanup", tags=["cleanup", "storage"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, selection, config)."""
        return logger.bind(source="system", tags=["system"])

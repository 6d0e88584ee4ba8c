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
        "RPI_AUTOINSTALL_LOG_DIR",
        Path.home() / ".local" / "state" / "rpi-autoinstall" / "logs",
    )
)


def _should_log_command_output(record) -> bool:
    """Keep raw tool output (stdout/stderr dumps) out of the console unless tracing."""
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "command-output" in tags:
        return record["level"].no <= logger.level("TRACE").no

    return True


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    log_files: bool = True,
) -> Logger:
    """
    Setup logging sinks for a pipeline run.

    Console output goes to stderr so that stdout stays free for the
    generated image path.

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug or --trace is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (tool output included)
        log_dir: Custom log directory (defaults to ~/.local/state/rpi-autoinstall/logs)
        log_files: Set to False to log to the console only
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - the operator-facing diagnostic stream
    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_should_log_command_output,
        colorize=True,
        format=(
            "<green>[{time:YYYY-MM-DD HH:mm:ss}]</green> "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "{message}"
        ),
    )

    if not log_files:
        return logger

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - milestones and failures (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <18} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - commands and their output
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <18} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
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
        job_id: Job identifier for tracking a pipeline run
        tags: Tags for filtering (e.g., ["verify", "gpg"])
        source: Source component (e.g., "download", "mount")

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
    Context manager for tracking a pipeline run with automatic timing.

    Logs start, completion and failure with the duration. The job id is
    contextualized so every record emitted inside the block carries it.

    Example:
        with operation_context("build", channel="daily") as log:
            log.debug("Resolving source")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.debug(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.debug(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except BaseException as e:
            duration = time.time() - start_time
            log.debug(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating component loggers with automatic context.
    """

    @staticmethod
    def for_pipeline(job_id: str | None = None) -> Logger:
        """Logger for the pipeline driver.

        Without ``job_id`` the job id comes from the enclosing
        ``operation_context``.
        """
        return get_logger(job_id=job_id, source="pipeline", tags=["pipeline"])

    @staticmethod
    def for_resolve() -> Logger:
        """Logger for source image resolution."""
        return get_logger(source="resolve", tags=["resolve", "network"])

    @staticmethod
    def for_download() -> Logger:
        """Logger for HTTP downloads."""
        return get_logger(source="download", tags=["download", "network"])

    @staticmethod
    def for_verify() -> Logger:
        """Logger for signature and digest verification."""
        return get_logger(source="verify", tags=["verify", "gpg"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for loop devices and mounts."""
        return get_logger(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_inject() -> Logger:
        """Logger for provisioning file replacement."""
        return get_logger(source="inject", tags=["inject", "storage"])

    @staticmethod
    def for_cleanup() -> Logger:
        """Logger for resource release."""
        return get_logger(source="cleanup", tags=["cleanup"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, commands, config)."""
        return get_logger(source="system", tags=["system"])

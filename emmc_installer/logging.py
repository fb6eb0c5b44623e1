from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Iterator

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "EMMC_INSTALLER_LOG_DIR",
        Path.home() / ".local" / "state" / "emmc-installer" / "logs",
    )
)

# Kept log files per sink; every run rotates at most once.
KEEP_RUNS = 10

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[step]: <10}</cyan> | "
    "{message}"
)
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{extra[job_id]: <16} | "
    "{extra[source]: <8} | "
    "{extra[step]: <10} | "
    "{message}"
)


def _should_log_command_output(record) -> bool:
    """Raw tool stdout/stderr only reaches the console at TRACE."""
    if record["level"].no >= logger.level("WARNING").no:
        return True
    if "command-output" in record["extra"].get("tags", []):
        return record["level"].no <= logger.level("TRACE").no
    return True


def new_job_id(prefix: str = "install") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Configure sinks for one installer run.

    Log Files:
    - install.log: INFO+ events of every run
    - debug.log: DEBUG+ (TRACE+ with --trace) events, only when asked for
    - structured.jsonl: the INFO+ events serialized one JSON object per line

    The console gets INFO+ by default. Raw command output is shown only
    with ``trace``.

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging, including every command's output
        log_dir: Log directory (defaults to EMMC_INSTALLER_LOG_DIR or
            ~/.local/state/emmc-installer/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "system", "step": "-"})

    console_level = "TRACE" if trace else "DEBUG" if debug else "INFO"
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_should_log_command_output,
        colorize=sys.stderr.isatty(),
        format=CONSOLE_FORMAT,
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.add(
        log_dir / "install.log",
        level="INFO",
        rotation="5 MB",
        retention=KEEP_RUNS,
        backtrace=False,
        diagnose=False,
        format=FILE_FORMAT,
    )
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention=KEEP_RUNS,
            backtrace=True,
            diagnose=True,
            format=FILE_FORMAT + " | {extra[tags]}",
        )
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention=KEEP_RUNS,
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
    """Logger with the given context bound; unset fields keep the run's values."""
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def install_run(job_id: str | None = None) -> Iterator[Logger]:
    """
    Scope one installation: every record logged inside carries its job id.

    Example:
        with install_run() as log:
            log.info("Resolving target")
            with install_step("backup", device="/dev/mmcblk2"):
                ...
    """
    job_id = job_id or new_job_id()
    with logger.contextualize(job_id=job_id):
        yield LoggerFactory.for_install()


@contextmanager
def install_step(step: str, **details) -> Iterator[Logger]:
    """
    Log the start, end and duration of one destructive step.

    A failure is logged with the exception type and re-raised unchanged.
    """
    with logger.contextualize(step=step, **details):
        log = logger.bind(source="storage", tags=["step", step])
        started = time.monotonic()
        log.info(f"{step}: started")
        try:
            yield log
        except Exception as error:
            log.bind(error_type=type(error).__name__).error(
                f"{step}: failed after {time.monotonic() - started:.1f}s "
                f"({type(error).__name__}: {error})"
            )
            raise
        log.success(f"{step}: done in {time.monotonic() - started:.1f}s")


class LoggerFactory:
    """Loggers bound to the component that emits them."""

    @staticmethod
    def for_install(**details) -> Logger:
        return logger.bind(source="install", tags=["install"], **details)

    @staticmethod
    def for_storage() -> Logger:
        """Block device, partition and filesystem operations."""
        return logger.bind(source="storage", tags=["storage", "emmc"])

    @staticmethod
    def for_command() -> Logger:
        """Raw external command lines and output."""
        return logger.bind(source="command", tags=["command-output"])

    @staticmethod
    def for_registry() -> Logger:
        return logger.bind(source="registry", tags=["registry"])

    @staticmethod
    def for_system() -> Logger:
        """Startup, privileges and configuration."""
        return logger.bind(source="system", tags=["system"])

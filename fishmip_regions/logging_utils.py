"""
Logging utilities for consistent console output across the pipeline.

Stage banners and progress lines go through rich; detailed messages go
through the standard logging module, which setup_logging routes to a log
file (everything) and the console (INFO and above).
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, List, Optional

from rich.console import Console
from rich.panel import Panel

_console = Console(highlight=False)

LOG_FILE_FORMAT = '%(asctime)s %(name)-12s %(levelname)-8s %(message)s'
CONSOLE_FORMAT = '%(levelname)-5s %(message)s'


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    """
    Configure the root logger for a pipeline run.

    Args:
        log_file: File receiving DEBUG-level records (None for console only)
        verbose: Show DEBUG records on the console as well

    Returns:
        The "Run" logger
    """
    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=logging.DEBUG,
            format=LOG_FILE_FORMAT,
            datefmt='%m-%d %H:%M',
            filename=str(log_file),
            filemode='w'
        )
    else:
        logging.basicConfig(level=logging.DEBUG, format=CONSOLE_FORMAT)
        return logging.getLogger("Run")

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logging.getLogger('').addHandler(console)
    return logging.getLogger("Run")


class RecordCollector(logging.Handler):
    """Keeps every record it receives, flattened so it can be pickled."""

    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records: List[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord):
        record.msg = record.getMessage()
        record.args = None
        record.exc_info = None
        self.records.append(record)


@contextmanager
def collect_records():
    """
    Capture all records emitted inside the block on the root logger.

    Used in joblib worker processes, which do not inherit the driver's
    handlers; the driver replays the records with replay_records.
    """
    root = logging.getLogger()
    collector = RecordCollector()
    previous_level = root.level
    root.addHandler(collector)
    root.setLevel(logging.DEBUG)
    try:
        yield collector.records
    finally:
        root.removeHandler(collector)
        root.setLevel(previous_level)


def replay_records(records: Iterable[logging.LogRecord]):
    """Hand records captured in a worker to this process's handlers."""
    for record in records:
        logger = logging.getLogger(record.name)
        if logger.isEnabledFor(record.levelno):
            logger.handle(record)


def print_header(text: str):
    """Print a boxed stage header, e.g. print_header("Per-model reduction")."""
    _console.print(Panel(text, expand=False, border_style="blue"))


def print_step(current: int, total: int, description: str):
    """Print a progress line such as '[2/5] apecosm / gfdl-esm4...'."""
    _console.print(f"  [bold cyan]\\[{current}/{total}][/bold cyan] {description}...")


def print_success(message: str):
    _console.print(f":white_check_mark: {message}", style="green")


def print_info(message: str):
    _console.print(f"[blue]ℹ[/blue] {message}")


def print_warning(message: str):
    _console.print(f":warning: {message}", style="yellow")


def print_error(message: str):
    _console.print(f":x: {message}", style="bold red")

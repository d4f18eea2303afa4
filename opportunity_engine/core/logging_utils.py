"""
Logging utilities for report runs.

Per-run file logging plus structured exception logging. The run file
handler sits on the root logger, so every module logger
(``logging.getLogger(__name__)``) reaches it, but a filter keeps only
records emitted while that run is the current one. Concurrent runs
(separate asyncio tasks, each with its own context) log to their own
files.
"""

import contextvars
import logging
import sys
import threading
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
RUN_LOGGER_PREFIX = "opportunity_engine.run."

current_run_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "current_run_id", default=None
)

_level_lock = threading.Lock()
_active_handlers = 0
_saved_root_level = logging.NOTSET


class RunLogFilter(logging.Filter):
    """Accept records that belong to one run."""

    def __init__(self, run_id: str):
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith(RUN_LOGGER_PREFIX):
            return record.name == RUN_LOGGER_PREFIX + self.run_id
        return current_run_id.get() == self.run_id


class RunFileHandler(logging.FileHandler):
    """File handler carrying the context token of the run it belongs to."""

    def __init__(self, path: str, run_id: str):
        super().__init__(path, mode='w', encoding='utf-8')
        self.run_id = run_id
        self.context_token: Optional[contextvars.Token] = None
        self.addFilter(RunLogFilter(run_id))


def _acquire_debug_level():
    global _active_handlers, _saved_root_level
    root_logger = logging.getLogger()
    with _level_lock:
        if _active_handlers == 0:
            _saved_root_level = root_logger.level
        _active_handlers += 1
        if root_logger.level > logging.DEBUG or root_logger.level == logging.NOTSET:
            root_logger.setLevel(logging.DEBUG)


def _release_debug_level():
    global _active_handlers
    with _level_lock:
        _active_handlers = max(0, _active_handlers - 1)
        if _active_handlers == 0:
            logging.getLogger().setLevel(_saved_root_level)


def setup_run_logging(log_dir: str, run_id: str, idea_title: str = "",
                      console: bool = False) -> Tuple[logging.Logger, logging.Handler, str]:
    """
    Attach a file handler for one pipeline run and make the run current
    in this context.

    Args:
        log_dir: Directory for the log file
        run_id: Run identifier, used in the file name
        idea_title: Idea title for the log header
        console: Also attach an INFO console handler

    Returns:
        Tuple of (run logger, file handler, log file path). Pass the
        handler to ``teardown_run_logging`` when the run ends.
    """
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    log_file_path = str(Path(log_dir) / f"run_{run_id}.log")

    root_logger = logging.getLogger()
    _acquire_debug_level()

    file_handler = RunFileHandler(log_file_path, run_id)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
    file_handler.context_token = current_run_id.set(run_id)
    root_logger.addHandler(file_handler)

    if console and not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in root_logger.handlers
    ):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(logging.Formatter('%(message)s'))
        root_logger.addHandler(console_handler)

    run_logger = logging.getLogger(RUN_LOGGER_PREFIX + run_id)
    run_logger.info("=" * 70)
    run_logger.info(f"Opportunity report run {run_id}")
    if idea_title:
        run_logger.info(f"Idea: {idea_title}")
    run_logger.info(f"Started: {datetime.now().isoformat()}")
    run_logger.info("=" * 70)

    return run_logger, file_handler, log_file_path


def teardown_run_logging(handler: logging.Handler):
    """Detach and close a handler installed by ``setup_run_logging``."""
    logging.getLogger().removeHandler(handler)
    handler.close()
    token = getattr(handler, "context_token", None)
    if token is not None:
        current_run_id.reset(token)
        handler.context_token = None
        _release_debug_level()


def log_exception(logger: logging.Logger, exc: BaseException, context: str = "",
                  **kwargs) -> None:
    """Log an exception with traceback and key/value context."""
    error_msg = f"Exception occurred: {type(exc).__name__}: {exc}"
    if context:
        error_msg = f"{context} - {error_msg}"
    logger.error(error_msg)

    tb_str = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    logger.debug(f"Traceback:\n{tb_str}")

    if kwargs:
        logger.error(f"Context: {kwargs}")


def get_error_info(exc: BaseException, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Structured error information for statistics and API responses."""
    return {
        "error_type": type(exc).__name__,
        "error_message": str(exc),
        "timestamp": datetime.now().isoformat(),
        "context": context or {},
    }

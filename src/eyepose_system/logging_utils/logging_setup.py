# logging_setup.py
"""
Logging for eye model runs, written by one dedicated process.

- Every process (the driver and the pose-fitting pool workers) puts its
  records on a shared multiprocessing queue through a QueueHandler.
- A non-daemon writer process drains the queue into a size-rotated file and
  fsyncs after each record, so a run that dies mid-search keeps its log.
- Without start_logging() nothing is written; loggers stay silent children
  of 'eyepose', which keeps library use and tests free of side effects.
"""

from __future__ import annotations
import atexit
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from multiprocessing import Process, Queue, current_process
from logging.handlers import RotatingFileHandler, QueueHandler

LOGGER_NAME = "eyepose"
DEFAULT_LOG_DIR = Path.home() / "EyePoseLogs"
STOP_SENTINEL = "__STOP__"

FILE_FORMAT = logging.Formatter("%(asctime)s [%(levelname)s] %(processName)s %(name)s %(message)s")
CONSOLE_FORMAT = logging.Formatter("[%(levelname)s] %(name)s: %(message)s")

_queue: Queue | None = None
_writer: Process | None = None
_crash_path: Path | None = None


class _FsyncRotatingFileHandler(RotatingFileHandler):
    def emit(self, record: logging.LogRecord) -> None:
        super().emit(record)
        try:
            self.flush()
            if self.stream and hasattr(self.stream, "fileno"):
                os.fsync(self.stream.fileno())
        except OSError:
            pass


def _run_writer(queue: Queue, log_path: str, crash_path: str) -> None:
    """Writer process: file every queued record until the stop sentinel arrives."""
    sink = logging.getLogger(f"{LOGGER_NAME}.writer")
    sink.setLevel(logging.DEBUG)
    sink.propagate = False
    handler = _FsyncRotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5)
    handler.setFormatter(FILE_FORMAT)
    sink.addHandler(handler)

    try:
        for record in iter(queue.get, STOP_SENTINEL):
            sink.handle(record)
    except (EOFError, OSError) as e:
        with open(crash_path, "a", encoding="utf-8") as f:
            f.write(f"{datetime.now():%Y-%m-%d %H:%M:%S} log writer lost its queue: {e!r}\n")
    finally:
        handler.close()


def start_logging(level: int = logging.INFO, log_dir: Path | None = None) -> Path | None:
    """
    Start the writer process and route the 'eyepose' logger into it.

    Call once from the driving script, under `if __name__ == "__main__":`.
    Returns the log file path, or None when logging already runs or the
    caller is not the main process.
    """
    global _queue, _writer, _crash_path

    if _queue is not None or current_process().name != "MainProcess":
        return None

    log_dir = Path(log_dir) if log_dir is not None else DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_path = log_dir / f"eyepose_{stamp}.log"
    _crash_path = log_dir / f"crash_{stamp}.log"

    _queue = Queue()
    _writer = Process(target=_run_writer, args=(_queue, str(log_path), str(_crash_path)), name="LogWriter")
    _writer.daemon = False
    _writer.start()

    _install_queue_handler(_queue, level)
    atexit.register(shutdown_logging)
    return log_path


def log_to_console(level: int = logging.INFO) -> None:
    """Mirror 'eyepose' records to stderr, for interactive runs of the demo blocks."""
    lg = logging.getLogger(LOGGER_NAME)
    lg.setLevel(min(lg.level or level, level))
    if not any(getattr(h, "_eyepose_console", False) for h in lg.handlers):
        h = logging.StreamHandler(sys.stderr)
        h.setFormatter(CONSOLE_FORMAT)
        h.setLevel(level)
        h._eyepose_console = True
        lg.addHandler(h)


def get_logger(name: str | None = None) -> logging.Logger:
    """
    The 'eyepose' logger, or a child of it. Module names under the
    eyepose_system package are shortened, so eyepose_system.projection.refraction
    logs as eyepose.projection.refraction.
    """
    if not name or name == LOGGER_NAME:
        return logging.getLogger(LOGGER_NAME)
    prefix = "eyepose_system."
    if name.startswith(prefix):
        name = name[len(prefix):]
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def get_log_queue() -> Queue | None:
    """Queue of the running writer process, or None when logging was not started."""
    return _queue


def worker_logging_init(queue: Queue | None, level: int = logging.INFO) -> None:
    """
    Pool initializer: route this worker's 'eyepose' records into the writer queue.
    A None queue leaves the worker with the default (silent) logging setup.
    """
    if queue is not None:
        _install_queue_handler(queue, level)


def shutdown_logging(timeout: float = 2.0) -> None:
    """Stop the writer after it has drained the queue. Safe to call more than once."""
    global _queue, _writer

    lg = logging.getLogger(LOGGER_NAME)
    for h in [h for h in lg.handlers if isinstance(h, QueueHandler)]:
        lg.removeHandler(h)
        h.close()

    if _queue is not None:
        try:
            _queue.put(STOP_SENTINEL)
        except (ValueError, OSError):
            pass
    if _writer is not None:
        _writer.join(timeout)
        if _writer.is_alive():
            _writer.terminate()
    _queue, _writer = None, None


def install_crash_hooks() -> None:
    """
    Log uncaught exceptions of the main thread and of worker threads as
    CRITICAL, and append their traceback to the crash file of this run.
    """
    import threading
    import traceback

    def _excepthook(exc_type, exc, tb):
        get_logger().critical("Uncaught exception", exc_info=(exc_type, exc, tb))
        if _crash_path is not None:
            try:
                with open(_crash_path, "a", encoding="utf-8") as f:
                    traceback.print_exception(exc_type, exc, tb, file=f)
            except OSError:
                pass

    sys.excepthook = _excepthook
    threading.excepthook = lambda args: _excepthook(args.exc_type, args.exc_value, args.exc_traceback)


def _install_queue_handler(queue: Queue, level: int) -> None:
    lg = logging.getLogger(LOGGER_NAME)
    lg.setLevel(level)
    if not any(isinstance(h, QueueHandler) for h in lg.handlers):
        lg.addHandler(QueueHandler(queue))

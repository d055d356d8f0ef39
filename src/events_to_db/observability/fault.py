"""Process-wide handler for unexpected faults.

Any exception that escapes to the top of the main thread or of a worker
thread is reported with thread name, message and location, then the process
exits with ``FAULT_EXIT_CODE`` so supervisors can tell a crash apart from an
ordinary fatal error (exit status 1).
"""

from __future__ import annotations

import os
import sys
import threading
import traceback
from types import TracebackType

FAULT_EXIT_CODE = 3


def format_fault(
    exc: BaseException,
    thread_name: str | None = None,
    tb: TracebackType | None = None,
) -> str:
    """Render ``thread '<name>' faulted at '<msg>': <file>:<line>`` plus traceback."""
    thread_name = thread_name or threading.current_thread().name or "unnamed"
    tb = tb if tb is not None else exc.__traceback__
    message = str(exc) or type(exc).__name__
    frames = traceback.extract_tb(tb) if tb is not None else []
    if frames:
        last = frames[-1]
        head = f"thread '{thread_name}' faulted at '{message}': {last.filename}:{last.lineno}"
    else:
        head = f"thread '{thread_name}' faulted at '{message}'"
    body = "".join(traceback.format_exception(type(exc), exc, tb))
    return f"{head}\n{body}"


def report_fault(
    exc: BaseException,
    thread_name: str | None = None,
    tb: TracebackType | None = None,
) -> None:
    """Write the fault report to stderr."""
    sys.stderr.write(format_fault(exc, thread_name, tb))
    sys.stderr.flush()


def _excepthook(
    exc_type: type[BaseException],
    exc: BaseException,
    tb: TracebackType | None,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc, tb)
        return
    report_fault(exc, threading.current_thread().name, tb)
    os._exit(FAULT_EXIT_CODE)


def _thread_excepthook(args: threading.ExceptHookArgs) -> None:
    if args.exc_type is SystemExit or args.exc_value is None:
        return
    name = args.thread.name if args.thread is not None else None
    report_fault(args.exc_value, name, args.exc_traceback)
    os._exit(FAULT_EXIT_CODE)


def install_fault_handler() -> None:
    """Install the hooks for this process; calling it again is harmless."""
    sys.excepthook = _excepthook
    threading.excepthook = _thread_excepthook

"""Child-process helper used for git and build tools.

Output is streamed to a log file by a reader thread while the last lines are
kept in memory for error reports. The caller's deadline and cancel event are
polled while the child runs; either one terminates the child (SIGTERM, then
SIGKILL after a grace period).
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Optional

from devnet.errors import Cancelled, Timeout

logger = logging.getLogger(__name__)

POLL_INTERVAL_S = 0.1
TERMINATE_GRACE_S = 5.0


@dataclass
class CommandResult:
    returncode: int
    tail: str
    duration_s: float


def terminate(proc: subprocess.Popen, grace_s: float = TERMINATE_GRACE_S) -> None:
    """SIGTERM the child, SIGKILL it if it is still alive after ``grace_s``."""
    if proc.poll() is not None:
        return
    try:
        proc.terminate()
        proc.wait(timeout=grace_s)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process {proc.pid} ignored SIGTERM, killing")
        proc.kill()
        proc.wait()
    except ProcessLookupError:
        pass


def run_command(
    argv: List[str],
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    log_path: Optional[str] = None,
    deadline: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
    tail_lines: int = 50,
    display: Optional[str] = None,
) -> CommandResult:
    """
    Run ``argv`` to completion.

    Args:
        argv: Command and arguments
        cwd: Working directory
        env: Full environment for the child (defaults to the parent's)
        log_path: File that receives combined stdout/stderr (appended)
        deadline: time.monotonic() value after which the child is terminated
        cancel: Event that terminates the child when set
        tail_lines: Number of trailing output lines kept for the result
        display: Command string used in logs instead of argv (for masking secrets)

    Returns:
        CommandResult with the exit code and output tail

    Raises:
        Timeout: deadline passed before the child exited
        Cancelled: cancel was set before the child exited
        FileNotFoundError: argv[0] does not exist
    """
    shown = display or " ".join(argv)
    if cancel is not None and cancel.is_set():
        raise Cancelled(f"cancelled before running: {shown}")
    if deadline is not None and time.monotonic() >= deadline:
        raise Timeout(f"deadline exceeded before running: {shown}")

    logger.debug(f"Running: {shown} (cwd={cwd})")
    started = time.monotonic()
    tail: deque = deque(maxlen=max(tail_lines, 1))
    log_file = open(log_path, "a", encoding="utf-8", errors="replace") if log_path else None

    try:
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )
    except BaseException:
        if log_file:
            log_file.close()
        raise

    def _reader() -> None:
        for line in proc.stdout:
            tail.append(line)
            if log_file:
                log_file.write(line)
                log_file.flush()

    reader = threading.Thread(target=_reader, name=f"output-{proc.pid}", daemon=True)
    reader.start()

    try:
        while proc.poll() is None:
            if cancel is not None and cancel.is_set():
                terminate(proc)
                raise Cancelled(f"cancelled: {shown}")
            if deadline is not None and time.monotonic() >= deadline:
                terminate(proc)
                raise Timeout(f"deadline exceeded: {shown}")
            time.sleep(POLL_INTERVAL_S)
    finally:
        if proc.poll() is None:
            terminate(proc)
        reader.join(timeout=TERMINATE_GRACE_S)
        if proc.stdout:
            proc.stdout.close()
        if log_file:
            log_file.close()

    return CommandResult(
        returncode=proc.returncode,
        tail="".join(tail),
        duration_s=time.monotonic() - started,
    )


def child_env(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    env = dict(os.environ)
    if extra:
        env.update(extra)
    return env

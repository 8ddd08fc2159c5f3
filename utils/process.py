"""
Subprocess helper — runs a command with a hard deadline.

The child gets its own process group so that a timeout kills everything it
spawned (a shell plus its children), not just the shell.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration_sec: float = 0.0


def run_process(
    cmd: str | list[str],
    cwd: Path | str,
    timeout: float,
    shell: bool = False,
    input_text: str | None = None,
    env: dict | None = None,
) -> ProcessResult:
    """
    Run `cmd` and wait at most `timeout` seconds for it.

    Spawn errors (missing binary, bad cwd) propagate as OSError; callers
    decide how to report them. On timeout the process group is killed and
    whatever output was produced so far is returned with `timed_out=True`.
    """
    start = time.monotonic()
    proc = subprocess.Popen(
        cmd,
        cwd=str(cwd),
        shell=shell,
        env=env,
        stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        start_new_session=True,
    )
    try:
        stdout, stderr = proc.communicate(input=input_text, timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_group(proc)
        stdout, stderr = proc.communicate()
        return ProcessResult(
            exit_code=None,
            stdout=stdout or "",
            stderr=stderr or "",
            timed_out=True,
            duration_sec=round(time.monotonic() - start, 2),
        )
    return ProcessResult(
        exit_code=proc.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
        duration_sec=round(time.monotonic() - start, 2),
    )


def _kill_group(proc: subprocess.Popen) -> None:
    """Hard-kill the child and its process group."""
    if hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except ProcessLookupError:
            return
        except OSError as e:
            log.warning("killpg(%d) failed, killing child only: %s", proc.pid, e)
    proc.kill()


def truncate(text: str, max_chars: int) -> str:
    """Keep the tail of `text` (where failures usually are)."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return f"... [{len(text) - max_chars} chars truncated]\n" + text[-max_chars:]

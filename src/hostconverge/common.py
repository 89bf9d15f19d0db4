"""Common utilities and result types for host provisioning."""

import fcntl
import hashlib
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from hostconverge.errors import ErrorKind
from hostconverge.playbook import Step
from hostconverge.state import StepStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one step in one run."""
    step: Step
    changed: bool
    status: StepStatus
    error: Optional[ErrorKind] = None
    message: str = ''
    duration: float = 0.0

    @property
    def failed(self) -> bool:
        return self.status == StepStatus.FAILED

    @property
    def fatal(self) -> bool:
        """True if this failure counts against the run's exit code."""
        return self.failed and not self.step.best_effort


@dataclass(frozen=True)
class Run:
    """Ordered, immutable sequence of results for one invocation."""
    results: tuple[ExecutionResult, ...] = ()
    aborted: bool = False
    check_mode: bool = False

    @property
    def changed_count(self) -> int:
        return sum(1 for r in self.results if r.changed and not r.failed)

    @property
    def ok_count(self) -> int:
        return sum(1 for r in self.results if not r.failed)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if r.failed)

    @property
    def fatal_failures(self) -> list[ExecutionResult]:
        return [r for r in self.results if r.fatal]

    @property
    def success(self) -> bool:
        return not self.fatal_failures

    @property
    def exit_code(self) -> int:
        """0 when every non-best-effort step converged, 1 otherwise."""
        return 0 if self.success else 1

    def recap(self) -> str:
        """One-line summary in the ok/changed/failed form."""
        return f"ok={self.ok_count} changed={self.changed_count} failed={self.failed_count}"


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None,
    stdin: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            input=stdin,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def file_digest(path: Path, algorithm: str = 'sha256') -> str:
    """Return the hex digest of a file, read in chunks."""
    h = hashlib.new(algorithm)
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b''):
            h.update(chunk)
    return h.hexdigest()


def text_digest(text: str, algorithm: str = 'sha256') -> str:
    """Return the hex digest of UTF-8 encoded text."""
    return hashlib.new(algorithm, text.encode('utf-8')).hexdigest()


class LockHeldError(Exception):
    """Another run already holds the lock."""


class RunLock:
    """Exclusive, non-blocking lock serializing runs on one host.

    The executor itself does not lock; concurrent runs are the caller's
    problem. The CLI wraps every mutating run in this lock.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            os.close(fd)
            raise LockHeldError(f"Another run holds {self.path}") from e
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug(f"Acquired run lock {self.path}")

    def release(self) -> None:
        if self._fd is None:
            return
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None

    def __enter__(self) -> 'RunLock':
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()

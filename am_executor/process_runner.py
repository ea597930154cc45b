"""
=====================================================================
am-executor Process Runner
=====================================================================
Runs the configured command once per notification.

Key Features:
- Child environment = inherited environment + encoded alert entries
  (alert entries win on name clashes)
- stdout/stderr merged and logged line by line
- In-flight gauge paired inc/dec on every exit path, including spawn
  failure; duration observed on every exit path
- No concurrency cap: each call is independent
- Live children tracked so a timed-out shutdown can terminate them
=====================================================================
"""

import os
import logging
import subprocess
import threading
import time
from typing import Dict, List, Optional, Sequence, Set

from am_executor.executor_metrics import ExecutorMetrics

logger = logging.getLogger(__name__)


class ExecutionError(Exception):
    """Raised when the command cannot be started or exits non-zero."""
    pass


def build_environment(extra_env: Sequence[str], base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Merge ``NAME=VALUE`` entries over a base environment.

    Entries are applied in order, so later entries (and all entries over
    the inherited environment) win. The name is everything before the first
    ``=``, matching how the C library splits environ strings.
    """
    env = dict(os.environ if base is None else base)
    for entry in extra_env:
        name, _, value = entry.partition("=")
        env[name] = value
    return env


class ProcessRunner:
    """Owns the command line and executes it with an alert environment."""

    def __init__(self, command: str, args: Optional[Sequence[str]] = None,
                 metrics: Optional[ExecutorMetrics] = None):
        if not command:
            raise ValueError("Require command")
        self.command = command
        self.args = list(args or [])
        self.metrics = metrics if metrics is not None else ExecutorMetrics()

        self._live: Set[subprocess.Popen] = set()
        self._live_lock = threading.Lock()

    @classmethod
    def from_argv(cls, argv: Sequence[str], metrics: Optional[ExecutorMetrics] = None) -> "ProcessRunner":
        """Build a runner from trailing positional CLI arguments."""
        if not argv:
            raise ValueError("Require command")
        return cls(argv[0], argv[1:], metrics=metrics)

    @property
    def argv(self) -> List[str]:
        return [self.command] + self.args

    def run(self, extra_env: Sequence[str]) -> None:
        """
        Execute the command and block until it exits.

        Raises:
            ExecutionError: spawn failure or non-zero exit status
        """
        self.metrics.processes_current.inc()
        start_time = time.monotonic()
        try:
            self._execute(build_environment(extra_env))
        finally:
            self.metrics.process_duration.observe(time.monotonic() - start_time)
            self.metrics.processes_current.dec()

    def _execute(self, env: Dict[str, str]) -> None:
        try:
            proc = subprocess.Popen(
                self.argv,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except (OSError, ValueError) as e:
            # ValueError: NUL byte in an environment name or value
            raise ExecutionError(f"failed to start {self.command}: {e}") from e

        with self._live_lock:
            self._live.add(proc)
        try:
            logger.debug(f"Started {self.command} (pid {proc.pid})")
            with proc.stdout:
                for line in proc.stdout:
                    logger.info(line.rstrip("\r\n"), extra={"command": self.command, "pid": proc.pid})
            returncode = proc.wait()
        finally:
            with self._live_lock:
                self._live.discard(proc)

        if returncode != 0:
            if returncode < 0:
                raise ExecutionError(f"{self.command}: terminated by signal {-returncode}")
            raise ExecutionError(f"{self.command}: exit status {returncode}")
        logger.debug(f"{self.command} (pid {proc.pid}) exited successfully")

    def live_count(self) -> int:
        with self._live_lock:
            return len(self._live)

    def terminate_all(self) -> int:
        """Send SIGTERM to every child still running. Returns how many."""
        with self._live_lock:
            procs = list(self._live)
        count = 0
        for proc in procs:
            if proc.poll() is not None:
                continue
            try:
                proc.terminate()
                count += 1
                logger.warning(f"Terminated {self.command} (pid {proc.pid})")
            except ProcessLookupError:
                pass
        return count

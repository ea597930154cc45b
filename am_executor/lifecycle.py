#!/usr/bin/env python3
"""
=====================================================================
am-executor Lifecycle Coordinator
=====================================================================
Graceful shutdown and configuration reload.

Signal handlers do nothing but enqueue onto one of two channels; two
background watcher threads consume them:

- Termination watcher (SIGTERM, SIGINT): stops accepting connections,
  waits up to the shutdown timeout for in-flight requests (and so their
  commands) to finish, then reports the exit code. Fires once.
- Reload watcher (SIGHUP): reloads the configuration file; on failure
  the previous configuration stays active. Loops forever.

In-flight requests are counted by RequestTracker, a WSGI middleware that
releases a request only after its response has been written.
=====================================================================
"""

import logging
import queue
import signal
import threading
from typing import Any, Callable, Iterable, Optional

from werkzeug.wsgi import ClosingIterator

from am_executor.config_loader import ConfigError, ConfigHolder

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT = 5.0

_STOP = object()


class RequestTracker:
    """WSGI middleware counting requests whose response is not yet sent."""

    def __init__(self, app: Callable):
        self.app = app
        self._active = 0
        self._cond = threading.Condition()

    def __call__(self, environ, start_response) -> Iterable[bytes]:
        with self._cond:
            self._active += 1
        try:
            app_iter = self.app(environ, start_response)
        except BaseException:
            self._release()
            raise
        return ClosingIterator(app_iter, [self._release])

    def _release(self) -> None:
        with self._cond:
            self._active -= 1
            self._cond.notify_all()

    @property
    def active(self) -> int:
        with self._cond:
            return self._active

    def wait_idle(self, timeout: Optional[float]) -> bool:
        """Block until no request is in flight. False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._active == 0, timeout=timeout)


class LifecycleCoordinator:
    """Owns the termination and reload watchers for one server."""

    def __init__(
        self,
        server: Any,
        tracker: RequestTracker,
        config_holder: ConfigHolder,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT,
        on_timeout: Optional[Callable[[], Any]] = None,
    ):
        self.server = server
        self.tracker = tracker
        self.config_holder = config_holder
        self.shutdown_timeout = shutdown_timeout
        self.on_timeout = on_timeout

        self._terminate: "queue.Queue[Any]" = queue.Queue()
        self._reload: "queue.Queue[Any]" = queue.Queue()
        self._done = threading.Event()
        self.exit_code: Optional[int] = None

        self.termination_thread: Optional[threading.Thread] = None
        self.reload_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Notification channels
    # ------------------------------------------------------------------

    def notify_terminate(self, signum: int = signal.SIGTERM) -> None:
        self._terminate.put(signum)

    def notify_reload(self) -> None:
        self._reload.put(signal.SIGHUP)

    def install_signal_handlers(self) -> None:
        """Route OS signals onto the channels. Main thread only."""

        def terminate_handler(signum, frame):
            self.notify_terminate(signum)

        def reload_handler(signum, frame):
            self.notify_reload()

        signal.signal(signal.SIGTERM, terminate_handler)
        signal.signal(signal.SIGINT, terminate_handler)
        if hasattr(signal, "SIGHUP"):
            signal.signal(signal.SIGHUP, reload_handler)
        logger.info("Signal handlers registered for graceful shutdown and reload")

    # ------------------------------------------------------------------
    # Watchers
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start both watchers. Call before the server starts serving."""
        self.termination_thread = threading.Thread(
            target=self._watch_termination, daemon=True, name="TerminationWatcher")
        self.reload_thread = threading.Thread(
            target=self._watch_reload, daemon=True, name="ReloadWatcher")
        self.termination_thread.start()
        self.reload_thread.start()

    def _watch_termination(self) -> None:
        signum = self._terminate.get()
        try:
            sig_name = signal.Signals(signum).name
        except ValueError:
            sig_name = str(signum)
        logger.warning(f"{sig_name} received. Initiating graceful shutdown...")

        try:
            self.exit_code = self.shutdown()
        except Exception as e:
            logger.error(f"Failed to shutdown gracefully: {e}", exc_info=True)
            self.exit_code = 1
        finally:
            self._reload.put(_STOP)
            self._done.set()

    def _watch_reload(self) -> None:
        while True:
            item = self._reload.get()
            if item is _STOP:
                break
            try:
                self.config_holder.reload()
            except ConfigError as e:
                logger.error(f"Could not reload configuration: {e}")
            else:
                logger.info("Configuration reloaded")

    def shutdown(self) -> int:
        """
        Stop accepting connections and drain in-flight requests.

        Returns:
            0 if every request finished within the timeout, 1 otherwise
        """
        # Stops serve_forever(); must not be called from the serving thread
        self.server.shutdown()
        self.server.server_close()
        logger.info(
            f"Listener closed, waiting up to {self.shutdown_timeout}s for "
            f"{self.tracker.active} in-flight request(s)"
        )

        if not self.tracker.wait_idle(self.shutdown_timeout):
            logger.error(
                f"Failed to shutdown gracefully: {self.tracker.active} request(s) still "
                f"running after {self.shutdown_timeout}s"
            )
            if self.on_timeout is not None:
                self.on_timeout()
            return 1

        logger.info("Graceful shutdown complete")
        return 0

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Block until the termination watcher finished; returns the exit code."""
        self._done.wait(timeout)
        return self.exit_code

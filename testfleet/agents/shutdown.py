"""
Shutdown Coordinator
====================
Owns interruption handling and the single exit-cleanup pass of an invocation.

STATE MACHINE:
    idle ──arm()──▶ armed ──1st interrupt──▶ terminating ──cleanup()──▶ cleaned
                                              │  ▲
                                              └──┘ 2nd interrupt (force kill)

    - 1st interrupt: the cancellation token is set (graceful) and every tracked
      container is asked to stop within the grace period, on a worker thread
      so the event loop keeps draining finished tasks.
    - 2nd interrupt: the token is marked forced and every tracked container is
      killed immediately.
    - cleanup(): runs exactly once on any exit path; later calls return the
      first report. It never raises.

Running tasks observe the CancellationToken cooperatively; nothing here
cancels asyncio tasks directly.
"""
import asyncio
import atexit
import logging
import shutil
import signal
import threading
from enum import Enum
from typing import Optional

from testfleet.executor.container_manager import ContainerManager
from testfleet.models.run_summary import ShutdownReport
from testfleet.resources.resource_pool import ResourcePool
from testfleet.services.result_channel import ResultPublisher

logger = logging.getLogger(__name__)

_HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CancellationToken:
    """Thread-safe cancellation flag with a graceful and a forced level."""

    def __init__(self) -> None:
        self._cancelled = threading.Event()
        self._forced = threading.Event()

    def cancel(self, forced: bool = False) -> None:
        self._cancelled.set()
        if forced:
            self._forced.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def forced(self) -> bool:
        return self._forced.is_set()


class CoordinatorState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    TERMINATING = "terminating"
    CLEANED = "cleaned"


class ShutdownCoordinator:
    """
    Parameters
    ----------
    containers : ContainerManager
        Source of the tracked container ids.
    publisher : ResultPublisher | None
        Its records are purged during cleanup.
    run_dir : str | None
        Run scratch directory, deleted during cleanup.
    grace_period : float
        Seconds each container gets to stop after the first interrupt.
    token : CancellationToken | None
        Shared with the scheduler. A new token is created when None.
    """

    def __init__(self, containers: ContainerManager,
                 publisher: Optional[ResultPublisher] = None,
                 run_dir: Optional[str] = None,
                 grace_period: float = 10.0,
                 token: Optional[CancellationToken] = None) -> None:
        self.containers = containers
        self.publisher = publisher
        self.run_dir = run_dir
        self.grace_period = grace_period
        self.token = token or CancellationToken()
        self.pool: Optional[ResourcePool] = None

        self.state = CoordinatorState.IDLE
        self.interrupt_count = 0
        self._lock = threading.Lock()
        self._cleanup_lock = threading.Lock()
        self._report: Optional[ShutdownReport] = None
        self._stop_thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_handlers: dict = {}

    def attach_pool(self, pool: ResourcePool) -> None:
        self.pool = pool

    # ------------------------------------------------------------------
    # Handler installation
    # ------------------------------------------------------------------
    def arm(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Install SIGINT/SIGTERM handlers and the atexit backstop."""
        if self.state != CoordinatorState.IDLE:
            return

        try:
            loop = loop or asyncio.get_running_loop()
            for sig in _HANDLED_SIGNALS:
                loop.add_signal_handler(sig, self.handle_interrupt, sig)
            self._loop = loop
        except (RuntimeError, NotImplementedError):
            # no running loop (or unsupported platform): plain signal handlers
            try:
                for sig in _HANDLED_SIGNALS:
                    self._previous_handlers[sig] = signal.signal(
                        sig, lambda signum, frame: self.handle_interrupt(signum)
                    )
            except ValueError:
                logger.warning("Signal handlers can only be installed from the main thread; interrupts not handled")

        atexit.register(self._atexit_cleanup)
        self.state = CoordinatorState.ARMED
        logger.debug("Shutdown coordinator armed")

    def disarm(self) -> None:
        """Restore the handlers that were active before arm()."""
        if self._loop is not None:
            for sig in _HANDLED_SIGNALS:
                try:
                    self._loop.remove_signal_handler(sig)
                except (RuntimeError, ValueError):
                    pass
            self._loop = None
        for sig, previous in self._previous_handlers.items():
            try:
                signal.signal(sig, previous)
            except ValueError:
                logger.warning("Could not restore handler for %s", sig)
        self._previous_handlers.clear()
        atexit.unregister(self._atexit_cleanup)

        if self.state == CoordinatorState.ARMED:
            self.state = CoordinatorState.IDLE

    # ------------------------------------------------------------------
    # Interrupts
    # ------------------------------------------------------------------
    def handle_interrupt(self, signum: int = signal.SIGINT) -> None:
        with self._lock:
            if self.state == CoordinatorState.CLEANED:
                return
            self.interrupt_count += 1
            first = self.state != CoordinatorState.TERMINATING
            self.state = CoordinatorState.TERMINATING

        ids = self.containers.active_ids()
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)

        if first:
            logger.warning(
                "%s received: stopping %d container(s) gracefully (grace=%ss). Interrupt again to force.",
                name, len(ids), self.grace_period,
            )
            self.token.cancel()
            self._stop_thread = threading.Thread(
                target=self._graceful_stop, args=(ids,),
                name="testfleet-graceful-stop", daemon=True,
            )
            self._stop_thread.start()
        else:
            logger.warning("%s received again: killing %d container(s) now", name, len(ids))
            self.token.cancel(forced=True)
            self.containers.kill_all(ids)

    def _graceful_stop(self, container_ids: list[str]) -> None:
        try:
            self.containers.stop_all(container_ids, timeout=self.grace_period)
        except Exception:
            logger.error("Graceful stop failed", exc_info=True)

    def wait_for_graceful_stop(self, timeout: Optional[float] = None) -> None:
        if self._stop_thread is not None:
            self._stop_thread.join(timeout)

    # ------------------------------------------------------------------
    # Exit cleanup
    # ------------------------------------------------------------------
    def _atexit_cleanup(self) -> None:
        self.cleanup()

    def cleanup(self) -> ShutdownReport:
        """Remove containers, pool state and scratch files. Runs once."""
        with self._cleanup_lock:
            if self._report is not None:
                return self._report

            report = ShutdownReport()

            try:
                tracked = self.containers.cleanup_all()
                report.containers_cleaned += tracked.succeeded
                report.containers_failed += tracked.failed
            except Exception:
                logger.error("Container cleanup failed", exc_info=True)

            try:
                swept = self.containers.sweep_run_containers()
                report.containers_cleaned += swept.succeeded
                report.containers_failed += swept.failed
            except Exception:
                logger.error("Container sweep failed", exc_info=True)

            if self.pool is not None:
                try:
                    if self.pool.exists():
                        self.pool.release_all()
                    self.pool.destroy()
                    report.pool_released = True
                except Exception:
                    logger.error("Failed to release resource pool", exc_info=True)

            if self.publisher is not None:
                try:
                    report.temp_files_removed += self.publisher.purge()
                except Exception:
                    logger.error("Failed to purge result records", exc_info=True)

            if self.run_dir:
                try:
                    shutil.rmtree(self.run_dir)
                except FileNotFoundError:
                    pass
                except OSError as e:
                    logger.warning("Could not remove run directory %s: %s", self.run_dir, e)

            report.remaining_tracked = len(self.containers.active_ids())
            self.state = CoordinatorState.CLEANED
            self._report = report

            logger.info(
                "Exit cleanup | containers_cleaned=%d | failed=%d | remaining=%d | records_removed=%d",
                report.containers_cleaned, report.containers_failed,
                report.remaining_tracked, report.temp_files_removed,
            )
            return report

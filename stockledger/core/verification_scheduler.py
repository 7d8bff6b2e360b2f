"""
Verification Scheduler

Re-verifies the whole ledger on a timer and alerts on tampering.

Two independent triggers call the same run_once():
- Periodic: every interval (default: hourly)
- One-shot: a short delay after start() (default: 5 seconds), to catch
  tampering that happened while the process was down

CONFIGURATION:
- STOCKLEDGER_VERIFY_ENABLED: Enable scheduled verification (default: true)
- STOCKLEDGER_VERIFY_INTERVAL_SECONDS: Seconds between runs (default: 3600)
- STOCKLEDGER_VERIFY_INITIAL_DELAY_SECONDS: Delay of the startup run (default: 5)
- STOCKLEDGER_VERIFY_CONTENT: Also recompute hashes from content (default: false)

USAGE:
    scheduler = VerificationScheduler(verifier, AlertDispatcher.from_env())
    scheduler.start()

    # Or run a verification immediately
    report = scheduler.run_once()

    # Stop gracefully
    scheduler.stop()
"""

import logging
import os
import threading
from dataclasses import dataclass
from typing import Optional

from ..schemas import VerificationReport
from .alerts import AlertDispatcher
from .verifier import ChainVerifier

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


@dataclass
class VerificationConfig:
    """Configuration for the verification scheduler."""
    interval_seconds: float = 3600  # 1 hour
    initial_delay_seconds: float = 5
    enabled: bool = True
    check_content: bool = False

    @classmethod
    def from_env(cls) -> "VerificationConfig":
        """Load configuration from environment variables."""
        return cls(
            interval_seconds=float(os.environ.get("STOCKLEDGER_VERIFY_INTERVAL_SECONDS", "3600")),
            initial_delay_seconds=float(os.environ.get("STOCKLEDGER_VERIFY_INITIAL_DELAY_SECONDS", "5")),
            enabled=_env_flag("STOCKLEDGER_VERIFY_ENABLED", "true"),
            check_content=_env_flag("STOCKLEDGER_VERIFY_CONTENT", "false"),
        )


class VerificationScheduler:
    """
    Owns the lifecycle of scheduled verification runs.

    start() is idempotent: the running flag is checked and set under a lock,
    so concurrent start() calls still produce exactly one schedule.
    Runs never overlap: a trigger that fires while a run is in progress is
    skipped.
    """

    def __init__(
        self,
        verifier: ChainVerifier,
        dispatcher: Optional[AlertDispatcher] = None,
        config: Optional[VerificationConfig] = None,
    ):
        """
        Args:
            verifier: ChainVerifier to run
            dispatcher: AlertDispatcher (or a no-op dispatcher)
            config: Configuration (or loads from environment)
        """
        self._verifier = verifier
        self._dispatcher = dispatcher or AlertDispatcher()
        self._config = config or VerificationConfig.from_env()

        self._state_lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._initial_timer: Optional[threading.Timer] = None
        self._stop_event = threading.Event()

        self._last_report: Optional[VerificationReport] = None
        self._runs_completed = 0
        self._runs_failed = 0
        self._runs_skipped = 0

    @property
    def config(self) -> VerificationConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        """Check if the schedule is active."""
        return self._running

    @property
    def last_report(self) -> Optional[VerificationReport]:
        """Result of the most recent completed run."""
        return self._last_report

    def start(self) -> bool:
        """
        Activate the periodic and startup triggers.

        Returns:
            True if this call activated the schedule, False if it was
            disabled or already running
        """
        if not self._config.enabled:
            logger.info("Verification scheduler disabled (set STOCKLEDGER_VERIFY_ENABLED=1 to enable)")
            return False

        with self._state_lock:
            if self._running:
                logger.warning("Verification scheduler already running")
                return False

            self._running = True
            self._stop_event.clear()

            self._thread = threading.Thread(
                target=self._run_loop, name="ledger-verification", daemon=True
            )
            self._thread.start()

            self._initial_timer = threading.Timer(
                self._config.initial_delay_seconds, self._run_scheduled, args=("startup",)
            )
            self._initial_timer.daemon = True
            self._initial_timer.start()

        logger.info(
            f"Verification scheduler started (interval={self._config.interval_seconds}s, "
            f"initial_delay={self._config.initial_delay_seconds}s)"
        )
        return True

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the schedule. A run already in progress is allowed to finish."""
        with self._state_lock:
            if not self._running:
                return

            self._stop_event.set()
            if self._initial_timer:
                self._initial_timer.cancel()
            threads = [t for t in (self._thread, self._initial_timer) if t is not None]
            self._running = False

        for thread in threads:
            if thread is not threading.current_thread():
                thread.join(timeout=timeout)

        logger.info("Verification scheduler stopped")

    def _run_loop(self) -> None:
        """Background thread main loop: wait one interval, then verify."""
        while not self._stop_event.wait(timeout=self._config.interval_seconds):
            self._run_scheduled("periodic")

    def _run_scheduled(self, trigger: str) -> None:
        """Scheduler boundary: nothing raised here may kill the schedule."""
        if self._stop_event.is_set():
            return
        try:
            logger.info(f"Running {trigger} verification")
            self.run_once()
        except Exception:
            self._runs_failed += 1
            logger.exception(f"Error during {trigger} verification")

    def run_once(self) -> Optional[VerificationReport]:
        """
        Verify the chain now and alert if tampering is found.

        Returns:
            The report, or None if another run was in progress

        Raises:
            StorageError: If the ledger cannot be read
        """
        if not self._run_lock.acquire(blocking=False):
            self._runs_skipped += 1
            logger.warning("Verification already in progress - skipping this run")
            return None

        try:
            report = self._verifier.verify()
            self._last_report = report
            self._runs_completed += 1

            if not report.is_valid:
                self._dispatcher.dispatch(report.tampered_entries)

            return report
        finally:
            self._run_lock.release()

    def get_status(self) -> dict:
        """Get current scheduler status."""
        last = self._last_report
        return {
            "enabled": self._config.enabled,
            "running": self._running,
            "interval_seconds": self._config.interval_seconds,
            "initial_delay_seconds": self._config.initial_delay_seconds,
            "check_content": self._config.check_content,
            "alerts_configured": self._dispatcher.is_configured,
            "runs_completed": self._runs_completed,
            "runs_failed": self._runs_failed,
            "runs_skipped": self._runs_skipped,
            "last_run_at": last.verified_at.isoformat() if last else None,
            "last_run_valid": last.is_valid if last else None,
        }

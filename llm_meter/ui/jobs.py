"""
Background connection-test jobs.

The interactive loop owns one JobCoordinator. At most one test runs at a
time on a worker thread; the loop polls it once per iteration without
blocking and harvests the result into AppState.
"""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional

from llm_meter.config.loader import ProviderSettings, normalize_provider_name
from llm_meter.core.errors import MeterError
from llm_meter.storage.models import ProviderTestReport
from .state import (
    AppState,
    ConnectionStatus,
    FormMode,
    LogLevel,
    ScreenKind,
    append_provider_log,
    truncate_message,
)

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "Another provider connection test is running."

ConnectionTestRunner = Callable[[str, str, ProviderSettings], ProviderTestReport]


@dataclass(frozen=True)
class JobOrigin:
    """Where a test was started: the provider manager or an open form."""
    form_mode: Optional[FormMode] = None

    @classmethod
    def manager(cls) -> "JobOrigin":
        return cls()

    @classmethod
    def form(cls, mode: FormMode) -> "JobOrigin":
        return cls(mode)

    @property
    def is_form(self) -> bool:
        return self.form_mode is not None


@dataclass
class ProviderTestJob:
    provider: str
    origin: JobOrigin
    started_at: float
    future: Future


class JobCoordinator:
    """Single-slot holder for the outstanding connection test.

    Args:
        runner: Called on the worker thread as ``runner(provider, api_key, settings)``
        executor: Executor to submit to; a one-worker pool is created if omitted
    """

    def __init__(self, runner: ConnectionTestRunner, executor: Optional[ThreadPoolExecutor] = None):
        self.runner = runner
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="llm-meter-test")
        self.job: Optional[ProviderTestJob] = None

    @property
    def busy(self) -> bool:
        return self.job is not None

    def shutdown(self) -> None:
        """Stop accepting work. A running test is not cancelled."""
        if self._owns_executor:
            self.executor.shutdown(wait=False)

    def enqueue(
        self,
        state: AppState,
        provider: str,
        api_key: str,
        settings: ProviderSettings,
        origin: JobOrigin,
    ) -> bool:
        """Start a test unless one is already outstanding.

        Returns:
            False if rejected; the outstanding job is left untouched
        """
        if self.job is not None:
            state.status = BUSY_MESSAGE
            return False

        provider = normalize_provider_name(provider)
        source = "Provider Form" if origin.is_form else "Provider Manager"
        append_provider_log(
            state, provider, LogLevel.INFO, "test_started",
            f"Connection test queued from {source}.",
        )
        if origin.is_form:
            state.provider_draft.connection_status = ConnectionStatus.testing()
        state.status = f"Testing '{provider}' connection..."

        future = self.executor.submit(self.runner, provider, api_key, settings)
        self.job = ProviderTestJob(
            provider=provider,
            origin=origin,
            started_at=time.monotonic(),
            future=future,
        )
        logger.debug("Queued connection test for %s", provider)
        return True

    def poll(self, state: AppState) -> bool:
        """Harvest the outstanding job if it has finished. Never blocks.

        Returns:
            True if a result was applied to ``state``
        """
        job = self.job
        if job is None or not job.future.done():
            return False
        self.job = None
        self._apply(state, job)
        return True

    def _apply(self, state: AppState, job: ProviderTestJob) -> None:
        provider = job.provider
        fallback_ms = int((time.monotonic() - job.started_at) * 1000)

        try:
            report = job.future.result()
        except MeterError as e:
            self._record_failure(state, job, str(e), fallback_ms)
            return
        except Exception as e:
            logger.exception("Connection test task for %s crashed", provider)
            self._record_failure(state, job, f"Background test task failed: {e}", fallback_ms)
            return

        append_provider_log(
            state, provider, LogLevel.INFO, "response_received",
            "Provider responded to connection test request.",
            report.status_code, report.duration_ms,
        )
        append_provider_log(
            state, provider, LogLevel.INFO, "test_succeeded",
            "Connection test completed successfully.",
            report.status_code, report.duration_ms,
        )
        state.provider_test_results[provider] = ConnectionStatus.success()
        state.status = f"Connection test succeeded for '{provider}'."
        if job.origin.is_form and form_job_matches_current(state, job.origin.form_mode, provider):
            state.provider_draft.connection_status = ConnectionStatus.success()

    def _record_failure(self, state: AppState, job: ProviderTestJob, message: str, duration_ms: int) -> None:
        provider = job.provider
        append_provider_log(
            state, provider, LogLevel.ERROR, "test_failed", message,
            None, duration_ms,
        )
        status = ConnectionStatus.failure(message)
        state.provider_test_results[provider] = status
        state.status = f"Connection test failed for '{provider}': {truncate_message(message)}"
        if job.origin.is_form and form_job_matches_current(state, job.origin.form_mode, provider):
            state.provider_draft.connection_status = status
            state.provider_draft.enabled = False


def form_job_matches_current(state: AppState, mode: FormMode, provider: str) -> bool:
    """Check that the form a job came from is still the one on screen."""
    if state.screen.kind != ScreenKind.PROVIDER_FORM or state.screen.form_mode != mode:
        return False
    if mode.is_add:
        return normalize_provider_name(state.provider_draft.name) == provider
    return True

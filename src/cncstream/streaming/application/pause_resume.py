"""
Stream Pause/Resume - coordinated suspension of a running stream.

Graceful pauses wait for registered readiness waiters (in-flight work
draining) before the stream is considered paused. A watchdog forces a resume
once a pause outlives ``max_pause_duration``.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from typing import Any

from cncstream.shared.infrastructure.logging import get_logger
from cncstream.shared.infrastructure.resilience import OperationTimeoutError, with_timeout_async
from cncstream.streaming.domain.config import StreamingConfig
from cncstream.streaming.domain.interfaces import ProgressCallback
from cncstream.streaming.domain.models import PauseResult, PauseState, ResumeResult

logger = get_logger(__name__)

ReadinessWaiter = Callable[[], Awaitable[Any]]
ResumeCallback = Callable[[], Any]


class StreamPauseResume:
    """
    Owns the pause lifecycle of a stream.

    Notifications: pause_requested, pause_execute, stream_paused,
    pause_failed, resume_execute, stream_resumed, resume_failed,
    pause_timeout_exceeded.
    """

    def __init__(self, config: StreamingConfig | None = None, progress_callback: ProgressCallback | None = None):
        self.config = config or StreamingConfig()
        self.progress_callback = progress_callback
        self.pause_state = PauseState()

        self._readiness_waiters: list[ReadinessWaiter] = []
        self._resume_callbacks: list[ResumeCallback] = []
        self._watchdog: asyncio.Task | None = None
        self._reset_metrics()

    def _reset_metrics(self) -> None:
        self.metrics = {
            "total_pauses": 0,
            "total_resumes": 0,
            "failed_pauses": 0,
            "failed_resumes": 0,
            "forced_resumes": 0,
            "average_pause_duration": 0.0,
            "max_pause_duration": 0.0,
            "min_pause_duration": None,
        }

    def _emit(self, event: str, data: dict[str, Any]) -> None:
        if self.progress_callback:
            self.progress_callback(event, data)

    def add_readiness_waiter(self, waiter: ReadinessWaiter) -> None:
        """Register an awaitable factory that completes once its owner is safe to pause."""
        self._readiness_waiters.append(waiter)

    def on_resume(self, callback: ResumeCallback) -> None:
        """Queue a callback for the next successful resume. Runs exactly once."""
        self._resume_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Pause
    # ------------------------------------------------------------------

    async def request_pause(
        self,
        reason: str = "user_request",
        graceful: bool | None = None,
        preserve_state: bool = False,
        state: dict[str, Any] | None = None,
    ) -> PauseResult:
        """
        Pause the stream.

        Never raises for an invalid request; the result carries the reason
        (``disabled``, ``already_paused``, ``pause_in_progress`` or
        ``pause_failed``).
        """
        if not self.config.enable_pause_resume:
            return PauseResult(success=False, reason="disabled")
        if self.pause_state.is_paused:
            return PauseResult(success=False, reason="already_paused")
        if self.pause_state.is_pausing:
            return PauseResult(success=False, reason="pause_in_progress")

        self.pause_state.is_pausing = True
        try:
            return await self._pause(reason, graceful, preserve_state, state)
        finally:
            self.pause_state.is_pausing = False

    async def _pause(
        self,
        reason: str,
        graceful: bool | None,
        preserve_state: bool,
        state: dict[str, Any] | None,
    ) -> PauseResult:
        use_graceful = self.config.enable_graceful_pause if graceful is None else graceful
        logger.info("pause_requested", reason=reason, graceful=use_graceful)

        if use_graceful:
            self._emit("pause_requested", {"reason": reason})
            try:
                await with_timeout_async(
                    self._wait_until_ready(),
                    timeout_seconds=self.config.pause_timeout,
                    operation_name="graceful_pause",
                )
            except OperationTimeoutError as e:
                self.metrics["failed_pauses"] += 1
                logger.error("pause_failed", reason=reason, error=str(e))
                self._emit("pause_failed", {"reason": reason, "error": str(e)})
                return PauseResult(success=False, reason="pause_failed", error=str(e))

        self._emit("pause_execute", {"reason": reason})

        pause_time = time.time()
        self.pause_state.is_paused = True
        self.pause_state.pause_time = pause_time
        self.pause_state.pause_reason = reason
        self.pause_state.resume_time = None

        if preserve_state or self.config.save_state_on_pause:
            self.pause_state.saved_state = {"timestamp": pause_time, "reason": reason, "state": dict(state or {})}

        self.metrics["total_pauses"] += 1
        self._arm_watchdog(pause_time)

        logger.info("stream_paused", reason=reason)
        self._emit("stream_paused", {"reason": reason, "pause_time": pause_time, "graceful": use_graceful})
        return PauseResult(success=True, reason=reason, pause_time=pause_time)

    async def _wait_until_ready(self) -> None:
        if self._readiness_waiters:
            await asyncio.gather(*(waiter() for waiter in self._readiness_waiters))

    def _arm_watchdog(self, pause_time: float) -> None:
        self._cancel_watchdog()
        if self.config.max_pause_duration > 0:
            self._watchdog = asyncio.get_running_loop().create_task(self._watch_pause_duration(pause_time))

    def _cancel_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    async def _watch_pause_duration(self, pause_time: float) -> None:
        await asyncio.sleep(self.config.max_pause_duration)
        if not self.pause_state.is_paused or self.pause_state.pause_time != pause_time:
            return

        # Detach first so the forced resume does not cancel this task
        self._watchdog = None
        logger.warning("pause_timeout_exceeded", max_pause_duration=self.config.max_pause_duration)
        self._emit("pause_timeout_exceeded", {"pause_time": pause_time, "max_duration": self.config.max_pause_duration})
        await self.request_resume(forced=True)

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    async def request_resume(self, forced: bool = False) -> ResumeResult:
        """
        Resume a paused stream.

        Reasons on failure: ``not_paused``, ``resume_in_progress``,
        ``resume_failed``.
        """
        if not self.pause_state.is_paused:
            return ResumeResult(success=False, reason="not_paused")
        if self.pause_state.is_resuming:
            return ResumeResult(success=False, reason="resume_in_progress")

        self.pause_state.is_resuming = True
        resume_time = time.time()
        duration = resume_time - (self.pause_state.pause_time or resume_time)

        if self.config.validate_state_on_resume and self.pause_state.saved_state is not None:
            error = self._validate_saved_state(resume_time)
            if error:
                self.pause_state.is_resuming = False
                self.metrics["failed_resumes"] += 1
                logger.error("resume_failed", error=error)
                self._emit("resume_failed", {"error": error})
                return ResumeResult(success=False, reason="resume_failed", error=error)

        self._cancel_watchdog()
        self._emit("resume_execute", {"forced": forced, "pause_duration": duration})

        self.pause_state.is_paused = False
        self.pause_state.is_resuming = False
        self.pause_state.resume_time = resume_time
        self.pause_state.pause_duration = duration
        self.pause_state.total_pause_duration += duration
        self.pause_state.pause_reason = None
        self.pause_state.saved_state = None

        self.metrics["total_resumes"] += 1
        if forced:
            self.metrics["forced_resumes"] += 1
        self._record_duration(duration)

        logger.info("stream_resumed", pause_duration=f"{duration:.3f}s", forced=forced)
        self._emit("stream_resumed", {"resume_time": resume_time, "pause_duration": duration, "forced": forced})

        await self._run_resume_callbacks()
        return ResumeResult(success=True, resume_time=resume_time, pause_duration=duration)

    def _validate_saved_state(self, now: float) -> str | None:
        saved = self.pause_state.saved_state or {}
        timestamp = saved.get("timestamp")
        if timestamp is None:
            return "Saved pause state has no timestamp"

        age = now - timestamp
        if self.config.max_pause_duration > 0 and age > self.config.max_pause_duration:
            logger.warning("saved_state_outdated", age=f"{age:.1f}s")
        return None

    async def _run_resume_callbacks(self) -> None:
        callbacks, self._resume_callbacks = self._resume_callbacks, []
        for callback in callbacks:
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("resume_callback_failed", error=str(e), error_type=type(e).__name__)

    def _record_duration(self, duration: float) -> None:
        m = self.metrics
        resumes = m["total_resumes"]
        m["average_pause_duration"] = (m["average_pause_duration"] * (resumes - 1) + duration) / resumes
        m["max_pause_duration"] = max(m["max_pause_duration"], duration)
        m["min_pause_duration"] = duration if m["min_pause_duration"] is None else min(m["min_pause_duration"], duration)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def can_pause(self) -> bool:
        return self.config.enable_pause_resume and not (self.pause_state.is_paused or self.pause_state.is_pausing)

    def can_resume(self) -> bool:
        return self.pause_state.is_paused and not self.pause_state.is_resuming

    def get_capabilities(self) -> dict[str, Any]:
        return {
            "can_pause": self.can_pause(),
            "can_resume": self.can_resume(),
            "graceful_pause": self.config.enable_graceful_pause,
            "state_preservation": self.config.save_state_on_pause,
            "max_pause_duration": self.config.max_pause_duration,
        }

    def get_pause_state(self) -> dict[str, Any]:
        state = self.pause_state.to_json()
        if self.pause_state.is_paused and self.pause_state.pause_time is not None:
            state["currentPauseDuration"] = time.time() - self.pause_state.pause_time
        return state

    def get_pause_metrics(self) -> dict[str, Any]:
        m = self.metrics
        pause_attempts = m["total_pauses"] + m["failed_pauses"]
        resume_attempts = m["total_resumes"] + m["failed_resumes"]
        return {
            **m,
            "total_pause_time": self.pause_state.total_pause_duration,
            "pause_success_rate": m["total_pauses"] / pause_attempts if pause_attempts else 1.0,
            "resume_success_rate": m["total_resumes"] / resume_attempts if resume_attempts else 1.0,
        }

    def reset_statistics(self) -> None:
        self._reset_metrics()
        self.pause_state.total_pause_duration = 0.0

    def cleanup(self) -> None:
        self._cancel_watchdog()
        self._resume_callbacks.clear()
        self._readiness_waiters.clear()
        self.pause_state = PauseState()
        logger.debug("pause_resume_cleaned_up")

"""Single-shot dictation capture sessions.

A session wraps one recognition attempt. It completes at most once; stopping
it early (explicitly, by timeout, or because the same user started a new
recording) discards whatever the recognizer eventually returns.
"""

from __future__ import annotations

import asyncio
import enum
from typing import Awaitable, Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

Recognizer = Callable[[], Awaitable[str]]


class CaptureState(str, enum.Enum):
    IDLE = "idle"
    LISTENING = "listening"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CaptureSession:
    """One cancelable recognition run that emits at most one transcript."""

    def __init__(self, recognizer: Recognizer) -> None:
        self._recognizer = recognizer
        self._task: Optional[asyncio.Task] = None
        self.state = CaptureState.IDLE
        self.transcript: Optional[str] = None
        self.error: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.state in (CaptureState.IDLE, CaptureState.LISTENING)

    async def run(self, timeout: Optional[float] = None) -> Optional[str]:
        """Run the recognizer and return its transcript, or ``None`` if stopped."""

        if self.state is not CaptureState.IDLE:
            raise RuntimeError("Capture session already used")
        self.state = CaptureState.LISTENING
        self._task = asyncio.ensure_future(self._recognizer())
        try:
            result = await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            self.stop()
            logger.info("capture_timeout", timeout=timeout)
            return None
        except asyncio.CancelledError:
            if self.state is CaptureState.CANCELLED:
                return None
            # The recognizer is shielded, so it must be cancelled explicitly.
            self.stop()
            raise
        except Exception as exc:
            if self.state is CaptureState.CANCELLED:
                return None
            self.state = CaptureState.FAILED
            self.error = str(exc)
            logger.warning("capture_failed", error=str(exc))
            return None
        if self.state is not CaptureState.LISTENING:
            return None
        self.state = CaptureState.COMPLETED
        self.transcript = (result or "").strip()
        return self.transcript

    def stop(self) -> bool:
        """Cancel the session; returns ``True`` if it was still running."""

        if not self.active:
            return False
        self.state = CaptureState.CANCELLED
        if self._task is not None and not self._task.done():
            self._task.cancel()
        return True


class CaptureRegistry:
    """Holds at most one active capture session per user."""

    def __init__(self) -> None:
        self._sessions: Dict[str, CaptureSession] = {}

    def start(self, user_id: str, recognizer: Recognizer) -> CaptureSession:
        previous = self._sessions.get(user_id)
        if previous is not None and previous.stop():
            logger.info("capture_superseded", user_id=user_id)
        session = CaptureSession(recognizer)
        self._sessions[user_id] = session
        return session

    def stop(self, user_id: str) -> bool:
        session = self._sessions.get(user_id)
        if session is None:
            return False
        return session.stop()

    def release(self, user_id: str, session: CaptureSession) -> None:
        if self._sessions.get(user_id) is session:
            self._sessions.pop(user_id, None)

    def active(self, user_id: str) -> bool:
        session = self._sessions.get(user_id)
        return bool(session and session.active)


__all__ = ["CaptureRegistry", "CaptureSession", "CaptureState"]

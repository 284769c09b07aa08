from enum import Enum
from typing import Any, Callable, Optional

from voice_navigator.config import RESTART_DELAY_SECONDS
from voice_navigator.errors import SpeechInputError
from voice_navigator.feedback import FeedbackLevel, log_line
from voice_navigator.router import normalize_transcript

PERMISSION_ERRORS = {"not-allowed", "service-not-allowed"}
UNSUPPORTED_MESSAGE = "Speech recognition is not supported on this system."
PERMISSION_MESSAGE = "Microphone access was denied. Allow microphone access, then start listening again."


class ListeningState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    RESTARTING = "restarting"
    ERROR = "error"


class ListeningStateMachine:
    """Continuous listening on top of a one-phrase-at-a-time input port.

    Every ``ended`` event re-arms the port after ``restart_delay`` for as long
    as the session wants to listen. ``stop()`` clears that wish, so an
    ``ended`` event that arrives after it does not restart anything.
    """

    def __init__(
        self,
        port: Any,
        scheduler: Any,
        on_transcript: Callable[[str], None],
        feedback: Callable[..., None],
        restart_delay: float = RESTART_DELAY_SECONDS,
    ) -> None:
        self._port = port
        self._scheduler = scheduler
        self._on_transcript = on_transcript
        self._feedback = feedback
        self._restart_delay = restart_delay
        self._wants_listening = False
        self._pending_restart: Optional[Any] = None
        self.state = ListeningState.IDLE
        self.supported = port is not None and bool(getattr(port, "available", False))
        if not self.supported:
            self._feedback(UNSUPPORTED_MESSAGE, FeedbackLevel.ERROR)

    @property
    def is_listening(self) -> bool:
        return self._wants_listening and self.state in {ListeningState.LISTENING, ListeningState.RESTARTING}

    def start(self) -> bool:
        if not self.supported:
            return False
        if self.is_listening:
            return True
        self._wants_listening = True
        self._arm()
        return self.state is ListeningState.LISTENING

    def stop(self) -> None:
        self._wants_listening = False
        self._cancel_restart()
        was_active = self.state in {ListeningState.LISTENING, ListeningState.RESTARTING}
        if self.state is not ListeningState.ERROR:
            self.state = ListeningState.IDLE
        if was_active:
            self._port.stop()

    def on_input_event(self, kind: str, payload: Any = None) -> None:
        if kind == "started":
            if self.state is ListeningState.RESTARTING:
                self.state = ListeningState.LISTENING
        elif kind == "result":
            transcript = normalize_transcript(str(payload or ""))
            if not self._wants_listening:
                log_line(f'  Dropped late result: "{transcript}"')
                return
            if transcript:
                log_line(f'  Heard: "{transcript}"')
                self._on_transcript(transcript)
        elif kind == "error":
            self._on_error(str(payload or "unknown"))
        elif kind == "ended":
            self._on_ended()

    def _on_error(self, code: str) -> None:
        if code in PERMISSION_ERRORS:
            self._wants_listening = False
            self._cancel_restart()
            self.state = ListeningState.ERROR
            self._feedback(PERMISSION_MESSAGE, FeedbackLevel.ERROR)
            return
        self._feedback(f"Error: {code}. Try again.", FeedbackLevel.ERROR)

    def _on_ended(self) -> None:
        if self.state is ListeningState.ERROR:
            return
        if not self._wants_listening:
            self.state = ListeningState.IDLE
            return
        if self._pending_restart is not None:
            return
        self.state = ListeningState.RESTARTING
        self._pending_restart = self._scheduler.call_later(self._restart_delay, self._restart)

    def _restart(self) -> None:
        self._pending_restart = None
        if not self._wants_listening:
            return
        self._arm()

    def _arm(self) -> None:
        try:
            self._port.start()
        except Exception as exc:
            self._wants_listening = False
            self.state = ListeningState.ERROR
            self._feedback(f"Speech recognition failed: {exc}", FeedbackLevel.ERROR)
            raise SpeechInputError(str(exc)) from exc
        self.state = ListeningState.LISTENING

    def _cancel_restart(self) -> None:
        if self._pending_restart is None:
            return
        self._pending_restart.cancel()
        self._pending_restart = None

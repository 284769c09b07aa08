from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Iterable, Optional

from voice_navigator.config import Settings
from voice_navigator.dom import NodeHandle
from voice_navigator.feedback import FeedbackLevel

NOTHING_TO_READ = "There is nothing to read on this page."


class SpeakingState(str, Enum):
    IDLE = "idle"
    SPEAKING = "speaking"
    PAUSED = "paused"


@dataclass(frozen=True)
class ReadingItem:
    text: str
    node: Optional[NodeHandle] = None


@dataclass
class _InFlight:
    token: Any
    item: ReadingItem


class ReadingQueueEngine:
    """Drains reading items through the speech output port one at a time.

    The port reports ``started`` and ``ended`` per utterance token; each
    ``ended`` for the in-flight item triggers the next one. Events for tokens
    that were cancelled are ignored.
    """

    def __init__(
        self,
        output: Any,
        page: Any,
        feedback: Callable[..., None],
        settings: Callable[[], Settings],
    ) -> None:
        self._output = output
        self._page = page
        self._feedback = feedback
        self._settings = settings
        self._queue: Deque[ReadingItem] = deque()
        self._in_flight: Optional[_InFlight] = None
        self._message_token: Any = None
        self._highlighted = False
        self.state = SpeakingState.IDLE

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def current(self) -> Optional[ReadingItem]:
        return self._in_flight.item if self._in_flight else None

    def enqueue_all(self, items: Iterable[ReadingItem]) -> None:
        self._cancel_output()
        self._clear_highlight()
        self._queue = deque(item for item in items if item.text and item.text.strip())

    def start_or_continue(self) -> None:
        if self._in_flight is not None:
            return
        if not self._queue:
            self._say(NOTHING_TO_READ)
            return
        self._speak_next()

    def announce(self, text: str) -> None:
        """Speak an ad-hoc message, replacing whatever was being read."""
        self._queue.clear()
        self._cancel_output()
        self._clear_highlight()
        self._say(text)

    def stop(self) -> None:
        self._output.cancel()
        self._queue.clear()
        self._in_flight = None
        self._message_token = None
        self._clear_highlight()
        self.state = SpeakingState.IDLE
        self._feedback("Stopped reading", FeedbackLevel.INFO)

    def pause(self) -> None:
        if self.state is not SpeakingState.SPEAKING:
            return
        self._output.pause()
        self.state = SpeakingState.PAUSED

    def resume(self) -> None:
        if self.state is not SpeakingState.PAUSED:
            return
        self._output.resume()
        self.state = SpeakingState.SPEAKING

    def on_output_event(self, kind: str, token: Any) -> None:
        if self._message_token is not None and token == self._message_token:
            if kind == "ended":
                self._message_token = None
            return
        if self._in_flight is None or token != self._in_flight.token:
            return
        if kind == "started":
            if self.state is SpeakingState.IDLE:
                self.state = SpeakingState.SPEAKING
            return
        if kind != "ended":
            return
        self._in_flight = None
        self._clear_highlight()
        if self._queue:
            self._speak_next()
            return
        self.state = SpeakingState.IDLE
        self._feedback("Ready", FeedbackLevel.SUCCESS)

    def _speak_next(self) -> None:
        item = self._queue.popleft()
        settings = self._settings()
        token = self._output.speak(item.text, settings.speech_rate, settings.voice_uri)
        self._in_flight = _InFlight(token, item)
        self.state = SpeakingState.SPEAKING
        if settings.highlight_elements and item.node is not None:
            self._page.highlight(item.node)
            self._highlighted = True

    def _say(self, text: str) -> None:
        self._cancel_output()
        settings = self._settings()
        self._message_token = self._output.speak(text, settings.speech_rate, settings.voice_uri)

    def _cancel_output(self) -> None:
        if self._in_flight is None and self._message_token is None:
            return
        self._output.cancel()
        self._in_flight = None
        self._message_token = None
        self.state = SpeakingState.IDLE

    def _clear_highlight(self) -> None:
        if not self._highlighted:
            return
        self._page.clear_highlight()
        self._highlighted = False

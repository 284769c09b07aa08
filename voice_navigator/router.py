from types import MappingProxyType
from typing import Callable, Dict, List, Sequence, Tuple

from voice_navigator.feedback import FeedbackLevel

Handler = Callable[..., None]


def normalize_transcript(text: str) -> str:
    return (text or "").strip().lower()


class CommandRouter:
    """Literal command matching: exact key first, then the first prefix key.

    Prefix keys are tried in registration order, so an earlier, shorter key
    shadows a longer one registered after it.
    """

    def __init__(self, commands: Sequence[Tuple[str, Handler]], feedback: Callable[..., None]) -> None:
        table: Dict[str, Handler] = {}
        for key, handler in commands:
            normalized = normalize_transcript(key)
            if not normalized:
                raise ValueError("Command keys must not be blank.")
            if normalized in table:
                raise ValueError(f"Duplicate command key: {normalized!r}")
            table[normalized] = handler
        self._table = MappingProxyType(table)
        self._entries: Tuple[Tuple[str, Handler], ...] = tuple(table.items())
        self._feedback = feedback

    def keys(self) -> List[str]:
        return [key for key, _handler in self._entries]

    def route(self, transcript: str) -> bool:
        text = normalize_transcript(transcript)

        handler = self._table.get(text)
        if handler is not None:
            self._feedback(f'Command: "{text}"', FeedbackLevel.INFO)
            handler()
            return True

        for key, handler in self._entries:
            if text.startswith(key) and key != text:
                parameter = text[len(key):].strip()
                self._feedback(f'Command: "{key}" ({parameter})', FeedbackLevel.INFO)
                handler(parameter)
                return True

        self._feedback(
            f'Command not recognized: "{text}". Try saying "help" for available commands.',
            FeedbackLevel.WARNING,
        )
        return False

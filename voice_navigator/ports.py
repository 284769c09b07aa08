"""Event vocabulary shared by the hardware ports and the session.

Speech output port: ``speak(text, rate, voice_uri) -> token``, ``cancel()``,
``pause()``, ``resume()``, ``list_voices()``; reports ``(STARTED, token)``
and ``(ENDED, token)``.

Speech input port: ``available``, ``start()``, ``stop()``; reports
``STARTED``, ``(RESULT, text)``, ``(ERROR, code)`` and ``ENDED``.

Page port: ``load_document(callback)``, ``highlight(handle)``,
``clear_highlight()``, ``focus(handle)``, ``activate(handle)``,
``scroll(direction, fraction)``, ``go_back()``.
"""

from dataclasses import dataclass
from typing import Any, Callable

STARTED = "started"
ENDED = "ended"
RESULT = "result"
ERROR = "error"

Post = Callable[..., Any]


@dataclass(frozen=True)
class Voice:
    name: str
    lang: str
    uri: str

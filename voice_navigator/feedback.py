from enum import Enum
from typing import Any, Optional

DEFAULT_FEEDBACK_MS = 3000

_ui_logger: Optional[Any] = None


class FeedbackLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


_LEVEL_PREFIX = {
    FeedbackLevel.WARNING: "WARN: ",
    FeedbackLevel.ERROR: "ERROR: ",
}


def set_ui_logger(ui: Optional[Any]) -> None:
    global _ui_logger
    _ui_logger = ui


def log_line(message: str) -> None:
    print(message)
    if _ui_logger is not None:
        _ui_logger.add_log(message)


class ConsoleFeedback:
    """Status sink: logs each message and shows it on the control panel."""

    def __init__(self, ui: Optional[Any] = None) -> None:
        self._ui = ui
        self.last_message = ""
        self.last_level = FeedbackLevel.INFO

    def __call__(
        self,
        message: str,
        level: FeedbackLevel = FeedbackLevel.INFO,
        duration_ms: int = DEFAULT_FEEDBACK_MS,
    ) -> None:
        level = FeedbackLevel(level)
        self.last_message = message
        self.last_level = level
        log_line(f"  {_LEVEL_PREFIX.get(level, '')}{message}")
        if self._ui is not None:
            self._ui.set_status(message, level.value, duration_ms)

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional

from voice_navigator.errors import SettingsError
from voice_navigator.feedback import log_line

MODEL = os.environ.get("VOICE_NAVIGATOR_MODEL", "claude-sonnet-4.5")
TTS_BASE_RATE = int(os.environ.get("VOICE_NAVIGATOR_TTS_RATE", "180"))
STT_BACKEND = os.environ.get("VOICE_NAVIGATOR_STT_BACKEND", "auto").strip().lower()
STT_DEBUG = os.environ.get("VOICE_NAVIGATOR_STT_DEBUG", "0").strip() == "1"
STT_LANGUAGE = os.environ.get("VOICE_NAVIGATOR_STT_LANGUAGE", "en").strip() or "en"
LOCAL_STT_MODEL = os.environ.get("VOICE_NAVIGATOR_LOCAL_STT_MODEL", "base.en").strip() or "base.en"
LOCAL_STT_DEVICE = os.environ.get("VOICE_NAVIGATOR_LOCAL_STT_DEVICE", "auto").strip() or "auto"
LOCAL_STT_COMPUTE_TYPE = os.environ.get("VOICE_NAVIGATOR_LOCAL_STT_COMPUTE_TYPE", "auto").strip() or "auto"
LISTEN_TIMEOUT = int(os.environ.get("VOICE_NAVIGATOR_LISTEN_TIMEOUT", "8"))
PHRASE_TIME_LIMIT = int(os.environ.get("VOICE_NAVIGATOR_PHRASE_LIMIT", "12"))
PAUSE_THRESHOLD = float(os.environ.get("VOICE_NAVIGATOR_PAUSE_THRESHOLD", "0.8"))
MIC_INDEX_ENV = os.environ.get("VOICE_NAVIGATOR_MIC_INDEX", "").strip()
RESTART_DELAY_SECONDS = float(os.environ.get("VOICE_NAVIGATOR_RESTART_DELAY", "0.3"))
NAVIGATE_DELAY_SECONDS = float(os.environ.get("VOICE_NAVIGATOR_NAVIGATE_DELAY", "2.0"))
CLICK_DELAY_SECONDS = float(os.environ.get("VOICE_NAVIGATOR_CLICK_DELAY", "1.0"))
AUTO_START = os.environ.get("VOICE_NAVIGATOR_AUTO_START", "0").strip() == "1"
AUTO_START_DELAY_SECONDS = float(os.environ.get("VOICE_NAVIGATOR_AUTO_START_DELAY", "1.5"))
LLM_TIMEOUT_SECONDS = int(os.environ.get("VOICE_NAVIGATOR_LLM_TIMEOUT", "30"))
SUMMARY_CHAR_LIMIT = int(os.environ.get("VOICE_NAVIGATOR_SUMMARY_CHARS", "1000"))
BROWSER_ENGINE = os.environ.get("VOICE_NAVIGATOR_BROWSER", "chromium").strip().lower()
BROWSER_EXECUTABLE = os.environ.get("VOICE_NAVIGATOR_EXECUTABLE_PATH", "").strip()
BROWSER_TIMEOUT_SECONDS = float(os.environ.get("VOICE_NAVIGATOR_BROWSER_TIMEOUT", "30"))
CONTROL_PANEL_ENABLED = os.environ.get("VOICE_NAVIGATOR_CONTROL_PANEL", "1").strip() != "0"
START_URL = os.environ.get("VOICE_NAVIGATOR_START_URL", "https://www.wikipedia.org").strip()

# Control channel spelling -> field name.
SETTINGS_ALIASES = {
    "speechRate": "speech_rate",
    "voiceURI": "voice_uri",
    "highlightElements": "highlight_elements",
    "useAI": "use_ai",
}


@dataclass(frozen=True)
class Settings:
    speech_rate: float = 1.0
    voice_uri: Optional[str] = None
    highlight_elements: bool = True
    use_ai: bool = False

    def as_message(self) -> Dict[str, Any]:
        return {
            "speechRate": self.speech_rate,
            "voiceURI": self.voice_uri,
            "highlightElements": self.highlight_elements,
            "useAI": self.use_ai,
        }


def _coerce(name: str, value: Any) -> Any:
    if name == "speech_rate":
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise SettingsError(f"speechRate must be a number, got {value!r}.")
        try:
            rate = float(value)
        except ValueError as exc:
            raise SettingsError(f"speechRate must be a number, got {value!r}.") from exc
        if rate <= 0:
            raise SettingsError("speechRate must be greater than zero.")
        return rate
    if name == "voice_uri":
        if value is None:
            return None
        if not isinstance(value, str):
            raise SettingsError(f"voiceURI must be a string, got {value!r}.")
        return value.strip() or None
    if not isinstance(value, bool):
        raise SettingsError(f"{name} must be true or false, got {value!r}.")
    return value


def merge_settings(base: Settings, overrides: Optional[Mapping[str, Any]]) -> Settings:
    """Return ``base`` with the known keys of ``overrides`` applied.

    Keys may use either the field names or the control channel's camelCase
    names. Unknown keys are logged and dropped.
    """
    if overrides is None:
        return base
    if not isinstance(overrides, Mapping):
        raise SettingsError(f"Settings must be a mapping, got {type(overrides).__name__}.")
    known = {f.name for f in fields(Settings)}
    changes: Dict[str, Any] = {}
    for key, value in overrides.items():
        name = SETTINGS_ALIASES.get(key, key)
        if name not in known:
            log_line(f"WARN: Ignoring unknown setting '{key}'.")
            continue
        changes[name] = _coerce(name, value)
    return replace(base, **changes)


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    rate = os.environ.get("VOICE_NAVIGATOR_SPEECH_RATE", "").strip()
    if rate:
        overrides["speech_rate"] = rate
    voice = os.environ.get("VOICE_NAVIGATOR_VOICE", "").strip()
    if voice:
        overrides["voice_uri"] = voice
    highlight = os.environ.get("VOICE_NAVIGATOR_HIGHLIGHT", "").strip()
    if highlight:
        overrides["highlight_elements"] = highlight != "0"
    use_ai = os.environ.get("VOICE_NAVIGATOR_USE_AI", "").strip()
    if use_ai:
        overrides["use_ai"] = use_ai == "1"
    return overrides


def settings_from_env() -> Settings:
    try:
        return merge_settings(Settings(), _env_overrides())
    except SettingsError as exc:
        log_line(f"WARN: Invalid settings in environment ({exc}). Using defaults.")
        return Settings()

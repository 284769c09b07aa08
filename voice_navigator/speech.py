import itertools
import queue
import threading
import traceback
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

import pyttsx3
import speech_recognition as sr

from voice_navigator.config import (
    LISTEN_TIMEOUT,
    LOCAL_STT_COMPUTE_TYPE,
    LOCAL_STT_DEVICE,
    LOCAL_STT_MODEL,
    MIC_INDEX_ENV,
    PAUSE_THRESHOLD,
    PHRASE_TIME_LIMIT,
    STT_BACKEND,
    STT_DEBUG,
    STT_LANGUAGE,
    TTS_BASE_RATE,
)
from voice_navigator.feedback import log_line
from voice_navigator.ports import ENDED, ERROR, RESULT, STARTED, Post, Voice

try:
    import numpy as np
except Exception:
    np = None

try:
    from faster_whisper import WhisperModel
except Exception:
    WhisperModel = None


def log_stt_debug(exc: Exception) -> None:
    if not STT_DEBUG:
        return
    log_line(f"DEBUG: STT exception type={exc.__class__.__name__}")
    trace = traceback.format_exc().strip()
    if trace:
        for line in trace.splitlines():
            log_line(f"DEBUG: {line}")


# ---------------------------------------------------------------------------
# Speech output
# ---------------------------------------------------------------------------


@dataclass
class _Utterance:
    token: int
    text: str
    rate: float
    voice_uri: Optional[str]


class Pyttsx3SpeechOutput:
    """Speech output port backed by a pyttsx3 engine on a worker thread.

    pyttsx3 has no native pause, so ``pause`` stops the engine and keeps the
    word offset of the current utterance; ``resume`` speaks the remainder
    under the same token.
    """

    def __init__(
        self,
        post: Post,
        listener: Optional[Callable[[str, int], None]] = None,
        engine_factory: Callable[[], Any] = pyttsx3.init,
    ) -> None:
        self._post = post
        self.listener = listener
        self._engine_factory = engine_factory
        self._lock = threading.RLock()
        self._queue: "queue.Queue[Optional[_Utterance]]" = queue.Queue()
        self._tokens = itertools.count(1)
        self._last_token: Optional[int] = None
        self._pause_token: Optional[int] = None
        self._engine: Optional[Any] = None
        self._current: Optional[_Utterance] = None
        self._word_offset = 0
        self._paused: Optional[_Utterance] = None
        self._interrupted = False
        self._shutdown = threading.Event()
        self._ready = threading.Event()
        self._worker = threading.Thread(target=self._worker_loop, name="voice-navigator-tts", daemon=True)
        self._worker.start()
        self._ready.wait(timeout=5.0)
        self.available = self._engine is not None

    def speak(self, text: str, rate: float = 1.0, voice_uri: Optional[str] = None) -> int:
        token = next(self._tokens)
        self._last_token = token
        log_line(f"  TTS: {text}")
        self._queue.put(_Utterance(token, text, rate, voice_uri))
        return token

    def cancel(self) -> None:
        with self._lock:
            self._paused = None
            self._pause_token = None
            self._interrupted = self._current is not None
        self._drain_queue()
        self._stop_engine()

    def pause(self) -> None:
        with self._lock:
            current = self._current
            if current is None:
                # Not picked up yet; park it when the worker gets to it.
                self._pause_token = self._last_token
                return
            remainder = current.text[self._word_offset:]
            self._paused = _Utterance(current.token, remainder, current.rate, current.voice_uri)
            self._interrupted = True
        self._stop_engine()

    def resume(self) -> None:
        with self._lock:
            paused = self._paused
            self._paused = None
            self._pause_token = None
        if paused is None:
            return
        if not paused.text.strip():
            self._emit(ENDED, paused.token)
            return
        self._queue.put(paused)

    def list_voices(self) -> List[Voice]:
        if self._engine is None:
            return []
        voices: List[Voice] = []
        with self._lock:
            raw_voices = self._engine.getProperty("voices") or []
        for voice in raw_voices:
            languages = list(getattr(voice, "languages", None) or [])
            lang = languages[0] if languages else ""
            if isinstance(lang, bytes):
                lang = lang.decode("utf-8", "ignore").lstrip("\x05")
            voices.append(Voice(name=str(voice.name), lang=str(lang), uri=str(voice.id)))
        return voices

    def shutdown(self) -> None:
        self._shutdown.set()
        self.cancel()
        self._queue.put(None)
        self._worker.join(timeout=1.5)

    def _emit(self, kind: str, token: int) -> None:
        if self.listener is not None:
            self._post(self.listener, kind, token)

    def _drain_queue(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break

    def _stop_engine(self) -> None:
        engine = self._engine
        if engine is None:
            return
        try:
            engine.stop()
        except Exception:
            pass

    def _on_word(self, _name: Any, location: int, _length: int) -> None:
        self._word_offset = location

    def _init_engine(self) -> None:
        try:
            engine = self._engine_factory()
            engine.setProperty("rate", TTS_BASE_RATE)
            engine.connect("started-word", self._on_word)
            self._engine = engine
        except Exception as exc:
            self._engine = None
            log_line(f"WARN: pyttsx3 init failed ({exc}). Spoken output will only be logged.")

    def _worker_loop(self) -> None:
        self._init_engine()
        self._ready.set()
        while not self._shutdown.is_set():
            try:
                utterance = self._queue.get(timeout=0.15)
            except queue.Empty:
                continue
            if utterance is None:
                continue
            with self._lock:
                if utterance.token == self._pause_token:
                    self._pause_token = None
                    self._paused = utterance
                    continue
                self._current = utterance
                self._word_offset = 0
                self._interrupted = False
            self._emit(STARTED, utterance.token)
            try:
                self._say(utterance)
            finally:
                with self._lock:
                    self._current = None
                    paused = self._paused is not None and self._paused.token == utterance.token
                    interrupted = self._interrupted
                if not paused:
                    if interrupted:
                        log_line("  TTS interrupted.")
                    self._emit(ENDED, utterance.token)

    def _say(self, utterance: _Utterance) -> None:
        engine = self._engine
        if engine is None:
            return
        try:
            engine.setProperty("rate", max(40, int(round(TTS_BASE_RATE * utterance.rate))))
            if utterance.voice_uri:
                engine.setProperty("voice", utterance.voice_uri)
            engine.say(utterance.text, str(utterance.token))
            engine.runAndWait()
        except Exception as exc:
            log_line(f"WARN: pyttsx3 speak failed ({exc}).")


# ---------------------------------------------------------------------------
# Speech input
# ---------------------------------------------------------------------------


def _resolve_stt_backend() -> str:
    choice = STT_BACKEND.lower()
    if choice not in {"auto", "google", "faster-whisper"}:
        return "google"
    if choice == "google":
        return "google"
    if choice == "faster-whisper":
        return "faster-whisper"
    if WhisperModel is None or np is None:
        return "google"
    return "faster-whisper"


def _stt_candidate_configs() -> List[Tuple[str, str]]:
    requested_device = (LOCAL_STT_DEVICE or "auto").strip().lower()
    requested_compute = (LOCAL_STT_COMPUTE_TYPE or "auto").strip()
    if requested_device == "cpu":
        return [("cpu", requested_compute), ("cpu", "int8")]
    if requested_device == "cuda":
        return [("cuda", requested_compute), ("cuda", "float16"), ("cpu", "int8")]
    return [("auto", requested_compute), ("cuda", "float16"), ("cpu", "int8")]


class SpeechTranscriber:
    """Google recognition, or a local faster-whisper model when available."""

    def __init__(self, recognizer: sr.Recognizer) -> None:
        self._recognizer = recognizer
        self._lock = threading.Lock()
        self._local_model: Optional[Any] = None
        self._error_streak = 0
        self.backend = _resolve_stt_backend()

    def _build_local_model(self, device: str, compute_type: str) -> Any:
        if WhisperModel is None or np is None:
            raise RuntimeError("faster-whisper dependencies are not installed.")
        return WhisperModel(LOCAL_STT_MODEL, device=device, compute_type=compute_type)

    def _get_local_model(self) -> Any:
        with self._lock:
            if self._local_model is not None:
                return self._local_model
            errors: List[str] = []
            for device, compute_type in _stt_candidate_configs():
                try:
                    self._local_model = self._build_local_model(device, compute_type)
                    log_line(f"Local STT model ready (device={device}, compute={compute_type}).")
                    return self._local_model
                except Exception as exc:
                    errors.append(f"{device}/{compute_type}: {exc}")
            raise RuntimeError("Could not initialize local STT. " + " | ".join(errors))

    def _transcribe_local(self, audio: sr.AudioData) -> str:
        model = self._get_local_model()
        pcm_bytes = audio.get_raw_data(convert_rate=16000, convert_width=2)
        samples = np.frombuffer(pcm_bytes, dtype=np.int16).astype(np.float32) / 32768.0
        segments, _info = model.transcribe(
            samples,
            language=STT_LANGUAGE if STT_LANGUAGE else None,
            beam_size=1,
            best_of=1,
            temperature=0.0,
            condition_on_previous_text=False,
            vad_filter=True,
        )
        return " ".join(seg.text.strip() for seg in segments if seg.text and seg.text.strip()).strip()

    def transcribe(self, audio: sr.AudioData) -> str:
        if self.backend == "faster-whisper":
            try:
                text = self._transcribe_local(audio)
                if not text:
                    raise sr.UnknownValueError()
                self._error_streak = 0
                return text
            except sr.UnknownValueError:
                raise
            except Exception as exc:
                log_stt_debug(exc)
                log_line(f"WARN: local STT failed ({exc}); falling back to Google STT.")
                self._error_streak += 1
                if self._error_streak >= 3:
                    self.backend = "google"
                    log_line("WARN: local STT repeatedly failed; using Google STT for the rest of this session.")
        return self._recognizer.recognize_google(audio, language=STT_LANGUAGE).strip()


def create_microphone() -> Tuple[Optional[sr.Microphone], str]:
    try:
        names = sr.Microphone.list_microphone_names()
    except (AttributeError, OSError) as exc:
        log_line(f"WARN: Microphone access unavailable ({exc}).")
        return None, ""
    if not names:
        log_line("WARN: No microphone devices found.")
        return None, ""

    selected_index: Optional[int] = None
    if MIC_INDEX_ENV:
        try:
            selected_index = int(MIC_INDEX_ENV)
        except ValueError:
            log_line(f"WARN: Invalid VOICE_NAVIGATOR_MIC_INDEX='{MIC_INDEX_ENV}'. Using system default.")
    if selected_index is not None and not 0 <= selected_index < len(names):
        log_line(
            f"WARN: VOICE_NAVIGATOR_MIC_INDEX {selected_index} is out of range (0-{len(names) - 1}). "
            "Using system default."
        )
        selected_index = None

    name = "System default microphone" if selected_index is None else f"{selected_index}: {names[selected_index]}"
    return sr.Microphone(device_index=selected_index), name


class MicrophoneSpeechInput:
    """Speech input port: each ``start()`` captures and recognizes one phrase."""

    def __init__(
        self,
        post: Post,
        listener: Optional[Callable[..., None]] = None,
        recognizer: Optional[sr.Recognizer] = None,
        microphone: Optional[Any] = None,
    ) -> None:
        self._post = post
        self.listener = listener
        self._recognizer = recognizer if recognizer is not None else sr.Recognizer()
        self._recognizer.pause_threshold = max(0.3, PAUSE_THRESHOLD)
        self._transcriber = SpeechTranscriber(self._recognizer)
        if microphone is not None:
            self._microphone, self.microphone_name = microphone, str(getattr(microphone, "name", "microphone"))
        else:
            self._microphone, self.microphone_name = create_microphone()
        self.available = self._microphone is not None
        self._calibrated = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        if self.available:
            log_line(f"Using microphone: {self.microphone_name}")
            log_line(f"STT backend: {self._transcriber.backend}")

    def start(self) -> None:
        if not self.available:
            return
        self._stop_event.clear()
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._capture_once, name="voice-navigator-stt", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def _emit(self, kind: str, payload: Any = None) -> None:
        if self.listener is not None:
            self._post(self.listener, kind, payload)

    def _capture_once(self) -> None:
        self._emit(STARTED)
        try:
            with self._microphone as source:
                if not self._calibrated:
                    self._recognizer.adjust_for_ambient_noise(source, duration=1.0)
                    self._calibrated = True
                audio = self._recognizer.listen(source, timeout=LISTEN_TIMEOUT, phrase_time_limit=PHRASE_TIME_LIMIT)
            if self._stop_event.is_set():
                return
            text = self._transcriber.transcribe(audio)
            if text:
                self._emit(RESULT, text)
            else:
                self._emit(ERROR, "no-match")
        except sr.WaitTimeoutError:
            pass
        except sr.UnknownValueError:
            log_line("  Could not understand speech; listening again.")
            self._emit(ERROR, "no-match")
        except sr.RequestError as exc:
            log_stt_debug(exc)
            log_line(f"WARN: Speech recognition request failed ({exc}).")
            self._emit(ERROR, "network")
        except PermissionError as exc:
            log_line(f"WARN: Microphone permission denied ({exc}).")
            self._emit(ERROR, "not-allowed")
        except OSError as exc:
            log_stt_debug(exc)
            log_line(f"WARN: Microphone capture failed ({exc}).")
            self._emit(ERROR, "audio-capture")
        finally:
            self._emit(ENDED)

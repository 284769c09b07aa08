from typing import Any, Callable, Dict, List, Mapping, Optional

from voice_navigator.config import (
    CLICK_DELAY_SECONDS,
    NAVIGATE_DELAY_SECONDS,
    RESTART_DELAY_SECONDS,
    SUMMARY_CHAR_LIMIT,
    Settings,
    merge_settings,
)
from voice_navigator.dom import PageNode
from voice_navigator.errors import SettingsError, SpeechInputError
from voice_navigator.extract import collect_headings, collect_links, collect_readable, extract_text, summary_source
from voice_navigator.feedback import FeedbackLevel, log_line
from voice_navigator.listening import ListeningStateMachine
from voice_navigator.locate import CLICKABLE, NAVIGABLE, describe_target, find_target
from voice_navigator.reading import ReadingItem, ReadingQueueEngine
from voice_navigator.router import CommandRouter, normalize_transcript

STARTUP_MESSAGE = "Your voice assistant has been started and is ready to help you navigate this website."
SUMMARY_FAILED_MESSAGE = "Error querying the model. Please try again later."
SCROLL_FRACTION = 0.7
HELP_DURATION_MS = 10000

ACTION_ALIASES = {
    "startAssistant": "start",
    "stopAssistant": "stop",
    "processCommand": "submitTranscript",
}


def _items_for(nodes: List[PageNode]) -> List[ReadingItem]:
    return [ReadingItem(extract_text(node), node.handle()) for node in nodes]


class SessionController:
    """Owns one voice session: settings, command table, reading and listening.

    Hardware ports report events through ``on_output_event`` and
    ``on_input_event``; these must be called on the event thread.
    """

    def __init__(
        self,
        settings: Settings,
        speech_input: Any,
        speech_output: Any,
        page: Any,
        feedback: Callable[..., None],
        scheduler: Any,
        summarizer: Optional[Any] = None,
        restart_delay: float = RESTART_DELAY_SECONDS,
    ) -> None:
        self.settings = settings
        self._output = speech_output
        self._page = page
        self._feedback = feedback
        self._scheduler = scheduler
        self._summarizer = summarizer
        self._document = PageNode("body")
        self.reading = ReadingQueueEngine(speech_output, page, feedback, lambda: self.settings)
        self.listening = ListeningStateMachine(
            speech_input,
            scheduler,
            self.submit_transcript,
            feedback,
            restart_delay=restart_delay,
        )
        self.router = CommandRouter(
            [
                ("read page", self.read_page),
                ("read headings", self.read_headings),
                ("read links", self.read_links),
                ("navigate to", self.navigate_to),
                ("click", self.click_element),
                ("stop reading", self.stop_reading),
                ("pause reading", self.pause_reading),
                ("resume reading", self.resume_reading),
                ("scroll down", self.scroll_down),
                ("scroll up", self.scroll_up),
                ("go back", self.go_back),
                ("summarize page", self.summarize_page),
                ("help", self.list_commands),
            ],
            feedback,
        )

    # -- event entry points -------------------------------------------------

    def on_output_event(self, kind: str, token: Any) -> None:
        self.reading.on_output_event(kind, token)

    def on_input_event(self, kind: str, payload: Any = None) -> None:
        self.listening.on_input_event(kind, payload)

    def submit_transcript(self, text: str) -> None:
        transcript = normalize_transcript(text)
        if not transcript:
            return
        self._page.load_document(lambda document: self._route(transcript, document))

    def _route(self, transcript: str, document: Optional[PageNode]) -> None:
        if document is not None:
            self._document = document
        self.router.route(transcript)

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> bool:
        try:
            started = self.listening.start()
        except SpeechInputError:
            return False
        if started:
            self.announce_startup()
        return started

    def stop(self) -> None:
        self.listening.stop()
        self.reading.stop()
        self._feedback("Voice assistant stopped", FeedbackLevel.INFO)

    def auto_start(self) -> None:
        log_line("Auto-start enabled; starting to listen.")
        self.start()

    def announce_startup(self) -> None:
        self.reading.announce(STARTUP_MESSAGE)
        self._feedback("Voice assistant activated", FeedbackLevel.SUCCESS)

    def update_settings(self, overrides: Optional[Mapping[str, Any]]) -> Settings:
        self.settings = merge_settings(self.settings, overrides)
        log_line(f"Settings: {self.settings.as_message()}")
        return self.settings

    # -- control channel ----------------------------------------------------

    def handle_message(self, message: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        raw_action = str(message.get("action", ""))
        action = ACTION_ALIASES.get(raw_action, raw_action)
        if action == "start":
            self.start()
            return {"isListening": self.listening.is_listening}
        if action == "stop":
            self.stop()
            return {"isListening": self.listening.is_listening}
        if action == "updateSettings":
            try:
                settings = self.update_settings(message.get("settings"))
            except SettingsError as exc:
                self._feedback(f"Invalid settings: {exc}", FeedbackLevel.ERROR)
                return {"error": str(exc)}
            return {"settings": settings.as_message()}
        if action == "getVoices":
            voices = self._output.list_voices()
            return {"voices": [{"name": v.name, "lang": v.lang, "uri": v.uri} for v in voices]}
        if action == "getStatus":
            return {
                "isListening": self.listening.is_listening,
                "listeningState": self.listening.state.value,
                "speakingState": self.reading.state.value,
            }
        if action == "submitTranscript":
            self.submit_transcript(str(message.get("text") or message.get("command") or ""))
            return None
        log_line(f"WARN: Unknown control action: {raw_action!r}")
        return None

    # -- commands -----------------------------------------------------------

    def read_page(self, parameter: str = "") -> None:
        self.reading.enqueue_all(_items_for(collect_readable(self._document)))
        self.reading.start_or_continue()

    def read_headings(self, parameter: str = "") -> None:
        headings = collect_headings(self._document)
        if not headings:
            self.reading.announce("No headings found on this page.")
            return
        self.reading.enqueue_all(_items_for(headings))
        self.reading.start_or_continue()

    def read_links(self, parameter: str = "") -> None:
        links = collect_links(self._document)
        if not links:
            self.reading.announce("No links found on this page.")
            return
        self.reading.enqueue_all(_items_for(links))
        self.reading.start_or_continue()

    def navigate_to(self, target: str = "") -> None:
        if not target:
            return
        node = find_target(self._document, target, NAVIGABLE)
        if node is None:
            self.reading.announce(f'Could not find a link matching "{target}"')
            return
        self.reading.announce(f"Navigating to {node.label()}")
        handle = node.handle()
        if handle is not None:
            self._page.focus(handle)
            self._scheduler.call_later(NAVIGATE_DELAY_SECONDS, self._page.activate, handle)

    def click_element(self, target: str = "") -> None:
        if not target:
            return
        node = find_target(self._document, target, CLICKABLE)
        if node is None:
            self.reading.announce(f'Could not find a clickable element matching "{target}"')
            return
        self.reading.announce(f"Clicking {describe_target(node)}")
        handle = node.handle()
        if handle is not None:
            self._scheduler.call_later(CLICK_DELAY_SECONDS, self._page.activate, handle)

    def stop_reading(self, parameter: str = "") -> None:
        self.reading.stop()

    def pause_reading(self, parameter: str = "") -> None:
        self.reading.pause()

    def resume_reading(self, parameter: str = "") -> None:
        self.reading.resume()

    def scroll_down(self, parameter: str = "") -> None:
        self._page.scroll("down", SCROLL_FRACTION)
        self.reading.announce("Scrolling down")

    def scroll_up(self, parameter: str = "") -> None:
        self._page.scroll("up", SCROLL_FRACTION)
        self.reading.announce("Scrolling up")

    def go_back(self, parameter: str = "") -> None:
        self._page.go_back()
        self.reading.announce("Going back")

    def summarize_page(self, parameter: str = "") -> None:
        if not self.settings.use_ai or self._summarizer is None:
            self.read_page()
            return
        text = summary_source(self._document, SUMMARY_CHAR_LIMIT)
        if not text:
            self.reading.announce("No useful content found on this page.")
            return
        self._feedback("Summarizing page...", FeedbackLevel.INFO)
        self._summarizer.request(text, self._speak_summary)

    def _speak_summary(self, summary: Optional[str]) -> None:
        if not summary or not summary.strip():
            self.reading.announce(SUMMARY_FAILED_MESSAGE)
            return
        log_line(f"Summary: {summary.strip()}")
        self.reading.announce(summary.strip())

    def list_commands(self, parameter: str = "") -> None:
        command_list = ", ".join(self.router.keys())
        self.reading.announce(f"Available commands: {command_list}")
        self._feedback(f"Available commands: {command_list}", FeedbackLevel.INFO, HELP_DURATION_MS)

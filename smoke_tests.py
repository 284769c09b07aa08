import threading
import time
from typing import Any, Dict, List, Optional, Set, Tuple

import speech_recognition as sr

from voice_navigator.browser import HIGHLIGHT_SCRIPT, BrowserRuntime, normalize_url
from voice_navigator.config import Settings, merge_settings
from voice_navigator.dom import SNAPSHOT_SCRIPT, NodeHandle, PageNode, build_page_tree, element
from voice_navigator.errors import SettingsError
from voice_navigator.extract import collect_headings, collect_readable, extract_text
from voice_navigator.feedback import FeedbackLevel, set_ui_logger
from voice_navigator.listening import PERMISSION_MESSAGE, UNSUPPORTED_MESSAGE, ListeningState, ListeningStateMachine
from voice_navigator.locate import CLICKABLE, NAVIGABLE, find_target
from voice_navigator.ports import Voice
from voice_navigator.reading import NOTHING_TO_READ, ReadingItem, ReadingQueueEngine, SpeakingState
from voice_navigator.router import CommandRouter
from voice_navigator.session import SUMMARY_FAILED_MESSAGE, SessionController
from voice_navigator.speech import MicrophoneSpeechInput, Pyttsx3SpeechOutput


class RecordingFeedback:
    def __init__(self) -> None:
        self.messages: List[Tuple[str, FeedbackLevel, int]] = []

    def __call__(self, message: str, level: FeedbackLevel = FeedbackLevel.INFO, duration_ms: int = 3000) -> None:
        self.messages.append((message, FeedbackLevel(level), duration_ms))

    def levels(self) -> List[FeedbackLevel]:
        return [level for _message, level, _duration in self.messages]

    def texts(self) -> List[str]:
        return [message for message, _level, _duration in self.messages]


class FakeOutput:
    def __init__(self) -> None:
        self.spoken: List[str] = []
        self.events: List[Tuple[str, int]] = []
        self.calls: List[str] = []
        self.active: Optional[int] = None
        self.listener: Any = None
        self._next = 0

    def speak(self, text: str, rate: float = 1.0, voice_uri: Optional[str] = None) -> int:
        self._next += 1
        self.spoken.append(text)
        self.active = self._next
        self.events.append(("started", self._next))
        return self._next

    def cancel(self) -> None:
        self.calls.append("cancel")
        if self.active is not None:
            self.events.append(("ended", self.active))
            self.active = None

    def pause(self) -> None:
        self.calls.append("pause")

    def resume(self) -> None:
        self.calls.append("resume")

    def finish(self) -> None:
        token = self.active
        assert token is not None
        self.active = None
        self.events.append(("ended", token))
        self.listener("ended", token)

    def list_voices(self) -> List[Voice]:
        return [Voice(name="Samantha", lang="en-US", uri="com.apple.voice.samantha")]


class FakePage:
    def __init__(self, document: Optional[PageNode] = None) -> None:
        self.document = document or PageNode("body")
        self.calls: List[Tuple[str, Any]] = []

    def load_document(self, callback: Any) -> None:
        callback(self.document)

    def highlight(self, handle: Any) -> None:
        self.calls.append(("highlight", handle.ref))

    def clear_highlight(self) -> None:
        self.calls.append(("clear", None))

    def focus(self, handle: Any) -> None:
        self.calls.append(("focus", handle.ref))

    def activate(self, handle: Any) -> None:
        self.calls.append(("activate", handle.ref))

    def scroll(self, direction: str, fraction: float) -> None:
        self.calls.append(("scroll", direction))

    def go_back(self) -> None:
        self.calls.append(("back", None))

    def names(self) -> List[str]:
        return [name for name, _value in self.calls]


class FakeInput:
    def __init__(self, available: bool = True) -> None:
        self.available = available
        self.starts = 0
        self.stops = 0

    def start(self) -> None:
        self.starts += 1

    def stop(self) -> None:
        self.stops += 1


class _Timer:
    def __init__(self, delay: float, callback: Any, args: Tuple[Any, ...]) -> None:
        self.delay = delay
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    def __init__(self) -> None:
        self.timers: List[_Timer] = []

    def call_later(self, delay: float, callback: Any, *args: Any) -> _Timer:
        timer = _Timer(delay, callback, args)
        self.timers.append(timer)
        return timer

    def pending(self) -> List[_Timer]:
        return [timer for timer in self.timers if not timer.cancelled]

    def run_pending(self) -> None:
        due, self.timers = self.pending(), []
        for timer in due:
            timer.callback(*timer.args)


class FakeSummarizer:
    def __init__(self, answer: Optional[str]) -> None:
        self.answer = answer
        self.requests: List[str] = []

    def request(self, text: str, callback: Any) -> None:
        self.requests.append(text)
        callback(self.answer)


class SnapshotPage(FakePage):
    """Takes a fresh snapshot on every load; elements keep their stamped refs."""

    def __init__(self, payload: Dict[str, Any]) -> None:
        super().__init__()
        self.payload = payload
        self.generation = 0

    def load_document(self, callback: Any) -> None:
        self.generation += 1
        self.document = build_page_tree(self.payload, self.generation)
        callback(self.document)

    def _live(self, handle: Any) -> Optional[str]:
        refs = {node.ref for node in self.document.iter()}
        return handle.ref if handle.ref in refs else None

    def highlight(self, handle: Any) -> None:
        self.calls.append(("highlight", self._live(handle)))

    def activate(self, handle: Any) -> None:
        self.calls.append(("activate", self._live(handle)))


class FakeTtsEngine:
    def __init__(self) -> None:
        self.said: List[str] = []
        self.properties: Dict[str, Any] = {}
        self.callbacks: Dict[str, Any] = {}
        self.completed = 0
        self.running = threading.Event()
        self._release = threading.Event()

    def setProperty(self, name: str, value: Any) -> None:
        self.properties[name] = value

    def getProperty(self, name: str) -> Any:
        return self.properties.get(name)

    def connect(self, topic: str, callback: Any) -> None:
        self.callbacks[topic] = callback

    def say(self, text: str, name: Optional[str] = None) -> None:
        self.said.append(text)

    def runAndWait(self) -> None:
        words = self.said[-1].split(" ")
        if len(words) > 1:
            self.callbacks["started-word"](None, len(words[0]) + 1, len(words[1]))
        self._release.clear()
        self.running.set()
        self._release.wait(timeout=2.0)
        self.running.clear()
        self.completed += 1

    def stop(self) -> None:
        self._release.set()


class FakeMicrophone:
    name = "Test microphone"

    def __enter__(self) -> "FakeMicrophone":
        return self

    def __exit__(self, *exc_info: Any) -> bool:
        return False


class FakeRecognizer:
    def __init__(self, heard: str = "", listen_error: Optional[Exception] = None, recognize_error: Optional[Exception] = None) -> None:
        self.heard = heard
        self.listen_error = listen_error
        self.recognize_error = recognize_error
        self.pause_threshold = 0.8

    def adjust_for_ambient_noise(self, source: Any, duration: float = 1.0) -> None:
        pass

    def listen(self, source: Any, timeout: Any = None, phrase_time_limit: Any = None) -> str:
        if self.listen_error is not None:
            raise self.listen_error
        return "audio"

    def recognize_google(self, audio: Any, language: str = "en") -> str:
        if self.recognize_error is not None:
            raise self.recognize_error
        return self.heard


class FakeBrowserPage:
    def __init__(self, live_refs: Set[str]) -> None:
        self.live_refs = live_refs

    def is_closed(self) -> bool:
        return False

    def evaluate(self, script: str, arg: Any = None) -> Any:
        if script == HIGHLIGHT_SCRIPT:
            return arg[0] in self.live_refs
        return None


class FakeBrowserContext:
    pages: List[Any] = []

    def close(self) -> None:
        pass


class LogRecorder:
    def __init__(self) -> None:
        self.lines: List[str] = []

    def add_log(self, line: str) -> None:
        self.lines.append(line)


def with_refs(root: PageNode) -> PageNode:
    for idx, node in enumerate(root.iter(), start=1):
        node.ref = f"e{idx}"
    return root


def sample_page() -> PageNode:
    return with_refs(
        element(
            "body",
            element("h1", "Welcome"),
            element("p", "Visit our ", element("a", "Contact us", href="/contact"), " page."),
            element("ul", element("li", element("p", "Nested item"))),
            element("button", "Submit form"),
            element("a", "Home", href="/"),
        )
    )


def build_engine(settings: Optional[Settings] = None) -> Tuple[ReadingQueueEngine, FakeOutput, FakePage, RecordingFeedback]:
    output = FakeOutput()
    page = FakePage()
    feedback = RecordingFeedback()
    current = settings or Settings()
    engine = ReadingQueueEngine(output, page, feedback, lambda: current)
    output.listener = engine.on_output_event
    return engine, output, page, feedback


def build_session(
    document: Optional[PageNode] = None,
    settings: Optional[Settings] = None,
    summarizer: Any = None,
    speech_input: Any = None,
    page: Optional[FakePage] = None,
) -> Tuple[SessionController, FakeOutput, FakePage, FakeInput, ManualScheduler, RecordingFeedback]:
    output = FakeOutput()
    page = page if page is not None else FakePage(document or sample_page())
    mic = speech_input if speech_input is not None else FakeInput()
    scheduler = ManualScheduler()
    feedback = RecordingFeedback()
    controller = SessionController(
        settings or Settings(),
        mic,
        output,
        page,
        feedback,
        scheduler,
        summarizer=summarizer,
    )
    output.listener = controller.on_output_event
    return controller, output, page, mic, scheduler, feedback


def no_overlapping_utterances(events: List[Tuple[str, int]]) -> bool:
    in_flight = None
    for kind, token in events:
        if kind == "started":
            if in_flight is not None:
                return False
            in_flight = token
        elif kind == "ended" and token == in_flight:
            in_flight = None
    return True


# ---------------------------------------------------------------------------
# Command router
# ---------------------------------------------------------------------------


def test_router_exact_match_wins_over_prefix():
    calls: List[Tuple[str, str]] = []
    feedback = RecordingFeedback()
    router = CommandRouter(
        [
            ("read", lambda parameter="": calls.append(("read", parameter))),
            ("read page", lambda parameter="": calls.append(("read page", parameter))),
        ],
        feedback,
    )
    assert router.route("  Read Page ") is True
    assert calls == [("read page", "")]
    assert feedback.levels() == [FeedbackLevel.INFO]


def test_router_prefix_passes_trimmed_remainder_in_registration_order():
    calls: List[Tuple[str, str]] = []
    router = CommandRouter(
        [
            ("go", lambda parameter="": calls.append(("go", parameter))),
            ("go to", lambda parameter="": calls.append(("go to", parameter))),
            ("navigate to", lambda parameter="": calls.append(("navigate to", parameter))),
        ],
        RecordingFeedback(),
    )
    assert router.route("navigate to   the contact page ")
    assert router.route("go to contact")
    assert calls == [("navigate to", "the contact page"), ("go", "to contact")]


def test_router_unrecognized_reports_warning_with_transcript():
    feedback = RecordingFeedback()
    router = CommandRouter([("help", lambda parameter="": None)], feedback)
    assert router.route("make coffee") is False
    message, level, _duration = feedback.messages[-1]
    assert level is FeedbackLevel.WARNING
    assert '"make coffee"' in message


def test_router_rejects_duplicate_keys():
    try:
        CommandRouter([("help", print), ("HELP", print)], RecordingFeedback())
    except ValueError:
        pass
    else:
        raise AssertionError("duplicate command keys must be rejected")


# ---------------------------------------------------------------------------
# Text extractor and target locator
# ---------------------------------------------------------------------------


def test_extract_text_tags_interactive_elements():
    assert extract_text(element("h2", "Title")) == "Heading 2: Title"
    assert extract_text(element("a", "Home")) == "Link: Home"
    assert extract_text(element("button", "  Save  ")) == "Button: Save"
    paragraph = element("p", "Visit our ", element("a", "Contact us"), " page.")
    assert extract_text(paragraph) == "Visit our page."
    wrapper = element("div", element("span", "Only nested"))
    assert extract_text(wrapper) == "Only nested"


def test_collect_readable_skips_empty_containers():
    texts = [extract_text(node) for node in collect_readable(sample_page())]
    assert texts == [
        "Heading 1: Welcome",
        "Visit our page.",
        "Link: Contact us",
        "Nested item",
        "Button: Submit form",
        "Link: Home",
    ]
    assert [node.tag for node in collect_headings(sample_page())] == ["h1"]


def test_find_target_matches_labels_values_and_aria():
    page = sample_page()
    button = find_target(page, "submit", CLICKABLE)
    assert button is not None and button.tag == "button"
    assert find_target(page, "zzz", NAVIGABLE) is None
    assert find_target(page, "", NAVIGABLE) is None
    assert find_target(page, None, CLICKABLE) is None

    form = element(
        "form",
        element("input", type_="submit", value="Send message"),
        element("div", role="button", aria_label="Close dialog"),
        element("a", "Send feedback"),
    )
    assert find_target(form, "send", CLICKABLE).tag == "input"
    assert find_target(form, "close", CLICKABLE).get("role") == "button"
    assert find_target(form, "send", NAVIGABLE).tag == "a"


def test_find_target_rejects_unknown_role():
    try:
        find_target(sample_page(), "home", "hoverable")
    except ValueError:
        pass
    else:
        raise AssertionError("unknown roles must raise")


def test_build_page_tree_from_snapshot_payload():
    payload = {
        "tag": "BODY",
        "ref": "g3-e1",
        "attrs": {},
        "children": [
            {"tag": "a", "ref": "g3-e2", "attrs": {"href": "/x"}, "children": ["  Docs  "]},
            "tail",
        ],
    }
    root = build_page_tree(payload, generation=3)
    link = find_target(root, "docs", NAVIGABLE)
    assert link is not None
    assert link.handle().ref == "g3-e2" and link.handle().generation == 3
    assert link.handle().selector() == '[data-vn-ref="g3-e2"]'
    assert root.direct_text() == "tail"


# ---------------------------------------------------------------------------
# Reading queue engine
# ---------------------------------------------------------------------------


def test_empty_queue_speaks_nothing_to_read():
    engine, output, _page, _feedback = build_engine()
    engine.enqueue_all([])
    engine.start_or_continue()
    assert output.spoken == [NOTHING_TO_READ]
    assert engine.state is SpeakingState.IDLE


def test_drain_speaks_items_in_order_and_clears_highlight_between():
    engine, output, page, feedback = build_engine()
    items = [ReadingItem(text, with_refs(element("p", text)).handle()) for text in ("A", "B", "C")]
    engine.enqueue_all(items + [ReadingItem("   ")])
    assert engine.pending == 3
    engine.start_or_continue()
    engine.start_or_continue()
    for _ in range(3):
        output.finish()
    assert output.spoken == ["A", "B", "C"]
    assert [kind for kind, _token in output.events] == ["started", "ended"] * 3
    assert page.names() == ["highlight", "clear"] * 3
    assert engine.state is SpeakingState.IDLE
    assert feedback.texts()[-1] == "Ready"


def test_enqueue_all_cancels_in_flight_before_new_queue_starts():
    engine, output, _page, _feedback = build_engine()
    engine.enqueue_all([ReadingItem("first"), ReadingItem("second")])
    engine.start_or_continue()
    stale = output.active
    engine.enqueue_all([ReadingItem("replacement")])
    assert output.calls == ["cancel"]
    engine.start_or_continue()
    engine.on_output_event("ended", stale)
    assert output.spoken == ["first", "replacement"]
    assert engine.current == ReadingItem("replacement")
    assert no_overlapping_utterances(output.events)


def test_stop_discards_queue():
    engine, output, _page, feedback = build_engine()
    engine.enqueue_all([ReadingItem("one"), ReadingItem("two"), ReadingItem("three")])
    engine.start_or_continue()
    token = output.active
    engine.stop()
    engine.on_output_event("ended", token)
    assert output.spoken == ["one"]
    assert engine.pending == 0
    assert engine.state is SpeakingState.IDLE
    assert "Stopped reading" in feedback.texts()


def test_pause_and_resume_only_forward_in_matching_state():
    engine, output, _page, _feedback = build_engine()
    engine.pause()
    engine.resume()
    assert output.calls == []
    engine.enqueue_all([ReadingItem("long article")])
    engine.start_or_continue()
    engine.resume()
    engine.pause()
    assert engine.state is SpeakingState.PAUSED
    engine.pause()
    engine.resume()
    assert output.calls == ["pause", "resume"]
    assert engine.state is SpeakingState.SPEAKING


def test_highlight_disabled_by_settings():
    engine, output, page, _feedback = build_engine(Settings(highlight_elements=False))
    engine.enqueue_all([ReadingItem("A", with_refs(element("p", "A")).handle())])
    engine.start_or_continue()
    output.finish()
    assert page.calls == []


# ---------------------------------------------------------------------------
# Listening state machine
# ---------------------------------------------------------------------------


def build_listener(port: Any = None) -> Tuple[ListeningStateMachine, Any, ManualScheduler, List[str], RecordingFeedback]:
    mic = port if port is not None else FakeInput()
    scheduler = ManualScheduler()
    heard: List[str] = []
    feedback = RecordingFeedback()
    machine = ListeningStateMachine(mic, scheduler, heard.append, feedback, restart_delay=0.3)
    return machine, mic, scheduler, heard, feedback


def test_ended_restarts_once_after_delay():
    machine, mic, scheduler, _heard, _feedback = build_listener()
    assert machine.start() is True
    assert machine.start() is True
    assert mic.starts == 1
    machine.on_input_event("ended")
    machine.on_input_event("ended")
    assert machine.state is ListeningState.RESTARTING
    assert mic.starts == 1
    assert [timer.delay for timer in scheduler.pending()] == [0.3]
    scheduler.run_pending()
    assert mic.starts == 2
    assert machine.state is ListeningState.LISTENING


def test_stop_prevents_restart_from_late_ended_event():
    machine, mic, scheduler, heard, _feedback = build_listener()
    machine.start()
    machine.stop()
    machine.on_input_event("result", "Read Page")
    machine.on_input_event("ended")
    assert scheduler.pending() == []
    assert machine.state is ListeningState.IDLE
    assert heard == []
    assert mic.stops == 1


def test_results_are_normalized_and_routed_individually():
    machine, _mic, _scheduler, heard, _feedback = build_listener()
    machine.start()
    machine.on_input_event("result", "  Scroll DOWN ")
    machine.on_input_event("result", "scroll down")
    assert heard == ["scroll down", "scroll down"]


def test_permission_denied_is_terminal():
    machine, mic, scheduler, _heard, feedback = build_listener()
    machine.start()
    machine.on_input_event("error", "not-allowed")
    machine.on_input_event("ended")
    assert machine.state is ListeningState.ERROR
    assert scheduler.pending() == []
    assert feedback.messages[-1] == (PERMISSION_MESSAGE, FeedbackLevel.ERROR, 3000)
    assert machine.start() is True
    assert mic.starts == 2


def test_other_errors_keep_listening():
    machine, mic, scheduler, _heard, feedback = build_listener()
    machine.start()
    machine.on_input_event("error", "network")
    machine.on_input_event("ended")
    scheduler.run_pending()
    assert feedback.texts()[-1] == "Error: network. Try again."
    assert mic.starts == 2


def test_missing_capability_reported_once():
    machine, mic, _scheduler, _heard, feedback = build_listener(FakeInput(available=False))
    assert machine.start() is False
    assert machine.start() is False
    assert mic.starts == 0
    assert feedback.texts() == [UNSUPPORTED_MESSAGE]


# ---------------------------------------------------------------------------
# Session controller and control channel
# ---------------------------------------------------------------------------


def test_navigate_to_focuses_then_clicks_matching_link():
    controller, output, page, _mic, scheduler, _feedback = build_session()
    controller.submit_transcript("Navigate to contact")
    assert output.spoken == ["Navigating to Contact us"]
    contact_ref = find_target(page.document, "contact", NAVIGABLE).ref
    assert page.calls == [("focus", contact_ref)]
    assert [timer.delay for timer in scheduler.pending()] == [2.0]
    scheduler.run_pending()
    assert page.calls[-1] == ("activate", contact_ref)


def test_navigate_to_unknown_link_does_not_navigate():
    controller, output, page, _mic, scheduler, _feedback = build_session()
    controller.submit_transcript("navigate to zzzz")
    assert output.spoken == ['Could not find a link matching "zzzz"']
    assert page.calls == []
    assert scheduler.pending() == []


def test_click_command_uses_clickable_scope():
    controller, output, page, _mic, scheduler, _feedback = build_session()
    controller.submit_transcript("click submit")
    assert output.spoken == ["Clicking Submit form"]
    scheduler.run_pending()
    assert page.names() == ["activate"]
    controller.submit_transcript("click home")
    assert output.spoken[-1] == 'Could not find a clickable element matching "home"'


def test_read_page_then_stop_reading():
    controller, output, page, _mic, _scheduler, _feedback = build_session()
    controller.submit_transcript("read page")
    assert output.spoken == ["Heading 1: Welcome"]
    output.finish()
    assert output.spoken[-1] == "Visit our page."
    controller.submit_transcript("stop reading")
    assert controller.reading.pending == 0
    assert "cancel" in output.calls
    assert no_overlapping_utterances(output.events)
    assert page.names().count("highlight") == 2


def test_announcement_replaces_reading():
    controller, output, _page, _mic, _scheduler, _feedback = build_session()
    controller.submit_transcript("read headings")
    controller.submit_transcript("scroll down")
    assert output.spoken == ["Heading 1: Welcome", "Scrolling down"]
    assert controller.reading.pending == 0
    assert no_overlapping_utterances(output.events)


def test_help_lists_commands_in_registration_order():
    controller, output, _page, _mic, _scheduler, feedback = build_session()
    controller.submit_transcript("help")
    assert output.spoken[-1].startswith("Available commands: read page, read headings, read links, navigate to")
    assert feedback.messages[-1][2] == 10000


def test_summarize_page_uses_summarizer_when_enabled():
    summarizer = FakeSummarizer("A short welcome page.")
    controller, output, _page, _mic, _scheduler, _feedback = build_session(
        settings=Settings(use_ai=True), summarizer=summarizer
    )
    controller.submit_transcript("summarize page")
    assert summarizer.requests == ["Welcome\nVisit our Contact us page.\nNested item"]
    assert output.spoken == ["A short welcome page."]

    summarizer.answer = None
    controller.submit_transcript("summarize page")
    assert output.spoken[-1] == SUMMARY_FAILED_MESSAGE


def test_summarize_page_reads_page_without_ai():
    controller, output, _page, _mic, _scheduler, _feedback = build_session(summarizer=FakeSummarizer("unused"))
    controller.submit_transcript("summarize page")
    assert output.spoken == ["Heading 1: Welcome"]


def test_control_channel_messages():
    controller, output, _page, mic, _scheduler, _feedback = build_session()
    assert controller.handle_message({"action": "getStatus"})["isListening"] is False
    assert controller.handle_message({"action": "start"}) == {"isListening": True}
    assert mic.starts == 1
    assert output.spoken[-1].startswith("Your voice assistant has been started")
    voices = controller.handle_message({"action": "getVoices"})
    assert voices == {"voices": [{"name": "Samantha", "lang": "en-US", "uri": "com.apple.voice.samantha"}]}
    updated = controller.handle_message(
        {"action": "updateSettings", "settings": {"speechRate": 1.5, "voiceURI": "", "colour": "red"}}
    )
    assert updated["settings"]["speechRate"] == 1.5
    assert controller.settings.voice_uri is None
    assert "error" in controller.handle_message({"action": "updateSettings", "settings": {"speechRate": 0}})
    assert controller.settings.speech_rate == 1.5
    assert controller.handle_message({"action": "submitTranscript", "text": "Scroll Up"}) is None
    assert output.spoken[-1] == "Scrolling up"
    assert controller.handle_message({"action": "processCommand", "command": "go back"}) is None
    assert controller.handle_message({"action": "dance"}) is None
    assert controller.handle_message({"action": "stop"}) == {"isListening": False}


def test_listening_results_reach_router():
    controller, output, _page, _mic, _scheduler, feedback = build_session()
    controller.start()
    controller.on_input_event("result", "Read Headings")
    assert output.spoken[-1] == "Heading 1: Welcome"
    controller.on_input_event("result", "open the pod bay doors")
    assert feedback.levels()[-1] is FeedbackLevel.WARNING


def test_merge_settings_validates_types():
    base = Settings()
    merged = merge_settings(base, {"speechRate": 2, "highlightElements": False, "useAI": True, "extra": 1})
    assert merged == Settings(speech_rate=2.0, highlight_elements=False, use_ai=True)
    assert merge_settings(base, None) is base
    for bad in ({"speechRate": -1}, {"speechRate": "fast"}, {"highlightElements": "yes"}, {"voiceURI": 3}):
        try:
            merge_settings(base, bad)
        except SettingsError:
            continue
        raise AssertionError(f"expected SettingsError for {bad}")


def as_payload(node: PageNode) -> Dict[str, Any]:
    children: List[Any] = []
    for child in node.children:
        children.append(as_payload(child) if isinstance(child, PageNode) else child)
    return {"tag": node.tag, "ref": node.ref, "attrs": dict(node.attrs), "children": children}


def wait_until(predicate: Any, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return bool(predicate())


def build_tts() -> Tuple[Pyttsx3SpeechOutput, FakeTtsEngine, List[Tuple[str, int]]]:
    engine = FakeTtsEngine()
    events: List[Tuple[str, int]] = []
    output = Pyttsx3SpeechOutput(
        lambda callback, *args: callback(*args),
        lambda kind, token: events.append((kind, token)),
        engine_factory=lambda: engine,
    )
    return output, engine, events


def capture_phrase(recognizer: FakeRecognizer, stopped: bool = False) -> List[Tuple[str, Any]]:
    events: List[Tuple[str, Any]] = []
    mic = MicrophoneSpeechInput(
        lambda callback, *args: callback(*args),
        lambda kind, payload=None: events.append((kind, payload)),
        recognizer=recognizer,
        microphone=FakeMicrophone(),
    )
    mic._transcriber.backend = "google"
    if stopped:
        mic.stop()
    mic._capture_once()
    return events


# ---------------------------------------------------------------------------
# Page snapshots between commands
# ---------------------------------------------------------------------------


def test_snapshot_script_keeps_existing_refs():
    assert "removeAttribute('data-vn-ref')" not in SNAPSHOT_SCRIPT
    assert "getAttribute('data-vn-ref')" in SNAPSHOT_SCRIPT


def test_queued_items_stay_highlightable_after_pause_and_resume():
    page = SnapshotPage(as_payload(sample_page()))
    controller, output, _page, _mic, _scheduler, _feedback = build_session(page=page)
    controller.submit_transcript("read page")
    output.finish()
    controller.submit_transcript("pause reading")
    controller.submit_transcript("resume reading")
    output.finish()
    output.finish()
    assert page.generation == 3
    highlights = [ref for name, ref in page.calls if name == "highlight"]
    assert len(highlights) == 4
    assert None not in highlights


def test_delayed_click_survives_command_heard_during_delay():
    page = SnapshotPage(as_payload(sample_page()))
    controller, output, _page, _mic, scheduler, _feedback = build_session(page=page)
    controller.submit_transcript("navigate to contact")
    controller.submit_transcript("scroll down")
    scheduler.run_pending()
    name, ref = page.calls[-1]
    assert name == "activate"
    assert ref == find_target(page.document, "contact", NAVIGABLE).ref
    assert output.spoken == ["Navigating to Contact us", "Scrolling down"]


# ---------------------------------------------------------------------------
# Blank content and malformed settings
# ---------------------------------------------------------------------------


def test_unlabelled_interactive_elements_are_not_read_as_bare_prefixes():
    page = with_refs(
        element(
            "body",
            element("a", element("img", alt="Home"), href="/"),
            element("a", element("span"), href="/empty"),
            element("button", aria_label="Close"),
            element("h2"),
            element("p", "Text"),
        )
    )
    assert [extract_text(node) for node in collect_readable(page)] == ["Link: Home", "Button: Close", "Text"]
    assert extract_text(element("a", href="/y")) == ""
    assert collect_headings(page) == []

    controller, output, _page, _mic, _scheduler, _feedback = build_session(document=page)
    controller.submit_transcript("read page")
    assert output.spoken == ["Link: Home"]


def test_update_settings_rejects_non_mapping_payload():
    controller, _output, _page, _mic, _scheduler, feedback = build_session()
    response = controller.handle_message({"action": "updateSettings", "settings": ["speechRate"]})
    assert "error" in response
    assert feedback.levels()[-1] is FeedbackLevel.ERROR
    assert controller.settings == Settings()
    try:
        merge_settings(Settings(), "speechRate=2")
    except SettingsError:
        pass
    else:
        raise AssertionError("non-mapping settings must be rejected")


# ---------------------------------------------------------------------------
# Speech and browser adapters
# ---------------------------------------------------------------------------


def test_tts_pause_resumes_remainder_under_same_token():
    output, engine, events = build_tts()
    try:
        token = output.speak("alpha beta gamma")
        assert wait_until(engine.running.is_set)
        output.pause()
        assert wait_until(lambda: engine.completed == 1 and output._current is None)
        assert events == [("started", token)]
        output.resume()
        assert wait_until(engine.running.is_set)
        engine.stop()
        assert wait_until(lambda: ("ended", token) in events)
        assert engine.said == ["alpha beta gamma", "beta gamma"]
        assert events == [("started", token), ("started", token), ("ended", token)]
    finally:
        output.shutdown()


def test_tts_cancel_drops_queued_utterances():
    output, engine, events = build_tts()
    try:
        first = output.speak("one")
        assert wait_until(engine.running.is_set)
        output.speak("two")
        output.speak("three")
        output.cancel()
        assert wait_until(lambda: ("ended", first) in events)
        time.sleep(0.3)
        assert engine.said == ["one"]
        assert events == [("started", first), ("ended", first)]
    finally:
        output.shutdown()


def test_tts_pause_before_playback_holds_utterance():
    output, engine, events = build_tts()
    try:
        with output._lock:
            token = output.speak("held")
            output.pause()
        time.sleep(0.3)
        assert engine.said == []
        assert events == []
        output.resume()
        assert wait_until(engine.running.is_set)
        engine.stop()
        assert wait_until(lambda: ("ended", token) in events)
        assert engine.said == ["held"]
        assert events == [("started", token), ("ended", token)]
    finally:
        output.shutdown()


def test_microphone_maps_failures_to_error_codes():
    started, ended = ("started", None), ("ended", None)
    assert capture_phrase(FakeRecognizer(heard=" Read page ")) == [started, ("result", "Read page"), ended]
    assert capture_phrase(FakeRecognizer(listen_error=sr.WaitTimeoutError("timed out"))) == [started, ended]
    assert capture_phrase(FakeRecognizer(recognize_error=sr.UnknownValueError())) == [started, ("error", "no-match"), ended]
    assert capture_phrase(FakeRecognizer(recognize_error=sr.RequestError("offline"))) == [started, ("error", "network"), ended]
    assert capture_phrase(FakeRecognizer(listen_error=PermissionError("denied"))) == [started, ("error", "not-allowed"), ended]
    assert capture_phrase(FakeRecognizer(listen_error=OSError("device busy"))) == [started, ("error", "audio-capture"), ended]
    assert capture_phrase(FakeRecognizer(heard="too late"), stopped=True) == [started, ended]


def test_vanished_node_skips_highlight_but_is_still_spoken():
    runtime = BrowserRuntime(lambda callback, *args: callback(*args))
    runtime._context = FakeBrowserContext()
    runtime._page = FakeBrowserPage({"doc-e1"})
    logs = LogRecorder()
    set_ui_logger(logs)
    try:
        output = FakeOutput()
        current = Settings()
        engine = ReadingQueueEngine(output, runtime, RecordingFeedback(), lambda: current)
        output.listener = engine.on_output_event
        engine.enqueue_all([ReadingItem("Gone", NodeHandle("doc-e9")), ReadingItem("Here", NodeHandle("doc-e1"))])
        engine.start_or_continue()
        output.finish()
        runtime._executor.submit(lambda: None).result(timeout=2.0)
        assert output.spoken == ["Gone", "Here"]
        skipped = [line for line in logs.lines if "Highlight skipped" in line]
        assert len(skipped) == 1 and "doc-e9" in skipped[0]
    finally:
        set_ui_logger(None)
        runtime.close()


def test_normalize_url_adds_scheme_only_when_missing():
    assert normalize_url(" example.com/docs ") == "https://example.com/docs"
    assert normalize_url("http://localhost:8000") == "http://localhost:8000"


def run():
    for name, check in sorted(globals().items()):
        if name.startswith("test_") and callable(check):
            check()
    print("smoke_tests: ok")


if __name__ == "__main__":
    run()

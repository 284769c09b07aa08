import asyncio
import multiprocessing as mp
import queue
import sys
from typing import Any, Dict, Optional

from voice_navigator.browser import BrowserRuntime
from voice_navigator.config import (
    AUTO_START,
    AUTO_START_DELAY_SECONDS,
    CONTROL_PANEL_ENABLED,
    START_URL,
    settings_from_env,
)
from voice_navigator.feedback import ConsoleFeedback, log_line, set_ui_logger
from voice_navigator.session import SessionController
from voice_navigator.speech import MicrophoneSpeechInput, Pyttsx3SpeechOutput
from voice_navigator.summarize import CopilotSummarizer

POLL_INTERVAL_SECONDS = 0.1


class ControlPanel:
    """Parent-side handle for the tkinter control panel process."""

    def __init__(self) -> None:
        self._ctx = mp.get_context("spawn")
        self._command_queue: "mp.Queue[Any]" = self._ctx.Queue(maxsize=200)
        self._status_queue: "mp.Queue[Any]" = self._ctx.Queue(maxsize=300)
        self._log_queue: "mp.Queue[Any]" = self._ctx.Queue(maxsize=1000)
        self._process: Optional[mp.Process] = None

    def start(self) -> None:
        if self._process is not None and self._process.is_alive():
            return
        try:
            from voice_navigator.control_panel import run_ui
        except Exception as exc:
            log_line(f"WARN: Control panel unavailable ({exc}).")
            return
        try:
            self._process = self._ctx.Process(
                target=run_ui,
                args=(self._command_queue, self._status_queue, self._log_queue),
                daemon=True,
            )
            self._process.start()
        except Exception as exc:
            self._process = None
            log_line(f"WARN: Control panel failed to start ({exc}).")

    def stop(self) -> None:
        if self._process is None:
            return
        self._put(self._status_queue, {"type": "shutdown"})
        if self._process.is_alive():
            self._process.join(timeout=3.0)
        if self._process.is_alive():
            self._process.terminate()
        self._process = None

    def poll_message(self) -> Optional[Dict[str, Any]]:
        try:
            message = self._command_queue.get_nowait()
        except queue.Empty:
            return None
        return message if isinstance(message, dict) else None

    def set_status(self, message: str, level: str = "info", duration_ms: int = 3000) -> None:
        self._put(self._status_queue, {"type": "status", "value": message, "level": level, "duration": duration_ms})

    def send_response(self, payload: Dict[str, Any]) -> None:
        self._put(self._status_queue, {"type": "response", "payload": payload})

    def add_log(self, line: str) -> None:
        self._put(self._log_queue, {"type": "log", "value": line})

    @staticmethod
    def _put(target: Any, payload: Dict[str, Any]) -> None:
        try:
            target.put_nowait(payload)
        except queue.Full:
            pass


async def main() -> None:
    loop = asyncio.get_running_loop()
    post = loop.call_soon_threadsafe
    panel: Optional[ControlPanel] = None
    if CONTROL_PANEL_ENABLED:
        panel = ControlPanel()
        panel.start()
        set_ui_logger(panel)
    feedback = ConsoleFeedback(panel)

    start_url = sys.argv[1] if len(sys.argv) > 1 else START_URL
    browser = BrowserRuntime(post)
    try:
        log_line(await asyncio.wrap_future(browser.open(start_url)))
    except Exception as exc:
        log_line(f"ERROR: Browser launch failed ({exc}).")
        browser.close()
        if panel:
            panel.stop()
        return

    speech_output = Pyttsx3SpeechOutput(post)
    speech_input = await asyncio.to_thread(MicrophoneSpeechInput, post)
    summarizer = CopilotSummarizer(loop)
    controller = SessionController(
        settings_from_env(),
        speech_input,
        speech_output,
        browser,
        feedback,
        scheduler=loop,
        summarizer=summarizer,
    )
    speech_output.listener = controller.on_output_event
    speech_input.listener = controller.on_input_event

    if AUTO_START or panel is None:
        loop.call_later(AUTO_START_DELAY_SECONDS, controller.auto_start)
    log_line("Ready.")
    feedback("Ready")

    running = True
    try:
        while running:
            message = panel.poll_message() if panel else None
            while message is not None:
                if message.get("action") == "quit":
                    running = False
                    break
                try:
                    response = controller.handle_message(message)
                except Exception as exc:
                    log_line(f"  Unexpected error: {exc}")
                    response = None
                if response is not None and panel:
                    panel.send_response(response)
                message = panel.poll_message()
            await asyncio.sleep(POLL_INTERVAL_SECONDS)
    finally:
        controller.stop()
        await summarizer.close()
        speech_output.shutdown()
        await asyncio.to_thread(browser.close)
        if panel:
            panel.stop()
        set_ui_logger(None)
        log_line("Voice Navigator closed.")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        log_line("Interrupted. Exiting cleanly.")

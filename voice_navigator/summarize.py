import asyncio
from typing import Any, Callable, Optional, Set, Tuple

from copilot import CopilotClient, MessageOptions, SessionConfig
from copilot.generated.session_events import SessionEventType

from voice_navigator.config import LLM_TIMEOUT_SECONDS, MODEL
from voice_navigator.feedback import log_line

SUMMARY_PROMPT = """Summarize the following web page content for someone who is listening, not reading.
Use two to four short plain sentences. No markdown, no lists, no preamble.

PAGE_CONTENT:
"""


async def create_copilot_session() -> Tuple[CopilotClient, Any]:
    client = CopilotClient()
    await client.start()
    session = await client.create_session(SessionConfig(model=MODEL))
    return client, session


async def ask_copilot(session: Any, prompt: str) -> Optional[str]:
    event = await session.send_and_wait(MessageOptions(prompt=prompt), timeout=LLM_TIMEOUT_SECONDS)
    if event and event.type == SessionEventType.ASSISTANT_MESSAGE:
        return event.data.content
    return None


class CopilotSummarizer:
    """Summarizes page text through a lazily created Copilot session."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._client: Optional[CopilotClient] = None
        self._session: Optional[Any] = None
        self._tasks: Set["asyncio.Task[None]"] = set()

    def request(self, text: str, callback: Callable[[Optional[str]], None]) -> None:
        task = self._loop.create_task(self._summarize(text, callback))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _summarize(self, text: str, callback: Callable[[Optional[str]], None]) -> None:
        summary: Optional[str] = None
        try:
            if self._session is None:
                self._client, self._session = await create_copilot_session()
            summary = await ask_copilot(self._session, SUMMARY_PROMPT + text)
        except Exception as exc:
            log_line(f"WARN: Summary request failed ({exc}).")
            await self._reset()
        callback(summary)

    async def _reset(self) -> None:
        client = self._client
        self._client = None
        self._session = None
        if client is not None:
            try:
                await client.stop()
            except Exception:
                pass

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self._reset()

import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from voice_navigator.config import BROWSER_ENGINE, BROWSER_EXECUTABLE, BROWSER_TIMEOUT_SECONDS
from voice_navigator.dom import REF_ATTRIBUTE, SNAPSHOT_SCRIPT, NodeHandle, PageNode, build_page_tree
from voice_navigator.errors import BrowserCommandError
from voice_navigator.feedback import log_line
from voice_navigator.ports import Post

HIGHLIGHT_SCRIPT = """([ref, attr]) => {
    document.querySelectorAll('[data-vn-highlight]').forEach(el => {
      el.style.outline = el.getAttribute('data-vn-highlight');
      el.removeAttribute('data-vn-highlight');
    });
    const el = document.querySelector(`[${attr}="${ref}"]`);
    if (!el || !el.isConnected) return false;
    el.setAttribute('data-vn-highlight', el.style.outline || '');
    el.style.outline = '3px solid #f5a623';
    el.scrollIntoView({ block: 'center', behavior: 'smooth' });
    return true;
}"""

CLEAR_HIGHLIGHT_SCRIPT = """() => {
    document.querySelectorAll('[data-vn-highlight]').forEach(el => {
      el.style.outline = el.getAttribute('data-vn-highlight');
      el.removeAttribute('data-vn-highlight');
    });
}"""

SCROLL_SCRIPT = """(delta) => {
    window.scrollTo({ top: window.scrollY + window.innerHeight * delta, behavior: 'smooth' });
}"""


def compact_playwright_error(exc: Exception) -> str:
    text = str(exc).replace("\r", " ").replace("\n", " ")
    for marker in ("Browser logs:", "Call log:"):
        if marker in text:
            text = text.split(marker, 1)[0]
    text = re.sub(r"\s+", " ", text).strip()
    if len(text) > 220:
        text = text[:217] + "..."
    return text


def normalize_url(raw_url: str) -> str:
    text = raw_url.strip()
    if not re.match(r"^[a-zA-Z]+://", text):
        text = "https://" + text
    return text


class BrowserRuntime:
    """Page port backed by Playwright.

    The sync Playwright API is bound to the thread that started it, so every
    page operation runs on one single-worker executor. Side effects are fire
    and forget; document snapshots are posted back through ``post``.
    """

    def __init__(self, post: Post) -> None:
        self._post = post
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="browser-runtime")
        self._generation = 0
        self._lock = threading.Lock()
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    # -- page port ----------------------------------------------------------

    def open(self, url: str) -> "Future[str]":
        return self._submit("open", self._open, url)

    def load_document(self, callback: Callable[[Optional[PageNode]], None]) -> None:
        with self._lock:
            self._generation += 1
            generation = self._generation

        def done(future: "Future[Optional[PageNode]]") -> None:
            document = None if future.cancelled() or future.exception() else future.result()
            self._post(callback, document)

        self._submit("snapshot", self._snapshot, generation).add_done_callback(done)

    def highlight(self, handle: NodeHandle) -> None:
        self._submit("highlight", self._highlight, handle)

    def clear_highlight(self) -> None:
        self._submit("clear highlight", self._evaluate, CLEAR_HIGHLIGHT_SCRIPT)

    def focus(self, handle: NodeHandle) -> None:
        self._submit("focus", self._focus, handle)

    def activate(self, handle: NodeHandle) -> None:
        self._submit("click", self._click, handle)

    def scroll(self, direction: str, fraction: float) -> None:
        delta = fraction if direction == "down" else -fraction
        self._submit("scroll", self._evaluate, SCROLL_SCRIPT, delta)

    def go_back(self) -> None:
        self._submit("back", self._go_back)

    def close(self) -> None:
        try:
            self._executor.submit(self._close).result(timeout=BROWSER_TIMEOUT_SECONDS)
        except Exception as exc:
            log_line(f"WARN: Browser close failed ({exc}).")
        self._executor.shutdown(wait=False, cancel_futures=True)

    # -- executor side ------------------------------------------------------

    def _submit(self, label: str, fn: Callable[..., Any], *args: Any) -> "Future[Any]":
        def run() -> Any:
            try:
                return fn(*args)
            except PlaywrightError as exc:
                log_line(f"WARN: Browser {label} failed ({compact_playwright_error(exc)}).")
                raise BrowserCommandError(compact_playwright_error(exc)) from exc
            except Exception as exc:
                log_line(f"WARN: Browser {label} failed ({exc}).")
                raise

        return self._executor.submit(run)

    def _launch(self) -> None:
        if self._context is not None:
            return
        self._playwright = sync_playwright().start()
        # Always headed: the user is looking at the page being read.
        launch_kwargs: Dict[str, Any] = {"headless": False, "args": ["--start-maximized"]}
        if BROWSER_EXECUTABLE:
            launch_kwargs["executable_path"] = BROWSER_EXECUTABLE
        elif BROWSER_ENGINE in {"edge", "msedge"}:
            launch_kwargs["channel"] = "msedge"
        elif BROWSER_ENGINE == "chrome":
            launch_kwargs["channel"] = "chrome"
        self._browser = self._playwright.chromium.launch(**launch_kwargs)
        self._context = self._browser.new_context(no_viewport=True)

    def _ensure_page(self):
        self._launch()
        if self._page is None or self._page.is_closed():
            pages = [p for p in self._context.pages if not p.is_closed()]
            self._page = pages[-1] if pages else self._context.new_page()
        return self._page

    def _open(self, url: str) -> str:
        page = self._ensure_page()
        page.goto(normalize_url(url), wait_until="domcontentloaded", timeout=int(BROWSER_TIMEOUT_SECONDS * 1000))
        try:
            title = page.title().strip() or "(untitled)"
        except PlaywrightError:
            title = "(untitled)"
        return f"✓ {title}\n  {page.url}"

    def _snapshot(self, generation: int) -> PageNode:
        page = self._ensure_page()
        payload = page.evaluate(SNAPSHOT_SCRIPT)
        return build_page_tree(payload, generation)

    def _evaluate(self, script: str, arg: Any = None) -> Any:
        return self._ensure_page().evaluate(script, arg)

    def _highlight(self, handle: NodeHandle) -> None:
        found = self._evaluate(HIGHLIGHT_SCRIPT, [handle.ref, REF_ATTRIBUTE])
        if not found:
            log_line(f"  Highlight skipped; element {handle.ref} is no longer on the page.")

    def _focus(self, handle: NodeHandle) -> None:
        locator = self._ensure_page().locator(handle.selector()).first
        if locator.count() == 0:
            log_line(f"  Focus skipped; element {handle.ref} is no longer on the page.")
            return
        try:
            locator.scroll_into_view_if_needed(timeout=1200)
        except PlaywrightError:
            pass
        locator.focus(timeout=1200)

    def _click(self, handle: NodeHandle) -> None:
        page = self._ensure_page()
        locator = page.locator(handle.selector()).first
        if locator.count() == 0:
            raise BrowserCommandError("Target item changed on the page; try again.")
        try:
            locator.click(timeout=1800)
            return
        except PlaywrightError:
            pass
        element = locator.element_handle(timeout=1200)
        if element is None:
            raise BrowserCommandError("Target element was not found.")
        page.evaluate("(el) => { try { el.click(); return true; } catch { return false; } }", element)

    def _go_back(self) -> None:
        self._ensure_page().go_back(wait_until="domcontentloaded")

    def _close(self) -> None:
        try:
            if self._context is not None:
                try:
                    self._context.close()
                except PlaywrightError:
                    pass
        finally:
            self._context = None
            self._page = None
            if self._browser is not None:
                try:
                    self._browser.close()
                except PlaywrightError:
                    pass
                self._browser = None
            if self._playwright is not None:
                try:
                    self._playwright.stop()
                except Exception:
                    pass
                self._playwright = None

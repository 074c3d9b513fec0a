"""Shared test helpers for the browser-mode test suite.

Fixtures are in conftest.py. This module holds the fakes that stand in for
Chrome, the CDP session and the injected page script.
"""

import asyncio
from collections import defaultdict
from pathlib import Path
from typing import Any, Optional

from webchat_lifecycle import BrowserProcessHandle

PROMPT_SELECTORS = ["#prompt-textarea", "div[contenteditable='true'][role='textbox']"]
READY_INPUT = {"found": True, "ready": True, "selector": "#prompt-textarea", "tried": PROMPT_SELECTORS}


class LogCapture:
    """Progress sink that keeps every line."""

    def __init__(self) -> None:
        self.lines: list[str] = []

    def __call__(self, message: str) -> None:
        self.lines.append(message)

    def has(self, fragment: str) -> bool:
        return any(fragment in line for line in self.lines)


# --- CDP ---

class FakeCDP:
    """Records protocol calls; answers from a method -> response table.

    A response may be a dict, an exception instance (raised), or a callable
    taking the params. Page.navigate fires Page.domContentEventFired unless
    ``fire_dom_content`` is False.
    """

    def __init__(self, responses: Optional[dict] = None, fire_dom_content: bool = True) -> None:
        self.responses = responses or {}
        self.fire_dom_content = fire_dom_content
        self.calls: list[tuple[str, dict]] = []
        self.listeners: dict[str, list] = defaultdict(list)

    async def send(self, method: str, params: Optional[dict] = None) -> Any:
        params = params or {}
        self.calls.append((method, params))
        response = self.responses.get(method, {})
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(params)
        if method == "Page.navigate" and self.fire_dom_content and not (response or {}).get("errorText"):
            loop = asyncio.get_running_loop()
            for callback in list(self.listeners["Page.domContentEventFired"]):
                loop.call_soon(callback, {"timestamp": 1.0})
        return response

    def on(self, event: str, callback) -> None:
        self.listeners[event].append(callback)

    def remove_listener(self, event: str, callback) -> None:
        self.listeners[event].remove(callback)

    def methods(self) -> list[str]:
        return [method for method, _ in self.calls]


# --- Control session ---

class FakeSession:
    """Stand-in for ControlSession used by driver and orchestrator tests."""

    def __init__(self, live_cookies: Optional[list[dict]] = None) -> None:
        self.navigated: list[str] = []
        self.cookies_set: list[dict] = []
        self.input_events: list[tuple] = []
        self.file_inputs: list[tuple[str, list[str]]] = []
        self.cleared = 0
        self.close_calls = 0
        self.live_cookies = live_cookies or []
        self.navigate_error: Optional[Exception] = None

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    async def navigate(self, url: str, timeout_ms: int) -> None:
        if self.navigate_error is not None:
            raise self.navigate_error
        self.navigated.append(url)

    async def clear_cookies(self) -> None:
        self.cleared += 1

    async def set_cookies(self, cookies: list[dict]) -> None:
        self.cookies_set.extend(cookies)

    async def get_cookies(self, urls: Optional[list[str]] = None) -> list[dict]:
        return list(self.live_cookies)

    async def insert_text(self, text: str) -> None:
        self.input_events.append(("insertText", text))

    async def press_key(self, key: str = "Enter") -> None:
        self.input_events.append(("key", key))

    async def click_at(self, x: float, y: float) -> None:
        self.input_events.append(("click", x, y))

    async def set_file_input_files(self, selector: str, files: list[str]) -> None:
        self.file_inputs.append((selector, files))

    async def capture_screenshot(self, quality: int = 60) -> bytes:
        return b"\xff\xd8fake-jpeg"

    async def close(self) -> None:
        self.close_calls += 1


# --- Page script ---

def _next(sequence: list) -> Any:
    """Pop the head of a scripted sequence; the last item repeats forever."""
    return sequence.pop(0) if len(sequence) > 1 else sequence[0]


class ScriptedPage:
    """Answers PageBridge calls the way the injected driver script would.

    Each state-like answer (block, input, snapshot) is a list consumed one
    item per call, with the final item repeating.
    """

    def __init__(
        self,
        *,
        blocks: Optional[list[dict]] = None,
        inputs: Optional[list[dict]] = None,
        snapshots: Optional[list[dict]] = None,
        model_options: Optional[list[str]] = None,
        current_model: Optional[str] = "GPT-5",
        markdown: Optional[str] = None,
        composer_after_enter: str = "",
        attached: Optional[list[str]] = None,
        baseline: int = 1,
    ) -> None:
        self.blocks = blocks or [{"blocked": False}]
        self.inputs = inputs or [dict(READY_INPUT)]
        self.snapshots = snapshots or [{"count": baseline, "generating": False, "text": "", "html": ""}]
        self.model_options = model_options
        self.current_model = current_model
        self.markdown = markdown
        self.composer_after_enter = composer_after_enter
        self.attached = attached or []
        self.baseline = baseline
        self.calls: list[tuple[str, dict]] = []

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    async def call(self, name: str, args: Optional[dict] = None) -> Any:
        args = args or {}
        self.calls.append((name, args))
        return getattr(self, f"_{name}")(args)

    def _detectBlock(self, args: dict) -> dict:
        return _next(self.blocks)

    def _inputState(self, args: dict) -> dict:
        return _next(self.inputs)

    def _focusInput(self, args: dict) -> dict:
        return {"focused": True, "selector": "#prompt-textarea"}

    def _composerText(self, args: dict) -> dict:
        return {"text": self.composer_after_enter}

    def _clickSend(self, args: dict) -> dict:
        self.composer_after_enter = ""
        return {"clicked": True}

    def _currentModel(self, args: dict) -> dict:
        return {"found": self.current_model is not None, "label": self.current_model}

    def _selectModel(self, args: dict) -> dict:
        if self.model_options is None:
            return {"status": "no-picker", "label": None, "options": []}
        wanted = args["label"].lower()
        if self.current_model and wanted in self.current_model.lower():
            return {"status": "already-selected", "label": self.current_model, "options": []}
        for option in self.model_options:
            if wanted in option.lower():
                self.current_model = option
                return {"status": "selected", "label": option, "option": option, "options": []}
        return {"status": "not-found", "label": self.current_model, "options": list(self.model_options)}

    def _assistantCount(self, args: dict) -> dict:
        return {"count": self.baseline}

    def _responseSnapshot(self, args: dict) -> dict:
        return dict(_next(self.snapshots))

    def _copyMarkdown(self, args: dict) -> dict:
        if self.markdown is None:
            return {"ok": False, "reason": "clipboard-timeout"}
        return {"ok": True, "markdown": self.markdown}

    def _attachmentState(self, args: dict) -> dict:
        return {"present": [n for n in args.get("names", []) if n in self.attached], "count": len(self.attached)}

    def _pageSnapshot(self, args: dict) -> dict:
        return {"url": "https://chatgpt.com/", "title": "ChatGPT", "html": "<body><main></main></body>"}


def answer(text: str, *, generating: bool = False, html: Optional[str] = None, baseline: int = 1) -> dict:
    """A responseSnapshot payload for a new assistant message."""
    return {
        "count": baseline + 1,
        "generating": generating,
        "text": text,
        "html": html if html is not None else f"<p>{text}</p>",
        "meta": {"messageId": "msg-1", "turnIndex": baseline, "url": "https://chatgpt.com/c/abc"},
    }


# --- Chrome process ---

class FakeProcess:
    """Minimal Popen stand-in: alive until terminated or killed."""

    def __init__(self, pid: int = 4242, exit_code: Optional[int] = None) -> None:
        self.pid = pid
        self.returncode = exit_code
        self.terminate_calls = 0
        self.kill_calls = 0

    def poll(self) -> Optional[int]:
        return self.returncode

    def terminate(self) -> None:
        self.terminate_calls += 1
        self.returncode = -15

    def kill(self) -> None:
        self.kill_calls += 1
        self.returncode = -9

    def wait(self, timeout: Optional[float] = None) -> int:
        return self.returncode if self.returncode is not None else 0


def make_handle(user_data_dir: Path, pid: int = 4242, port: int = 9333) -> BrowserProcessHandle:
    return BrowserProcessHandle(
        port=port,
        pid=pid,
        user_data_dir=Path(user_data_dir),
        process=FakeProcess(pid),
        process_group=False,
    )

"""Page state driver: one prompt through the chat UI, start to answer.

The driver walks a fixed sequence of states and delegates every DOM
question to the injected page script through ``PageBridge``. Completion
detection lives in ``ResponseTracker`` so it can be exercised without a
browser.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from webchat_config import RunConfig
from webchat_errors import (
    AttachmentFailed,
    BlockedHeadless,
    BrowserRunError,
    InputNotReady,
    NavigationFailed,
    PageScriptError,
    ResponseTimeout,
)
from webchat_logging import BrowserLogger
from webchat_scripts import build_call, build_installer, load_selectors
from webchat_vision import VisionClassifier, vision_available

logger = logging.getLogger(__name__)

MODEL_MENU_WAIT_MS = 2_000
SNAPSHOT_LIMIT = 1_000


class PageState(str, Enum):
    NAVIGATING = "navigating"
    BLOCK_CHECK = "block_check"
    AWAITING_INPUT = "awaiting_input"
    MODEL_SELECTION = "model_selection"
    SUBMITTING = "submitting"
    AWAITING_RESPONSE = "awaiting_response"
    EXTRACTING = "extracting"
    DONE = "done"


_STATE_ORDER = list(PageState)


class Attachment(BaseModel):
    """A local file to upload with the prompt."""

    model_config = ConfigDict(frozen=True)

    path: str
    display_name: Optional[str] = None

    @property
    def name(self) -> str:
        return self.display_name or Path(self.path).name


class ConversationTurn(BaseModel):
    """One completed prompt/answer exchange as read back from the page."""

    model_config = ConfigDict(frozen=True)

    text: str
    markdown: str
    html: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict)
    model: Optional[str] = None


class PageBridge:
    """Invokes named functions of the page-side driver script."""

    def __init__(self, session, selectors: dict[str, Any]) -> None:
        self.session = session
        self.selectors = selectors
        self._installer = build_installer(selectors)

    async def call(self, name: str, args: Optional[dict] = None) -> Any:
        return await self.session.evaluate(build_call(self._installer, name, args))


async def poll_until(
    fetch: Callable[[], Awaitable[Any]],
    predicate: Callable[[Any], bool],
    *,
    timeout_ms: int,
    interval_ms: int,
) -> tuple[bool, Any]:
    """Call ``fetch`` until ``predicate`` holds or ``timeout_ms`` elapses.

    Returns (satisfied, last value). The final sleep is clipped to the
    deadline, so the loop never overshoots by more than one fetch.
    """
    deadline = time.monotonic() + timeout_ms / 1000
    while True:
        value = await fetch()
        if predicate(value):
            return True, value
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False, value
        await asyncio.sleep(min(interval_ms / 1000, remaining))


class ResponseTracker:
    """Decides when a streaming answer is finished.

    Completion signals, checked after every poll with non-empty content:
      - the same text and HTML for ``stable_polls`` consecutive polls, even
        if the stop control is still shown
      - the stop control was seen and is now gone
      - the vision classifier said "complete" twice in a row

    A snapshot shorter than the previous non-empty one is a flap. After
    more than ``flap_tolerance`` flaps the response is unstable: the stop
    control shortcut is ignored and twice as many identical polls are needed.
    """

    def __init__(self, stable_polls: int = 2, flap_tolerance: int = 3) -> None:
        self.stable_polls = stable_polls
        self.flap_tolerance = flap_tolerance
        self.flaps = 0
        self.identical = 0
        self.stop_seen = False
        self.vision_complete = 0
        self.reason: Optional[str] = None
        self.last_nonempty: Optional[dict] = None
        self._last_text = ""
        self._last_html = ""

    @property
    def unstable(self) -> bool:
        return self.flaps > self.flap_tolerance

    @property
    def required_polls(self) -> int:
        return self.stable_polls * 2 if self.unstable else self.stable_polls

    def observe(self, snapshot: dict, vision_state: Optional[str] = None) -> bool:
        text = snapshot.get("text") or ""
        html = snapshot.get("html") or ""
        generating = bool(snapshot.get("generating"))
        if generating:
            self.stop_seen = True

        if vision_state == "complete":
            self.vision_complete += 1
        elif vision_state is not None:
            self.vision_complete = 0

        if not text:
            self.identical = 0
            self._last_text, self._last_html = text, html
            return False

        previous = self.last_nonempty
        if previous is not None and len(text) < len(previous["text"]):
            self.flaps += 1
        if text == self._last_text and html == self._last_html:
            self.identical += 1
        else:
            self.identical = 1
        self._last_text, self._last_html = text, html
        self.last_nonempty = {"text": text, "html": html, "meta": dict(snapshot.get("meta") or {})}

        if self.identical >= self.required_polls:
            self.reason = "stable"
        elif self.stop_seen and not generating and not self.unstable:
            self.reason = "stop-button"
        elif self.vision_complete >= 2:
            self.reason = "vision"
        else:
            return False
        return True


class PageDriver:
    """Drives one prompt through the chat UI of a connected page."""

    def __init__(
        self,
        session,
        config: RunConfig,
        log: BrowserLogger,
        *,
        bridge: Optional[PageBridge] = None,
        selectors: Optional[dict[str, Any]] = None,
        vision: Optional[VisionClassifier] = None,
    ) -> None:
        self.session = session
        self.config = config
        self.log = log
        self.selectors = selectors or load_selectors(config.selectors_path)
        self.bridge = bridge or PageBridge(session, self.selectors)
        if vision is None and vision_available(config.vision):
            vision = VisionClassifier(session, config.vision, log)
        self.vision = vision
        self.state: Optional[PageState] = None
        self.model_selected = False
        self._started = time.monotonic()

    def _elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    def _enter(self, state: PageState) -> None:
        if self.state is None:
            allowed = {PageState.NAVIGATING}
        else:
            index = _STATE_ORDER.index(self.state)
            allowed = set(_STATE_ORDER[index + 1:index + 2])
            if self.state == PageState.AWAITING_INPUT and not self.config.desired_model:
                allowed.add(PageState.SUBMITTING)
        if state not in allowed:
            current = self.state.value if self.state else "start"
            raise RuntimeError(f"Illegal page state transition {current} -> {state.value}")
        logger.debug("Page state: %s", state.value)
        self.state = state

    async def _page_fragment(self) -> Optional[str]:
        try:
            snapshot = await self.bridge.call("pageSnapshot", {"limit": SNAPSHOT_LIMIT}) or {}
        except BrowserRunError as e:
            logger.debug("Could not capture page fragment: %s", e)
            return None
        return snapshot.get("html")

    # --- states ---

    async def navigate(self) -> None:
        self._enter(PageState.NAVIGATING)
        self.log(f"Navigating to {self.config.url}")
        try:
            await self.session.navigate(self.config.url, self.config.navigation_timeout_ms)
        except NavigationFailed as e:
            e.elapsed_ms = self._elapsed_ms()
            raise

    async def ensure_not_blocked(self) -> None:
        self._enter(PageState.BLOCK_CHECK)
        found = await self.bridge.call("detectBlock") or {}
        if not found.get("blocked"):
            return

        signature = found.get("signature") or "unknown"
        if self.config.headless:
            raise BlockedHeadless(
                f"Page is behind an interactive wall ({signature}) and the browser is headless. "
                "Re-run without --headless to clear it by hand, or pre-authenticate the Chrome profile.",
                signature=signature,
                elapsed_ms=self._elapsed_ms(),
                snapshot=found.get("snippet"),
            )

        grace_ms = self.config.polling.block_grace_ms
        self.log(f"Block signature {signature} detected; waiting up to {grace_ms / 1000:.0f}s for it to clear")
        cleared, _ = await poll_until(
            lambda: self.bridge.call("detectBlock"),
            lambda value: not (value or {}).get("blocked"),
            timeout_ms=grace_ms,
            interval_ms=self.config.polling.interval_ms,
        )
        if cleared:
            self.log("Block cleared")
        else:
            self.log(f"WARNING: block signature {signature} still present; continuing anyway")

    async def ensure_prompt_ready(self) -> str:
        self._enter(PageState.AWAITING_INPUT)
        return await self._wait_for_input()

    async def _wait_for_input(self) -> str:
        ready, state = await poll_until(
            lambda: self.bridge.call("inputState"),
            lambda value: bool((value or {}).get("ready")),
            timeout_ms=self.config.input_timeout_ms,
            interval_ms=self.config.polling.input_interval_ms,
        )
        state = state or {}
        if ready:
            return state.get("selector") or ""

        tried = list(state.get("tried") or self.selectors["promptInput"])
        if state.get("found"):
            detail = f"{state.get('selector')} was found but never became interactable"
        else:
            detail = "no prompt input matched"
        raise InputNotReady(
            f"Prompt input not ready after {self.config.input_timeout_ms}ms: {detail} "
            f"(tried: {', '.join(tried)})",
            selectors=tried,
            elapsed_ms=self._elapsed_ms(),
            snapshot=await self._page_fragment(),
        )

    async def ensure_model_selection(self) -> Optional[str]:
        desired = self.config.desired_model
        if not desired:
            return None
        self._enter(PageState.MODEL_SELECTION)

        picked = await self.bridge.call(
            "selectModel", {"label": desired, "waitMs": MODEL_MENU_WAIT_MS}
        ) or {}
        status = picked.get("status")
        label = picked.get("label")
        if status == "selected":
            self.model_selected = True
            self.log(f"Selected model {label or desired}")
        elif status == "already-selected":
            self.model_selected = True
            self.log(f"Model already set to {label or desired}")
        elif status == "no-picker":
            self.log(f"WARNING: no model picker on page; keeping the current model instead of {desired!r}")
        else:
            options = ", ".join(picked.get("options") or []) or "none listed"
            self.log(f"WARNING: model {desired!r} not offered (options: {options}); keeping {label or 'the current model'}")

        await self._wait_for_input()
        return label

    async def submit_prompt(self, prompt: str, attachments: Sequence[Attachment] = ()) -> int:
        """Type and send the prompt. Returns the assistant-message baseline."""
        self._enter(PageState.SUBMITTING)
        counted = await self.bridge.call("assistantCount") or {}
        baseline = int(counted.get("count") or 0)

        if attachments:
            await self._attach(attachments)

        focused = await self.bridge.call("focusInput") or {}
        if not focused.get("focused"):
            raise InputNotReady(
                "Prompt input could not be focused",
                selectors=list(self.selectors["promptInput"]),
                phase=PageState.SUBMITTING.value,
                elapsed_ms=self._elapsed_ms(),
            )
        await self.session.insert_text(prompt)
        await self.session.press_key("Enter")

        await asyncio.sleep(self.config.polling.input_interval_ms / 1000)
        leftover = ((await self.bridge.call("composerText")) or {}).get("text") or ""
        if leftover.strip():
            clicked = await self.bridge.call("clickSend") or {}
            if clicked.get("clicked"):
                self.log("Enter did not submit; clicked the send button")
            else:
                self.log("WARNING: prompt still in composer and no send button found")

        self.log(f"Prompt submitted ({len(prompt)} chars)")
        return baseline

    async def _attach(self, attachments: Sequence[Attachment]) -> None:
        missing = [a.path for a in attachments if not Path(a.path).is_file()]
        if missing:
            raise AttachmentFailed(
                f"Attachment file(s) not found: {', '.join(missing)}",
                elapsed_ms=self._elapsed_ms(),
            )
        names = [a.name for a in attachments]
        await self.session.set_file_input_files(
            self.selectors["fileInput"],
            [str(Path(a.path).resolve()) for a in attachments],
        )
        done, state = await poll_until(
            lambda: self.bridge.call("attachmentState", {"names": names}),
            lambda value: set(names) <= set((value or {}).get("present") or []),
            timeout_ms=self.config.input_timeout_ms,
            interval_ms=self.config.polling.input_interval_ms,
        )
        if not done:
            present = set((state or {}).get("present") or [])
            pending = [name for name in names if name not in present]
            raise AttachmentFailed(
                f"Attachment(s) never appeared in the composer: {', '.join(pending)}",
                elapsed_ms=self._elapsed_ms(),
            )
        self.log(f"Attached {len(names)} file(s)")

    async def wait_for_response(self, baseline: int) -> dict:
        """Poll until the newest assistant message settles.

        Returns the last non-empty snapshot ({text, html, meta}).
        """
        self._enter(PageState.AWAITING_RESPONSE)
        polling = self.config.polling
        tracker = ResponseTracker(polling.stable_polls, polling.flap_tolerance)
        deadline = time.monotonic() + self.config.timeout_ms / 1000
        polls = 0

        while True:
            snapshot = await self.bridge.call("responseSnapshot", {"baseline": baseline}) or {}
            polls += 1
            vision_state = None
            if self.vision is not None and polls % self.config.vision.every_n_polls == 0:
                vision_state = await self.vision.classify()

            was_unstable = tracker.unstable
            if tracker.observe(snapshot, vision_state):
                final = tracker.last_nonempty
                self.log(
                    f"Response complete ({tracker.reason}) after {polls} polls, "
                    f"{len(final['text'])} chars"
                )
                return final
            if tracker.unstable and not was_unstable:
                self.log(
                    f"WARNING: response flapped {tracker.flaps} times; "
                    f"requiring {tracker.required_polls} identical polls"
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(polling.interval_ms / 1000, remaining))

        partial = tracker.last_nonempty or {}
        raise ResponseTimeout(
            f"Response did not settle within {self.config.timeout_ms}ms "
            f"({len(partial.get('text', ''))} chars captured)",
            partial_text=partial.get("text", ""),
            partial_html=partial.get("html"),
            elapsed_ms=self._elapsed_ms(),
        )

    async def capture_markdown(self, snapshot: dict) -> ConversationTurn:
        self._enter(PageState.EXTRACTING)
        text = snapshot.get("text", "")
        meta = dict(snapshot.get("meta") or {})

        try:
            copied = await self.bridge.call(
                "copyMarkdown",
                {"turnIndex": meta.get("turnIndex"), "waitMs": self.config.polling.copy_wait_ms},
            ) or {}
        except PageScriptError as e:
            self.log(f"WARNING: copy-as-markdown failed: {e.message}")
            copied = {}
        markdown = copied.get("markdown") if copied.get("ok") else None
        if not (markdown or "").strip():
            self.log(f"Copy-as-markdown unavailable ({copied.get('reason', 'no payload')}); using plain text")
            markdown = text

        return ConversationTurn(
            text=text,
            markdown=markdown,
            html=snapshot.get("html") or None,
            meta=meta,
            model=await self.current_model(),
        )

    async def current_model(self) -> Optional[str]:
        """Model label shown in the UI; the requested one only if selection worked."""
        try:
            shown = await self.bridge.call("currentModel") or {}
        except PageScriptError as e:
            logger.debug("Could not read model label: %s", e)
            shown = {}
        label = shown.get("label")
        if label:
            return label
        return self.config.desired_model if self.model_selected else None

    async def drive(self, prompt: str, attachments: Sequence[Attachment] = ()) -> ConversationTurn:
        await self.navigate()
        await self.ensure_not_blocked()
        await self.ensure_prompt_ready()
        await self.ensure_model_selection()
        baseline = await self.submit_prompt(prompt, attachments)
        snapshot = await self.wait_for_response(baseline)
        turn = await self.capture_markdown(snapshot)
        self._enter(PageState.DONE)
        return turn

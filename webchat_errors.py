"""Typed failures of a browser-mode run.

Every terminal failure of the browser pipeline is one of the classes below, so
callers can tell UI drift (InputNotReady) from an interactive wall
(BlockedHeadless) from a slow model (ResponseTimeout) without parsing strings.
"""

from __future__ import annotations

from typing import Any, Optional


class BrowserRunError(Exception):
    """Base class for browser-mode failures.

    Carries the phase that failed, how long the run had been going, and a
    short DOM fragment when one was available at the point of failure.
    """

    code = "BROWSER_ERROR"
    default_phase = "unknown"

    def __init__(
        self,
        message: str,
        *,
        phase: Optional[str] = None,
        elapsed_ms: Optional[int] = None,
        snapshot: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase or self.default_phase
        self.elapsed_ms = elapsed_ms
        self.snapshot = snapshot
        # Set by the run orchestrator once the failed call has been packaged.
        self.result: Any = None

    def to_dict(self) -> dict:
        data = {
            "error": self.message,
            "code": self.code,
            "step": self.phase,
        }
        if self.elapsed_ms is not None:
            data["elapsed_ms"] = self.elapsed_ms
        if self.snapshot:
            data["snapshot"] = self.snapshot[:500]
        return data


class LaunchTimeout(BrowserRunError):
    """Chrome never exposed its debugging endpoint."""

    code = "LAUNCH_TIMEOUT"
    default_phase = "launch"


class NoActiveTab(BrowserRunError):
    """The browser exposed zero pages to attach to."""

    code = "NO_ACTIVE_TAB"
    default_phase = "connect"


class NavigationFailed(BrowserRunError):
    code = "NAVIGATION_FAILED"
    default_phase = "navigate"


class BlockedHeadless(BrowserRunError):
    """A consent/CAPTCHA wall was detected while running headless."""

    code = "BLOCKED_HEADLESS"
    default_phase = "block_check"

    def __init__(self, message: str, *, signature: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.signature = signature


class InputNotReady(BrowserRunError):
    """The prompt input never became interactable."""

    code = "INPUT_NOT_READY"
    default_phase = "awaiting_input"

    def __init__(self, message: str, *, selectors: Optional[list[str]] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.selectors = list(selectors or [])


class ResponseTimeout(BrowserRunError):
    """The answer did not settle before the overall timeout.

    ``partial_text`` holds the last non-empty snapshot so an operator can
    decide whether a truncated answer is still useful.
    """

    code = "RESPONSE_TIMEOUT"
    default_phase = "awaiting_response"

    def __init__(
        self,
        message: str,
        *,
        partial_text: str = "",
        partial_html: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.partial_text = partial_text
        self.partial_html = partial_html


class PageScriptError(BrowserRunError):
    """Code evaluated inside the page threw."""

    code = "PAGE_SCRIPT_ERROR"
    default_phase = "runtime"

    def __init__(self, message: str, *, page_stack: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.page_stack = page_stack


class AttachmentFailed(BrowserRunError):
    code = "ATTACHMENT_FAILED"
    default_phase = "submitting"

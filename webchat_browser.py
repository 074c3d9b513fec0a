"""Browser-mode runs: one disposable Chrome, one page, one prompt.

Usage:
    webchat "Say OK."
    webchat --model "GPT-5" --file notes.md "Summarise the attached notes"
    webchat --save-session --chrome-profile work
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import math
import shutil
import sys
import time
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from webchat_channel import connect_to_chrome
from webchat_config import RunConfig, load_config, parse_duration, resolve_browser_config, trace_enabled
from webchat_cookies import DEFAULT_PROFILE, CookieSource, export_cookies, sync_cookies
from webchat_errors import BrowserRunError, ResponseTimeout
from webchat_lifecycle import (
    BrowserProcessHandle,
    create_profile_dir,
    hide_chrome_window,
    launch_chrome,
    register_termination_hooks,
    teardown,
)
from webchat_logging import BrowserLogger, logger_sink, setup_logging
from webchat_metrics import append_run_log
from webchat_page import Attachment, ConversationTurn, PageDriver

logger = logging.getLogger(__name__)


class RunResult(BaseModel):
    """Outcome of one browser-mode call, built once at the end."""

    model_config = ConfigDict(frozen=True)

    answer_text: str = ""
    answer_markdown: str = ""
    answer_html: Optional[str] = None
    took_ms: int = Field(default=0, ge=0)
    answer_tokens: int = Field(default=0, ge=0)
    answer_chars: int = Field(default=0, ge=0)
    chrome_pid: Optional[int] = None
    chrome_port: Optional[int] = None
    user_data_dir: str = ""
    model: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict)
    completed: bool = False


def estimate_token_count(text: str) -> int:
    """Rough token estimate (~4 characters per token)."""
    return math.ceil(len(text) / 4) if text else 0


class BrowserRunner:
    """Owns the resources of a single call and releases them on every exit path.

    The collaborators default to the real implementations; tests swap them
    for fakes so no Chrome is needed.
    """

    def __init__(
        self,
        config: Union[RunConfig, Mapping[str, Any], None] = None,
        log: Optional[BrowserLogger] = None,
        *,
        launcher: Callable[..., Any] = launch_chrome,
        connector: Callable[..., Any] = connect_to_chrome,
        cookie_source: Optional[CookieSource] = None,
        driver_factory: Callable[..., Any] = PageDriver,
        hooks: Callable[..., Callable[[], None]] = register_termination_hooks,
        hider: Callable[..., Any] = hide_chrome_window,
        profile_factory: Callable[[], Path] = create_profile_dir,
        teardown_fn: Callable[[BrowserProcessHandle], Any] = teardown,
        run_log_path: Optional[Path] = None,
    ) -> None:
        self.config = resolve_browser_config(config)
        self.log = log or logger_sink()
        self.launcher = launcher
        self.connector = connector
        self.cookie_source = cookie_source
        self.driver_factory = driver_factory
        self.hooks = hooks
        self.hider = hider
        self.profile_factory = profile_factory
        self.teardown_fn = teardown_fn
        self.run_log_path = run_log_path

    async def run(self, prompt: str, attachments: Sequence[Attachment] = ()) -> RunResult:
        text = (prompt or "").strip()
        if not text:
            raise ValueError("Prompt text is required when using browser mode.")

        config = self.config
        log = self.log
        trace = trace_enabled(config)
        if trace:
            dumped = {**config.model_dump(), "prompt_length": len(text)}
            log(f"[browser-mode] config: {json.dumps(dumped, default=str)}")

        user_data_dir = Path(self.profile_factory())
        log(f"Created temporary Chrome profile at {user_data_dir}")
        started = time.monotonic()

        try:
            handle = await self.launcher(config, user_data_dir, log)
        except BaseException as e:
            shutil.rmtree(user_data_dir, ignore_errors=True)
            if isinstance(e, BrowserRunError):
                e.result = self._package(None, user_data_dir, None, started, error=e)
            self._record(e.result if isinstance(e, BrowserRunError) else None, e)
            raise

        deregister = None
        try:
            deregister = self.hooks(handle, config.keep_browser, log)
        except (ValueError, OSError) as e:
            log(f"Could not register termination hooks ({e}); cleanup still runs on normal exit")

        session = None
        status = "attempted"
        result: Optional[RunResult] = None
        failure: Optional[BaseException] = None
        try:
            session = await self.connector(handle.port, log)
            if not config.headless and config.hide_window:
                self.hider(handle, log)

            await session.clear_cookies()
            if config.cookie_sync:
                count = await sync_cookies(session, config.url, config.chrome_profile, log, self.cookie_source)
                if count > 0:
                    log(f"Copied {count} cookies from Chrome profile {config.chrome_profile or DEFAULT_PROFILE}")
                else:
                    log("No Chrome cookies found; continuing without session reuse")
            else:
                log("Skipping Chrome cookie sync (--no-cookie-sync)")

            driver = self.driver_factory(session, config, log)
            turn = await driver.drive(text, attachments)
            status = "complete"
            result = self._package(handle, handle.user_data_dir, turn, started)
            return result
        except BaseException as e:
            failure = e
            if isinstance(e, asyncio.CancelledError):
                log("Browser run cancelled")
            else:
                log(f"Failed to complete browser run: {e}")
                if trace:
                    log(traceback.format_exc())
            if isinstance(e, BrowserRunError):
                e.result = result = self._package(handle, handle.user_data_dir, None, started, error=e)
            raise
        finally:
            try:
                await self._close(session, deregister)
            finally:
                await self._release(handle, status, started)
                self._record(result, failure)

    async def _close(self, session, deregister: Optional[Callable[[], None]]) -> None:
        try:
            if session is not None:
                await session.close()
        except Exception as e:
            self.log(f"Error closing DevTools session: {e}")
        finally:
            if deregister is not None:
                deregister()

    async def _release(self, handle: BrowserProcessHandle, status: str, started: float) -> None:
        if self.config.keep_browser:
            self.log(f"Chrome left running on port {handle.port} with profile {handle.user_data_dir}")
            return
        # kill_chrome waits on the process; keep that off the event loop
        await asyncio.to_thread(self.teardown_fn, handle)
        self.log(f"Cleanup {status} • {time.monotonic() - started:.1f}s total")

    def _package(
        self,
        handle: Optional[BrowserProcessHandle],
        user_data_dir: Path,
        turn: Optional[ConversationTurn],
        started: float,
        error: Optional[BaseException] = None,
    ) -> RunResult:
        if turn is not None:
            text, markdown, html = turn.text, turn.markdown, turn.html
            model, meta = turn.model, turn.meta
        elif isinstance(error, ResponseTimeout):
            text = markdown = error.partial_text
            html, model, meta = error.partial_html, None, {}
        else:
            text = markdown = ""
            html, model, meta = None, None, {}
        return RunResult(
            answer_text=text,
            answer_markdown=markdown,
            answer_html=html or None,
            took_ms=max(0, int((time.monotonic() - started) * 1000)),
            answer_tokens=estimate_token_count(markdown),
            answer_chars=len(text),
            chrome_pid=handle.pid if handle else None,
            chrome_port=handle.port if handle else None,
            user_data_dir=str(user_data_dir),
            model=model,
            meta=meta,
            completed=turn is not None,
        )

    def _record(self, result: Optional[RunResult], error: Optional[BaseException]) -> None:
        if not self.config.run_log:
            return
        if error is None:
            status = "success"
        elif isinstance(error, asyncio.CancelledError):
            status = "cancelled"
        else:
            status = "error"
        append_run_log(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "status": status,
                "error_code": getattr(error, "code", type(error).__name__) if error else None,
                "phase": getattr(error, "phase", None),
                "took_ms": result.took_ms if result else None,
                "answer_chars": result.answer_chars if result else 0,
                "answer_tokens": result.answer_tokens if result else 0,
                "model": (result.model if result else None) or self.config.desired_model,
                "headless": self.config.headless,
            },
            self.run_log_path,
        )


async def run_browser_mode(
    prompt: str,
    attachments: Sequence[Attachment] = (),
    config: Union[RunConfig, Mapping[str, Any], None] = None,
    log: Optional[BrowserLogger] = None,
    **collaborators: Any,
) -> RunResult:
    """Run one prompt through the web chat UI and return the answer."""
    return await BrowserRunner(config, log, **collaborators).run(prompt, attachments)


async def save_session(
    config: Union[RunConfig, Mapping[str, Any], None] = None,
    log: Optional[BrowserLogger] = None,
    *,
    launcher: Callable[..., Any] = launch_chrome,
    connector: Callable[..., Any] = connect_to_chrome,
    wait_for_login: Optional[Callable[[], Any]] = None,
    profiles_dir: Optional[Path] = None,
) -> Path:
    """Open a visible browser for a manual login, then export its cookies."""
    config = resolve_browser_config(config)
    if config.headless:
        config = config.model_copy(update={"headless": False})
    log = log or logger_sink()

    user_data_dir = create_profile_dir()
    try:
        handle = await launcher(config, user_data_dir, log)
    except BaseException:
        shutil.rmtree(user_data_dir, ignore_errors=True)
        raise

    session = None
    try:
        session = await connector(handle.port, log)
        await session.navigate(config.url, config.navigation_timeout_ms)
        log(f"Browser opened. Log in at {config.url} in the browser window.")
        log("Press Enter here when done...")
        if wait_for_login is None:
            await asyncio.to_thread(input)
        else:
            await wait_for_login()
        path = await export_cookies(session, config.url, config.chrome_profile, log, profiles_dir)
        log("Session saved. You can now run prompts headless.")
        return path
    finally:
        try:
            if session is not None:
                await session.close()
        finally:
            await asyncio.to_thread(teardown, handle)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ask a web chat assistant through a real Chrome")
    parser.add_argument("prompt", nargs="?", help="Prompt text (or use --prompt-file)")
    parser.add_argument("--prompt-file", type=str, help="Read the prompt from a file")
    parser.add_argument("--file", action="append", default=[], dest="files", help="Attach a file (repeatable)")
    parser.add_argument("--config", type=str, help="JSON run config file")
    parser.add_argument("--url", type=str, help="Chat URL (default: https://chatgpt.com/)")
    parser.add_argument("--model", type=str, dest="desired_model", help="Model label to select in the UI")
    parser.add_argument("--chrome-profile", type=str, help="Local cookie profile to reuse")
    parser.add_argument("--chrome-path", type=str, help="Chrome/Chromium binary")
    parser.add_argument("--port", type=int, dest="debug_port", help="Remote debugging port (default: free port)")
    parser.add_argument("--timeout", type=str, help="Response timeout, e.g. 600s, 10m (default unit: ms)")
    parser.add_argument("--input-timeout", type=str, help="Prompt input wait, e.g. 30s")
    parser.add_argument("--selectors", type=str, dest="selectors_path", help="JSON selector overrides")
    parser.add_argument("--headless", action="store_true", default=None)
    parser.add_argument("--hide-window", action="store_true", default=None)
    parser.add_argument("--keep-browser", action="store_true", default=None, help="Leave Chrome running afterwards")
    parser.add_argument("--no-cookie-sync", action="store_true", help="Start without session cookies")
    parser.add_argument("--vision", action="store_true", help="Use the screenshot classifier as a completion signal")
    parser.add_argument("--run-log", action="store_true", default=None, help="Append a summary to runs.jsonl")
    parser.add_argument("--debug", action="store_true", default=None, help="Log resolved config and stacks")
    parser.add_argument("--save-session", action="store_true", help="Log in by hand and save cookies")
    parser.add_argument("--markdown", action="store_true", help="Print only the answer markdown")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--json-log", action="store_true", help="Structured JSON log lines on stderr")
    return parser


def _config_from_args(args: argparse.Namespace) -> RunConfig:
    base = resolve_browser_config(None)
    if args.config:
        loaded = load_config(args.config)
        if not loaded.success:
            raise ValueError(f"{loaded.error_code}: {loaded.error}")
        base = loaded.data or base

    overrides: dict[str, Any] = {
        "url": args.url,
        "desired_model": args.desired_model,
        "chrome_profile": args.chrome_profile,
        "chrome_path": args.chrome_path,
        "debug_port": args.debug_port,
        "selectors_path": args.selectors_path,
        "headless": args.headless,
        "hide_window": args.hide_window,
        "keep_browser": args.keep_browser,
        "run_log": args.run_log,
        "debug": args.debug,
    }
    if args.timeout:
        overrides["timeout_ms"] = parse_duration(args.timeout)
    if args.input_timeout:
        overrides["input_timeout_ms"] = parse_duration(args.input_timeout)
    if args.no_cookie_sync:
        overrides["cookie_sync"] = False
    if args.vision:
        overrides["vision"] = {**base.vision.model_dump(), "enabled": True}

    merged = base.model_dump()
    merged.update({k: v for k, v in overrides.items() if v is not None})
    return RunConfig.model_validate(merged)


async def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging(verbose=args.verbose, json_log=args.json_log)
    log = logger_sink()

    try:
        config = _config_from_args(args)
    except (ValueError, ValidationError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    if args.save_session:
        try:
            await save_session(config, log)
        except BrowserRunError as e:
            print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
            return 1
        return 0

    prompt = args.prompt
    if args.prompt_file:
        try:
            prompt = Path(args.prompt_file).read_text(encoding="utf-8")
        except OSError as e:
            print(f"Cannot read prompt file: {e}", file=sys.stderr)
            return 2
    if not (prompt or "").strip():
        parser.print_usage(sys.stderr)
        print("error: a prompt is required unless using --save-session", file=sys.stderr)
        return 2

    attachments = [Attachment(path=p) for p in args.files]
    try:
        result = await run_browser_mode(prompt, attachments, config, log)
    except BrowserRunError as e:
        payload = e.to_dict()
        if isinstance(e, ResponseTimeout) and e.partial_text:
            payload["partial_text"] = e.partial_text
        print(json.dumps(payload, indent=2, default=str))
        return 1

    if args.markdown:
        print(result.answer_markdown)
    else:
        print(json.dumps(result.model_dump(), indent=2, default=str))
    return 0


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()

"""Chrome process lifecycle for browser-mode runs.

One disposable Chrome per call: a fresh temp profile, a remote-debugging port,
and a teardown that runs exactly once whether the call returns, raises, is
cancelled, or the host process is signalled.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import socket
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import requests

from webchat_config import PROFILE_DIR_PREFIX, RunConfig
from webchat_errors import LaunchTimeout
from webchat_logging import BrowserLogger

logger = logging.getLogger(__name__)

CHROME_CANDIDATES = [
    # macOS
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    # Windows
    r"C:\Program Files\Google\Chrome\Application\chrome.exe",
    r"C:\Program Files (x86)\Google\Chrome\Application\chrome.exe",
]
CHROME_PATH_NAMES = ["google-chrome", "google-chrome-stable", "chromium", "chromium-browser", "chrome"]

_HOOK_SIGNALS = [name for name in ("SIGINT", "SIGTERM", "SIGHUP") if hasattr(signal, name)]


@dataclass
class BrowserProcessHandle:
    """One launched Chrome instance and the profile directory it owns."""

    port: int
    pid: int
    user_data_dir: Path
    process: Optional[subprocess.Popen] = field(default=None, repr=False)
    process_group: bool = False
    running: bool = True
    torn_down: bool = False

    @property
    def endpoint(self) -> str:
        return f"http://localhost:{self.port}"


def create_profile_dir() -> Path:
    """Create a fresh, empty Chrome user-data directory."""
    return Path(tempfile.mkdtemp(prefix=PROFILE_DIR_PREFIX))


def find_chrome(explicit: Optional[str] = None) -> Optional[str]:
    """Locate a Chrome/Chromium binary, preferring an explicit path."""
    if explicit:
        return explicit if os.path.isfile(explicit) else shutil.which(explicit)
    for candidate in CHROME_CANDIDATES:
        if os.path.isfile(candidate):
            return candidate
    for name in CHROME_PATH_NAMES:
        found = shutil.which(name)
        if found:
            return found
    return None


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def build_launch_args(binary: str, port: int, user_data_dir: Path, headless: bool) -> list[str]:
    args = [
        binary,
        f"--remote-debugging-port={port}",
        f"--user-data-dir={user_data_dir}",
        "--no-first-run",
        "--no-default-browser-check",
        "--disable-popup-blocking",
    ]
    if headless:
        args.append("--headless=new")
    return args


def endpoint_ready(port: int, timeout: float = 1.0) -> bool:
    """True once Chrome answers on /json/version."""
    try:
        r = requests.get(f"http://localhost:{port}/json/version", timeout=timeout)
    except requests.RequestException:
        return False
    return r.status_code == 200


async def launch_chrome(
    config: RunConfig,
    user_data_dir: Path,
    log: BrowserLogger,
    *,
    popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ready_check: Callable[[int], bool] = endpoint_ready,
) -> BrowserProcessHandle:
    """Start Chrome detached and wait for its debugging endpoint.

    Raises LaunchTimeout if the binary is missing or cannot be executed,
    exits during startup, or never answers within ``launch_attempts`` polls.
    """
    binary = find_chrome(config.chrome_path)
    if not binary:
        raise LaunchTimeout(
            "Chrome binary not found. Install Google Chrome/Chromium or pass --chrome-path."
        )

    port = config.debug_port or find_free_port()
    args = build_launch_args(binary, port, user_data_dir, config.headless)
    if config.debug:
        log(f"Chrome args: {' '.join(args)}")

    started = time.monotonic()
    try:
        process = popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=sys.platform != "win32",
        )
    except OSError as e:
        raise LaunchTimeout(
            f"Could not start Chrome at {binary}: {e}",
            elapsed_ms=int((time.monotonic() - started) * 1000),
        ) from e
    handle = BrowserProcessHandle(
        port=port,
        pid=process.pid,
        user_data_dir=Path(user_data_dir),
        process=process,
        process_group=sys.platform != "win32",
    )
    log(f"Launched Chrome (pid {handle.pid}) on port {port}")

    attempts = config.polling.launch_attempts
    backoff = config.polling.launch_backoff_ms / 1000
    try:
        for attempt in range(attempts):
            code = process.poll()
            if code is not None:
                handle.running = False
                raise LaunchTimeout(
                    f"Chrome exited with code {code} before its debugging endpoint came up",
                    elapsed_ms=int((time.monotonic() - started) * 1000),
                )
            if await asyncio.to_thread(ready_check, port):
                log(f"Chrome listening on {handle.endpoint} after {attempt + 1} attempt(s)")
                return handle
            await asyncio.sleep(backoff)
    except BaseException:
        kill_chrome(handle)
        raise

    kill_chrome(handle)
    raise LaunchTimeout(
        f"Chrome debugging endpoint on port {port} not reachable after {attempts} attempts",
        elapsed_ms=int((time.monotonic() - started) * 1000),
    )


def kill_chrome(handle: BrowserProcessHandle, wait_timeout: float = 5.0) -> None:
    """Terminate the Chrome process. Safe to call on an already-dead process."""
    proc = handle.process
    if proc is None:
        try:
            os.kill(handle.pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError, OSError):
            pass
        handle.running = False
        return

    if proc.poll() is None:
        try:
            if handle.process_group:
                os.killpg(proc.pid, signal.SIGTERM)
            else:
                proc.terminate()
            proc.wait(timeout=wait_timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Chrome (pid %s) ignored SIGTERM, killing", handle.pid)
            try:
                if handle.process_group:
                    os.killpg(proc.pid, signal.SIGKILL)
                else:
                    proc.kill()
                proc.wait(timeout=wait_timeout)
            except (ProcessLookupError, subprocess.TimeoutExpired, OSError):
                pass
        except (ProcessLookupError, PermissionError):
            pass
    handle.running = False


def remove_profile(handle: BrowserProcessHandle) -> None:
    if handle.running:
        raise RuntimeError(f"Refusing to delete {handle.user_data_dir} while Chrome is running")
    shutil.rmtree(handle.user_data_dir, ignore_errors=True)


def teardown(handle: BrowserProcessHandle, keep_profile: bool = False) -> bool:
    """Kill Chrome and delete its profile. Runs its body at most once.

    Returns True if this call performed the teardown.
    """
    if handle.torn_down:
        return False
    handle.torn_down = True
    kill_chrome(handle)
    if not keep_profile:
        remove_profile(handle)
    return True


def hide_chrome_window(handle: BrowserProcessHandle, log: BrowserLogger) -> bool:
    """Best-effort request to get the Chrome window out of the way."""
    try:
        if sys.platform == "darwin":
            script = (
                'tell application "System Events" to set visible of '
                f"(first process whose unix id is {handle.pid}) to false"
            )
            subprocess.run(["osascript", "-e", script], check=True, capture_output=True, timeout=5)
        elif sys.platform.startswith("linux") and shutil.which("xdotool"):
            subprocess.run(
                ["xdotool", "search", "--pid", str(handle.pid), "windowminimize", "%@"],
                check=True,
                capture_output=True,
                timeout=5,
            )
        else:
            log(f"Window hiding not supported on {sys.platform}; leaving Chrome visible")
            return False
    except (subprocess.SubprocessError, OSError) as e:
        log(f"Failed to hide Chrome window: {e}")
        return False
    log("Chrome window hidden")
    return True


def register_termination_hooks(
    handle: BrowserProcessHandle,
    keep_alive: bool,
    log: BrowserLogger,
) -> Callable[[], None]:
    """Tear Chrome down if the host process is signalled or crashes.

    Returns a function that restores the previous handlers; call it on the
    normal exit path so the hook cannot fire a second time.
    """
    previous_handlers: dict[int, object] = {}
    previous_excepthook = sys.excepthook
    fired = False

    def _cleanup(reason: str) -> None:
        nonlocal fired
        if fired:
            return
        fired = True
        if keep_alive:
            log(f"{reason}: leaving Chrome running on port {handle.port} with profile {handle.user_data_dir}")
            return
        log(f"{reason}: killing Chrome (pid {handle.pid}) and removing {handle.user_data_dir}")
        teardown(handle)

    def _on_signal(signum, frame) -> None:
        _cleanup(f"Received {signal.Signals(signum).name}")
        previous = previous_handlers.get(signum)
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_DFL:
            signal.signal(signum, signal.SIG_DFL)
            os.kill(os.getpid(), signum)

    def _on_crash(exc_type, exc, tb) -> None:
        _cleanup(f"Uncaught {exc_type.__name__}")
        previous_excepthook(exc_type, exc, tb)

    def deregister() -> None:
        nonlocal fired
        fired = True
        for signum, previous in previous_handlers.items():
            try:
                signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
            except (ValueError, OSError):
                pass
        if sys.excepthook is _on_crash:
            sys.excepthook = previous_excepthook

    try:
        for name in _HOOK_SIGNALS:
            signum = getattr(signal, name)
            previous_handlers[signum] = signal.signal(signum, _on_signal)
    except (ValueError, OSError):
        # signal.signal only works on the main thread of the main interpreter
        deregister()
        raise
    sys.excepthook = _on_crash
    return deregister

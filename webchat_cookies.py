"""Cookie import/export between local profiles and the controlled browser.

A "local profile" is a named cookie export under ~/.webchat/profiles/. Two
formats are accepted: the Playwright-native list of cookie dicts, and the
legacy ``{"cookies": "name=value; name2=value2"}`` string form.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol
from urllib.parse import urlparse

from webchat_config import PROFILES_DIR
from webchat_logging import BrowserLogger

logger = logging.getLogger(__name__)

DEFAULT_PROFILE = "Default"
_OPTIONAL_COOKIE_KEYS = ("expires", "httpOnly", "secure", "sameSite", "priority")


class CookieSource(Protocol):
    """Collaborator that returns cookies for a site from a local profile."""

    def read(self, url: str, profile: Optional[str]) -> list[dict]: ...


def target_host(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def domain_matches(cookie_domain: str, host: str) -> bool:
    """Cookie-domain match: exact host or a parent domain of it."""
    domain = (cookie_domain or "").lower().lstrip(".")
    if not domain or not host:
        return False
    return host == domain or host.endswith("." + domain)


def parse_cookie_string(cookie_str: Optional[str], domain: str) -> list[dict]:
    """Parse 'a=1; b=2' into cookie dicts scoped to ``domain``."""
    if not cookie_str:
        return []
    cookies = []
    for pair in cookie_str.split(";"):
        pair = pair.strip()
        if "=" not in pair:
            continue
        name, value = pair.split("=", 1)
        cookies.append({
            "name": name.strip(),
            "value": value.strip(),
            "domain": domain,
            "path": "/",
        })
    return cookies


def build_cookie_param(cookie: Mapping[str, Any], url: str) -> Optional[dict]:
    """Convert a cookie record into a Network.setCookies entry."""
    name = cookie.get("name")
    value = cookie.get("value")
    if not name or value is None:
        return None
    param: dict[str, Any] = {
        "name": str(name),
        "value": str(value),
        "path": cookie.get("path") or "/",
    }
    if cookie.get("domain"):
        param["domain"] = cookie["domain"]
    else:
        param["url"] = url
    for key in _OPTIONAL_COOKIE_KEYS:
        if cookie.get(key) is not None:
            param[key] = cookie[key]
    # CDP rejects expires <= 0; those are session cookies anyway
    if isinstance(param.get("expires"), (int, float)) and param["expires"] <= 0:
        del param["expires"]
    return param


def profile_path(profile: Optional[str], profiles_dir: Optional[Path] = None) -> Path:
    name = re.sub(r"[^\w.\-]+", "_", profile or DEFAULT_PROFILE)
    return (profiles_dir or PROFILES_DIR) / f"{name}.json"


class ProfileCookieSource:
    """Reads cookies from a named profile export on disk."""

    def __init__(self, profiles_dir: Optional[Path] = None) -> None:
        self.profiles_dir = profiles_dir or PROFILES_DIR

    def read(self, url: str, profile: Optional[str]) -> list[dict]:
        path = profile_path(profile, self.profiles_dir)
        if not path.exists():
            return []
        data = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(data, list):
            return [c for c in data if isinstance(c, dict)]
        if isinstance(data, dict):
            if isinstance(data.get("cookies"), list):
                return [c for c in data["cookies"] if isinstance(c, dict)]
            host = target_host(url)
            return parse_cookie_string(data.get("cookies", ""), f".{host}" if host else "")
        return []


async def sync_cookies(
    session,
    url: str,
    profile: Optional[str],
    log: BrowserLogger,
    source: Optional[CookieSource] = None,
) -> int:
    """Inject the profile's cookies for ``url`` into the session.

    Returns the number injected. Zero is a normal outcome (no export, no
    matching cookies); the caller continues unauthenticated.
    """
    source = source or ProfileCookieSource()
    host = target_host(url)
    try:
        records = source.read(url, profile)
    except (OSError, ValueError) as e:
        log(f"WARNING: Failed to read cookies for profile {profile or DEFAULT_PROFILE}: {e}")
        return 0

    params = []
    for record in records:
        if record.get("domain") and not domain_matches(record["domain"], host):
            continue
        param = build_cookie_param(record, url)
        if param:
            params.append(param)

    if not params:
        return 0
    await session.set_cookies(params)
    logger.debug("Injected cookies: %s", ", ".join(p["name"] for p in params))
    return len(params)


async def export_cookies(
    session,
    url: str,
    profile: Optional[str],
    log: BrowserLogger,
    profiles_dir: Optional[Path] = None,
) -> Path:
    """Write the live session's cookies for ``url`` to the profile export."""
    host = target_host(url)
    cookies = [
        c for c in await session.get_cookies([url])
        if domain_matches(c.get("domain", ""), host)
    ]
    path = profile_path(profile, profiles_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(cookies, indent=2, default=str), encoding="utf-8")
    log(f"Saved {len(cookies)} cookies to {path}")
    return path

"""Page-side driver script and UI selectors.

The script installs ``window.__webchatDriver`` once per document. Its
``version`` field is the idempotency marker: a second install of the same
version is a no-op, a newer version replaces the old object. Every host call
embeds the installer, so a reload or SPA route change re-installs on demand.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from webchat_config import SELECTORS_PATH

logger = logging.getLogger(__name__)

DRIVER_SCRIPT_VERSION = 3
DRIVER_GLOBAL = "__webchatDriver"

DEFAULT_SELECTORS: dict[str, Any] = {
    "promptInput": [
        "#prompt-textarea",
        "textarea[data-testid='prompt-textarea']",
        "div[contenteditable='true'][role='textbox']",
        "form textarea",
    ],
    "sendButton": "button[data-testid='send-button'], button[aria-label*='Send']",
    "stopButton": "button[data-testid='stop-button'], button[aria-label*='Stop']",
    "assistantMessage": "[data-message-author-role='assistant']",
    "messageContent": ".markdown, [class*='markdown']",
    "turnContainer": "article, [data-testid^='conversation-turn']",
    "copyButton": "button[data-testid='copy-turn-action-button'], button[aria-label*='Copy']",
    "modelButton": "button[data-testid='model-switcher-dropdown-button']",
    "modelMenuItem": "[role='menuitem'], [role='menuitemradio'], [role='option']",
    "fileInput": "input[type='file']",
    "attachmentChip": "[data-testid*='attachment'], [class*='attachment'], [class*='file-tile']",
    "blockSelectors": [
        "iframe[src*='challenges.cloudflare.com']",
        "#challenge-form",
        "#cf-challenge-running",
        "iframe[src*='captcha']",
        "form[action*='consent']",
    ],
    "blockPhrases": [
        "verify you are human",
        "just a moment...",
        "unusual activity",
        "are you a robot",
        "complete the security check",
        "before you continue",
    ],
}

DRIVER_FUNCTIONS = frozenset({
    "detectBlock",
    "inputState",
    "focusInput",
    "composerText",
    "clickSend",
    "currentModel",
    "selectModel",
    "assistantCount",
    "responseSnapshot",
    "copyMarkdown",
    "attachmentState",
    "pageSnapshot",
})

_INSTALLER = r"""
(() => {
  const VERSION = __VERSION__;
  const existing = window.__GLOBAL__;
  if (existing && existing.version === VERSION) return;
  const SEL = __SELECTORS__;
  const sleep = (ms) => new Promise((resolve) => setTimeout(resolve, ms));
  const first = (selector, root) => (selector ? (root || document).querySelector(selector) : null);
  const all = (selector, root) => (selector ? Array.from((root || document).querySelectorAll(selector)) : []);
  const textOf = (el) => ((el && (el.innerText || el.textContent)) || '').trim();
  const squash = (text) => String(text || '').replace(/\s+/g, ' ').trim();
  const visible = (el) => {
    if (!el || !el.isConnected) return false;
    const rect = el.getBoundingClientRect();
    const style = window.getComputedStyle(el);
    return rect.width > 0 && rect.height > 0 && style.visibility !== 'hidden' && style.display !== 'none';
  };
  const press = (el) => {
    el.scrollIntoView({ block: 'center' });
    for (const type of ['pointerdown', 'mousedown', 'pointerup', 'mouseup']) {
      const Ctor = type.startsWith('pointer') && window.PointerEvent ? PointerEvent : MouseEvent;
      el.dispatchEvent(new Ctor(type, { bubbles: true, cancelable: true, button: 0 }));
    }
    el.click();
  };
  const closeMenu = () => {
    const target = document.activeElement || document.body;
    target.dispatchEvent(new KeyboardEvent('keydown', { key: 'Escape', bubbles: true }));
  };
  const findInput = () => {
    for (const selector of SEL.promptInput) {
      const el = first(selector);
      if (el) return { el, selector };
    }
    return { el: null, selector: null };
  };
  const inputValue = (el) => (!el ? '' : el.isContentEditable ? textOf(el) : String(el.value || ''));

  const driver = {
    version: VERSION,
    copied: null,

    detectBlock() {
      for (const selector of SEL.blockSelectors) {
        const el = first(selector);
        if (el) return { blocked: true, signature: `selector:${selector}`, snippet: (el.outerHTML || '').slice(0, 300) };
      }
      const title = (document.title || '').toLowerCase();
      const body = document.body ? String(document.body.innerText || '').slice(0, 5000).toLowerCase() : '';
      for (const phrase of SEL.blockPhrases) {
        const needle = phrase.toLowerCase();
        if (title.includes(needle) || body.includes(needle)) {
          return { blocked: true, signature: `text:${phrase}`, snippet: body.slice(0, 300) };
        }
      }
      return { blocked: false };
    },

    inputState() {
      const { el, selector } = findInput();
      if (!el) return { found: false, ready: false, selector: null, tried: SEL.promptInput };
      const disabled = el.disabled === true || el.readOnly === true
        || el.getAttribute('aria-disabled') === 'true' || el.getAttribute('contenteditable') === 'false';
      return { found: true, ready: visible(el) && !disabled, selector, tried: SEL.promptInput };
    },

    focusInput() {
      const { el, selector } = findInput();
      if (!el) return { focused: false, selector: null };
      el.scrollIntoView({ block: 'center' });
      el.focus();
      if (el.isContentEditable) {
        const range = document.createRange();
        range.selectNodeContents(el);
        range.collapse(false);
        const selection = window.getSelection();
        selection.removeAllRanges();
        selection.addRange(range);
      }
      const active = document.activeElement;
      return { focused: active === el || el.contains(active), selector };
    },

    composerText() {
      return { text: inputValue(findInput().el) };
    },

    clickSend() {
      const button = first(SEL.sendButton);
      if (!button || !visible(button) || button.disabled) return { clicked: false };
      press(button);
      return { clicked: true };
    },

    currentModel() {
      const button = first(SEL.modelButton);
      if (!button) return { found: false, label: null };
      return { found: true, label: squash(textOf(button) || button.getAttribute('aria-label')) || null };
    },

    async selectModel({ label, waitMs }) {
      const wanted = squash(label).toLowerCase();
      const button = first(SEL.modelButton);
      if (!button) return { status: 'no-picker', label: null, options: [] };
      const currentLabel = squash(textOf(button));
      if (wanted && currentLabel.toLowerCase().includes(wanted)) {
        return { status: 'already-selected', label: currentLabel, options: [] };
      }
      press(button);
      const deadline = Date.now() + (waitMs || 2000);
      let items = [];
      while (Date.now() < deadline) {
        items = all(SEL.modelMenuItem).filter(visible);
        if (items.length) break;
        await sleep(100);
      }
      if (!items.length) {
        closeMenu();
        return { status: 'menu-empty', label: currentLabel, options: [] };
      }
      const options = items.map((item) => squash(textOf(item)));
      const index = options.findIndex((text) => text.toLowerCase().includes(wanted));
      if (index < 0) {
        closeMenu();
        return { status: 'not-found', label: currentLabel, options: options.slice(0, 20) };
      }
      press(items[index]);
      await sleep(300);
      const after = first(SEL.modelButton);
      return { status: 'selected', label: after ? squash(textOf(after)) : options[index], option: options[index], options: [] };
    },

    assistantCount() {
      return { count: all(SEL.assistantMessage).length };
    },

    responseSnapshot({ baseline }) {
      const messages = all(SEL.assistantMessage);
      const stop = first(SEL.stopButton);
      const snapshot = { count: messages.length, generating: !!(stop && visible(stop)), text: '', html: '' };
      if (messages.length <= (baseline || 0)) return snapshot;
      const last = messages[messages.length - 1];
      const content = first(SEL.messageContent, last) || last;
      snapshot.text = textOf(content);
      snapshot.html = content.innerHTML || '';
      snapshot.meta = {
        messageId: last.getAttribute('data-message-id'),
        modelSlug: last.getAttribute('data-message-model-slug'),
        turnIndex: messages.length - 1,
        url: location.href,
      };
      return snapshot;
    },

    async copyMarkdown({ turnIndex, waitMs }) {
      const messages = all(SEL.assistantMessage);
      const message = messages[turnIndex == null ? messages.length - 1 : turnIndex];
      if (!message) return { ok: false, reason: 'no-message' };
      const turn = message.closest(SEL.turnContainer) || message.parentElement || document;
      const buttons = all(SEL.copyButton, turn);
      const button = buttons[buttons.length - 1];
      if (!button) return { ok: false, reason: 'no-copy-button' };
      driver.copied = null;
      press(button);
      const deadline = Date.now() + (waitMs || 1500);
      while (Date.now() < deadline) {
        if (driver.copied !== null) return { ok: true, markdown: driver.copied };
        await sleep(50);
      }
      return { ok: false, reason: 'clipboard-timeout' };
    },

    attachmentState({ names }) {
      const chips = all(SEL.attachmentChip);
      const haystack = chips.map((chip) => textOf(chip) + ' ' + (chip.getAttribute('aria-label') || ''))
        .concat(all('img[alt]').map((img) => img.alt))
        .join('\n').toLowerCase();
      const present = (names || []).filter((name) => haystack.includes(String(name).toLowerCase()));
      return { present, count: chips.length };
    },

    pageSnapshot({ limit }) {
      const body = document.body ? document.body.outerHTML : '';
      return { url: location.href, title: document.title, html: body.slice(0, limit || 1000) };
    },
  };

  const clipboard = navigator.clipboard;
  if (clipboard) {
    if (clipboard.writeText) {
      const writeText = clipboard.writeText.bind(clipboard);
      clipboard.writeText = (text) => {
        driver.copied = String(text);
        return writeText(text).catch(() => undefined);
      };
    }
    if (clipboard.write) {
      const write = clipboard.write.bind(clipboard);
      clipboard.write = async (items) => {
        for (const item of items || []) {
          if (item.types && item.types.includes('text/plain')) {
            driver.copied = await (await item.getType('text/plain')).text();
            break;
          }
        }
        return write(items).catch(() => undefined);
      };
    }
  }

  window.__GLOBAL__ = driver;
})();
"""


def load_selectors(path: Optional[str | Path] = None) -> dict[str, Any]:
    """Default selectors, overlaid with a JSON override file when present."""
    selectors = dict(DEFAULT_SELECTORS)
    source = Path(path) if path else SELECTORS_PATH
    if not source.exists():
        if path:
            logger.warning("Selectors file not found at %s, using defaults", source)
        return selectors
    try:
        overrides = json.loads(source.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable selectors file %s: %s", source, e)
        return selectors
    if isinstance(overrides, dict):
        selectors.update({k: v for k, v in overrides.items() if k in DEFAULT_SELECTORS})
    return selectors


def build_installer(selectors: dict[str, Any]) -> str:
    return (
        _INSTALLER.replace("__VERSION__", str(DRIVER_SCRIPT_VERSION))
        .replace("__GLOBAL__", DRIVER_GLOBAL)
        .replace("__SELECTORS__", json.dumps(selectors))
    )


def build_call(installer: str, name: str, args: Optional[dict] = None) -> str:
    """Expression that installs the driver if needed and calls one function."""
    if name not in DRIVER_FUNCTIONS:
        raise ValueError(f"Unknown page driver function: {name}")
    return (
        "(async () => {\n"
        f"{installer}\n"
        f"  return await window.{DRIVER_GLOBAL}.{name}({json.dumps(args or {})});\n"
        "})()"
    )

"""Screenshot classifier used as an extra completion signal.

Opt-in: needs ``vision.enabled`` and ANTHROPIC_API_KEY. The classifier never
decides a run on its own failure; any error classifies as "unknown".
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
from typing import Any, Optional

from webchat_config import VisionConfig
from webchat_logging import BrowserLogger

logger = logging.getLogger(__name__)

VISION_STATES = ("generating", "complete", "error", "unknown")

_PROMPT = (
    "Analyze this screenshot of a chat assistant web page. "
    "Return ONLY valid JSON (no markdown, no explanation):\n"
    '{"page_state":"<state>","error_text":"<text or empty>"}\n\n'
    "page_state values:\n"
    '- "generating": the latest assistant reply is still streaming '
    "(cursor visible, stop button shown, text growing)\n"
    '- "complete": the latest reply is fully rendered and the message actions '
    "(copy, regenerate) are visible under it\n"
    '- "error": an error banner, "something went wrong", or a retry button is visible\n'
    '- "unknown": none of the above can be determined'
)


def parse_vision_reply(text: str) -> dict:
    """Decode the model's JSON reply, tolerating a ```json fence."""
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1].rsplit("```", 1)[0].strip()
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def vision_available(config: VisionConfig) -> bool:
    return config.enabled and bool(os.environ.get("ANTHROPIC_API_KEY"))


class VisionClassifier:
    """Classifies the current page screenshot with a small Claude model."""

    def __init__(
        self,
        session,
        config: VisionConfig,
        log: BrowserLogger,
        client: Optional[Any] = None,
    ) -> None:
        self.session = session
        self.config = config
        self.log = log
        self._client = client

    def _get_client(self):
        if self._client is None:
            import anthropic

            self._client = anthropic.Anthropic(api_key=os.environ.get("ANTHROPIC_API_KEY", ""))
        return self._client

    def _analyze(self, screenshot: bytes) -> dict:
        response = self._get_client().messages.create(
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            messages=[{
                "role": "user",
                "content": [
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": "image/jpeg",
                            "data": base64.b64encode(screenshot).decode(),
                        },
                    },
                    {"type": "text", "text": _PROMPT},
                ],
            }],
            timeout=15,
        )
        return parse_vision_reply(response.content[0].text)

    async def classify(self) -> str:
        try:
            screenshot = await self.session.capture_screenshot(self.config.jpeg_quality)
            state = await asyncio.to_thread(self._analyze, screenshot)
        except (json.JSONDecodeError, ValueError) as e:
            self.log(f"Vision: failed to parse model reply: {e}")
            return "unknown"
        except Exception as e:
            self.log(f"Vision: analysis error: {e}")
            return "unknown"

        page_state = state.get("page_state", "unknown")
        if page_state not in VISION_STATES:
            page_state = "unknown"
        if page_state == "error":
            self.log(f"Vision: error detected: {state.get('error_text') or 'unknown error'}")
        logger.debug("Vision state: %s", page_state)
        return page_state

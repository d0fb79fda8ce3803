"""
Chatdesk - Tab Titles

Short titles for chat tabs, generated by a small model from the first
prompt. One lightweight agent client is kept open and reused for every
title; anything slower than the timeout falls back to no title.
"""

import asyncio
import logging
import re
from collections.abc import Callable
from typing import Any

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient
from claude_agent_sdk.types import AssistantMessage, ResultMessage, TextBlock

logger = logging.getLogger(__name__)

NAMING_PROMPT = (
    "You generate very short tab titles (2-4 words, no quotes, no punctuation). "
    "Reply in the SAME language as the user message. Only output the title, nothing else."
)
TITLE_MAX_CHARS = 40
PROMPT_MAX_CHARS = 200
NAMING_TIMEOUT = 4.0

_QUOTES = re.compile(r"^[\"'`]+|[\"'`]+$")


def clean_title(raw: str | None) -> str | None:
    """Strip quotes, keep the first line, cap the length."""
    text = _QUOTES.sub("", (raw or "").strip())
    line = text.split("\n")[0].strip()[:TITLE_MAX_CHARS]
    return line or None


def quick_title(prompt: str) -> str:
    """Immediate fallback title from the prompt itself."""
    first = prompt.strip().split("\n")[0]
    if len(first) <= TITLE_MAX_CHARS:
        return first
    return first[: TITLE_MAX_CHARS - 3].rstrip() + "..."


class TabNamer:
    """Owns the naming client. Call start() once and stop() at shutdown."""

    def __init__(
        self,
        model: str = "haiku",
        timeout: float = NAMING_TIMEOUT,
        client_factory: Callable[[ClaudeAgentOptions], Any] = ClaudeSDKClient,
    ):
        self.model = model
        self.timeout = timeout
        self._client_factory = client_factory
        self._client: Any = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        if self._client is not None:
            return
        options = ClaudeAgentOptions(
            model=self.model,
            max_turns=1,
            allowed_tools=[],
            system_prompt=NAMING_PROMPT,
        )
        client = self._client_factory(options)
        await client.connect()
        self._client = client

    async def stop(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            try:
                await client.disconnect()
            except Exception as e:
                logger.debug(f"Naming client disconnect failed: {e}")

    async def generate(self, message: str) -> str | None:
        """Ask the model for a title. Returns None on timeout or any failure."""
        async with self._lock:
            try:
                await self.start()
                raw = await asyncio.wait_for(self._ask(message), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.debug("Tab title generation timed out")
                # The pending answer would leak into the next request.
                await self.stop()
                return None
            except Exception as e:
                logger.warning(f"Tab title generation failed: {e}")
                await self.stop()
                return None
        return clean_title(raw)

    async def _ask(self, message: str) -> str:
        await self._client.query(f'Title for: "{message[:PROMPT_MAX_CHARS]}"')
        text = ""
        async for msg in self._client.receive_response():
            if isinstance(msg, AssistantMessage):
                text += "".join(b.text for b in msg.content if isinstance(b, TextBlock))
            elif isinstance(msg, ResultMessage):
                break
        return text

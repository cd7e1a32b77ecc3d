"""
Text-completion capability and tolerant JSON parsing of its output.

Every stage talks to the model through one call:
    complete(prompt, max_tokens) -> str

The provider SDK calls are sync, so ClientCompleter wraps them with
asyncio.to_thread to let both extraction calls run concurrently.
"""

import asyncio
import json
import logging
from typing import Protocol

from config import get_client

from .errors import ParseFailure

logger = logging.getLogger(__name__)


class TextCompleter(Protocol):
    """Anything that turns a prompt into (hopefully JSON-shaped) text."""

    async def complete(self, prompt: str, max_tokens: int) -> str:
        ...


class ClientCompleter:
    """
    TextCompleter backed by a provider SDK client from config.get_client.

    Usage:
        completer = ClientCompleter("groq/llama-3.3-70b-versatile", temperature=0.2)
        text = await completer.complete(prompt, max_tokens=8192)
    """

    def __init__(self, model_key: str, temperature: float = 0.2):
        self.model_key = model_key
        self.temperature = temperature
        self._client, self._model_cfg = get_client(model_key)

    @property
    def provider(self) -> str:
        return self._model_cfg["provider"]

    @property
    def model_name(self) -> str:
        return self._model_cfg["model"]

    def with_temperature(self, temperature: float) -> "ClientCompleter":
        """Same client, different sampling temperature."""
        clone = ClientCompleter.__new__(ClientCompleter)
        clone.model_key = self.model_key
        clone.temperature = temperature
        clone._client = self._client
        clone._model_cfg = self._model_cfg
        return clone

    async def complete(self, prompt: str, max_tokens: int) -> str:
        def sync_call():
            if self.provider == "anthropic":
                resp = self._client.messages.create(
                    model=self.model_name,
                    max_tokens=max_tokens,
                    temperature=self.temperature,
                    messages=[{"role": "user", "content": prompt}],
                )
                return resp.content[0].text
            resp = self._client.chat.completions.create(
                model=self.model_name,
                messages=[{"role": "user", "content": prompt}],
                temperature=self.temperature,
                max_tokens=max_tokens,
            )
            return resp.choices[0].message.content

        text = await asyncio.to_thread(sync_call)
        logger.debug("[llm] %s returned %d chars", self.model_key, len(text or ""))
        return text or "{}"


def parse_json_object(raw_text: str, context: str = "llm") -> dict:
    """
    Parse a JSON object out of model output.

    Tries the text as-is first; on failure, reparses the slice between the
    first '{' and the last '}' (drops markdown fences and surrounding prose).
    Raises ParseFailure when neither yields a JSON object.
    """
    text = (raw_text or "").strip()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("[%s] JSON parse failed, attempting recovery...", context)
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end <= start:
            raise ParseFailure(f"[{context}] no JSON object in model response", raw_text)
        try:
            parsed = json.loads(text[start:end + 1])
        except json.JSONDecodeError as e:
            raise ParseFailure(f"[{context}] could not parse JSON from model response: {e}", raw_text) from e

    if not isinstance(parsed, dict):
        raise ParseFailure(f"[{context}] expected a JSON object, got {type(parsed).__name__}", raw_text)
    return parsed

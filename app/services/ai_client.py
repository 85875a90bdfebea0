"""Minimal client for an OpenAI-compatible chat completions endpoint."""
import json
import logging
import re
from typing import Any, Optional

import httpx

from app.config import Settings

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class ChatCompletionClient:
    """Sends a single-prompt chat completion and returns the reply text."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: Optional[httpx.BaseTransport] = None
    ) -> Optional["ChatCompletionClient"]:
        """Build a client, or None when no API key is configured."""
        if not settings.siliconflow_api_key:
            return None
        return cls(
            api_key=settings.siliconflow_api_key,
            base_url=settings.siliconflow_base_url,
            model=settings.ai_model,
            timeout=settings.ai_timeout,
            transport=transport,
        )

    def complete(self, prompt: str, temperature: float = 0.7, max_tokens: int = 500) -> str:
        """
        Run one completion.

        Raises:
            httpx.HTTPError: network failure, timeout or non-2xx answer
            ValueError: the answer has no message content
        """
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = client.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            data = response.json()

        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ValueError(f"Unexpected completion payload: {e}") from e


def extract_json_object(text: str) -> dict[str, Any]:
    """Pull the first {...} block out of a model reply and parse it."""
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise ValueError("No JSON object in model reply")
    parsed = json.loads(match.group(0))
    if not isinstance(parsed, dict):
        raise ValueError("Model reply JSON is not an object")
    return parsed

from __future__ import annotations

from typing import Protocol

import httpx

from .errors import AdvisorError


class Advisor(Protocol):
    def complete(self, prompt: str) -> str: ...


class ClaudeAdvisor:
    """Advisory collaborator backed by the Anthropic Messages API. Best effort only."""

    def __init__(
        self,
        api_key: str,
        model: str,
        url: str = "https://api.anthropic.com/v1/messages",
        timeout_s: float = 60.0,
        max_tokens: int = 2048,
        client: httpx.Client | None = None,
    ):
        self.url = url
        self.model = model
        self.max_tokens = max_tokens
        self.client = client or httpx.Client(
            timeout=timeout_s,
            headers={"x-api-key": api_key, "anthropic-version": "2023-06-01", "content-type": "application/json"},
        )

    def complete(self, prompt: str) -> str:
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        try:
            resp = self.client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            raise AdvisorError(f"advisor request failed: {type(e).__name__}: {e}") from e
        if resp.status_code != 200:
            raise AdvisorError(f"advisor returned HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as e:
            raise AdvisorError("advisor returned invalid JSON") from e
        if not isinstance(body, dict):
            raise AdvisorError(f"advisor response is a {type(body).__name__}, not an object")
        blocks = body.get("content") or []
        if not isinstance(blocks, list):
            raise AdvisorError("advisor response content is not a list")
        parts = []
        for b in blocks:
            if not isinstance(b, dict) or b.get("type") != "text":
                continue
            if not isinstance(b.get("text"), str):
                raise AdvisorError("advisor text block does not hold a string")
            parts.append(b["text"])
        text = "".join(parts)
        if not text:
            raise AdvisorError("advisor returned no text")
        return text

from __future__ import annotations

import json
import re
from typing import Any

import requests

from agendasync.errors import PlannerUnavailableError
from agendasync.models import AIConfig

FENCED_OBJECT = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)
CHAT_SUFFIX = "/chat/completions"
PROBE_PROMPT = "Reply with: OK"


def _extract_json_payload(content: str) -> str:
    """Return the JSON object text inside a model reply.

    Models wrap objects in prose or markdown fences often enough that the
    bare reply cannot be passed to ``json.loads`` directly.
    """
    text = content.strip()
    fenced = FENCED_OBJECT.search(text)
    if fenced:
        return fenced.group(1)
    first, last = text.find("{"), text.rfind("}")
    if first < 0 or last <= first:
        raise ValueError("model reply contains no JSON object")
    return text[first : last + 1]


def _message_content(payload: Any) -> str:
    choices = payload.get("choices") if isinstance(payload, dict) else None
    if not choices:
        raise ValueError("model reply has no choices")
    message = choices[0].get("message") or {}
    return str(message.get("content") or "")


class OpenAICompatibleClient:
    """Chat-completions client for any OpenAI-compatible endpoint."""

    def __init__(self, config: AIConfig) -> None:
        self.config = config

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.api_key and self.config.model)

    @property
    def endpoint(self) -> str:
        base = self.config.base_url.rstrip("/")
        return base if base.endswith(CHAT_SUFFIX) else base + CHAT_SUFFIX

    def _post(self, body: dict[str, Any]) -> requests.Response:
        return requests.post(
            self.endpoint,
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
            },
            json={"model": self.config.model, **body},
            timeout=self.config.timeout_seconds,
        )

    def generate_plan(self, *, messages: list[dict[str, str]]) -> dict[str, Any]:
        if not self.is_configured():
            raise PlannerUnavailableError("AI config incomplete: base_url/api_key/model required.")
        try:
            response = self._post(
                {
                    "messages": messages,
                    "temperature": self.config.temperature,
                    "response_format": {"type": "json_object"},
                }
            )
            response.raise_for_status()
            plan = json.loads(_extract_json_payload(_message_content(response.json())))
        except (requests.RequestException, ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
            raise PlannerUnavailableError(f"{type(exc).__name__}: {exc}") from exc
        if not isinstance(plan, dict):
            raise PlannerUnavailableError("model reply root must be a JSON object")
        return plan

    def test_connectivity(self) -> tuple[bool, str]:
        if not self.is_configured():
            return False, "AI config incomplete: base_url/api_key/model required."
        try:
            response = self._post(
                {
                    "messages": [{"role": "user", "content": PROBE_PROMPT}],
                    "temperature": 0,
                    "max_tokens": 8,
                }
            )
            if not response.ok:
                return False, f"HTTP {response.status_code}: {response.text[:300]}"
            reply = " ".join(_message_content(response.json()).split())
        except (requests.RequestException, ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
            return False, f"{type(exc).__name__}: {exc}"
        return True, f"Connected. Model response: {reply[:120]}"

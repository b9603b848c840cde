"""OpenRouter chat-completions adapter used to generate persona replies."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Sequence

import httpx
from fastapi import status

from ..config import Settings
from ..schemas.voice import Persona

logger = logging.getLogger(__name__)


class OpenRouterError(Exception):
    """Wrap transport or API failures when communicating with OpenRouter."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail


def build_system_prompt(persona: Persona) -> str:
    """Return the system prompt that keeps the model in the persona's voice."""

    prompt_parts = [
        f"You are {persona.display_name}.",
        "\n\n## Response Guidelines",
        "Respond in character, maintaining your personality throughout the conversation.",
        "Keep responses conversational and natural for voice interaction.",
        "Avoid using markdown formatting, bullet points, or other text-only formatting.",
    ]
    return " ".join(prompt_parts)


class OpenRouterTextGenerator:
    """Request one complete, non-streaming reply per user message."""

    def __init__(
        self,
        settings: Settings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if settings.openrouter_api_key is None:
            raise ValueError("OPENROUTER_API_KEY is required for text generation")
        self._api_key = settings.openrouter_api_key.get_secret_value()
        self._model = settings.default_model
        self._base_url = str(settings.openrouter_base_url).rstrip("/")
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.request_timeout, connect=10.0)
        )
        self._owns_client = client is None

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def generate_response(self, persona: Persona, user_message: str) -> str:
        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": build_system_prompt(persona)},
                {"role": "user", "content": user_message},
            ],
            "stream": False,
        }

        try:
            response = await self._client.post(
                f"{self._base_url}/chat/completions",
                headers=self._headers,
                json=payload,
            )
        except httpx.HTTPError as exc:
            raise OpenRouterError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        if response.status_code >= 400:
            detail = self._extract_error_detail(response.content)
            raise OpenRouterError(response.status_code, detail)

        try:
            body = response.json()
        except ValueError as exc:
            raise OpenRouterError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        return self._extract_text(body)

    @staticmethod
    def _extract_text(payload: Mapping[str, Any]) -> str:
        choices = payload.get("choices")
        if not isinstance(choices, Sequence) or not choices:
            raise OpenRouterError(
                status.HTTP_502_BAD_GATEWAY, "Completion response missing choices"
            )
        message = choices[0].get("message") if isinstance(choices[0], Mapping) else None
        if not isinstance(message, Mapping):
            raise OpenRouterError(
                status.HTTP_502_BAD_GATEWAY, "Completion response missing message"
            )
        content = message.get("content")
        if isinstance(content, str):
            return content.strip()
        if isinstance(content, Sequence):
            fragments = [
                item["text"]
                for item in content
                if isinstance(item, Mapping)
                and item.get("type") == "text"
                and isinstance(item.get("text"), str)
            ]
            return "".join(fragments).strip()
        return ""

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "OpenRouter returned an empty error response."
        text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            return payload.get("error") or payload
        return payload

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = ["OpenRouterError", "OpenRouterTextGenerator", "build_system_prompt"]

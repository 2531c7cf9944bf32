"""Generation gateway: the external, rate-limited image model call.

The worker only depends on the `GenerationGateway` protocol. `GeminiGateway`
is the production implementation over the Gemini REST API.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from lyra.config import settings

logger = logging.getLogger("lyra.gateway")


# Responses with less base64 image data than this are treated as broken.
MIN_IMAGE_DATA_LENGTH = 100


class GenerationError(Exception):
    """The gateway did not produce an image. The message is user-visible."""


def strip_data_url(data: str) -> str:
    if data.startswith("data:") and "," in data:
        return data.split(",", 1)[1]
    return data


@dataclass(frozen=True)
class GeneratedImage:
    data: bytes
    mime_type: str = "image/png"

    @classmethod
    def from_base64(cls, data: str, mime_type: str = "image/png") -> "GeneratedImage":
        try:
            raw = base64.b64decode(strip_data_url(data), validate=False)
        except (binascii.Error, ValueError) as e:
            raise GenerationError("INVALID_IMAGE_DATA") from e
        return cls(data=raw, mime_type=mime_type)


class GenerationGateway(Protocol):
    async def generate(
        self,
        image_base64: str,
        *,
        prompt: str | None = None,
        config: dict[str, Any] | None = None,
        aspect_ratio: str = "3:4",
        quality: str | None = None,
        variant: str | None = None,
    ) -> GeneratedImage: ...


def compose_config_prompt(config: dict[str, Any], variant: str | None) -> str:
    lines = ["[MODEL CONFIGURATION]"]
    for key in sorted(config):
        value = config[key]
        if value in (None, ""):
            continue
        lines.append(f"- {key}: {value}")
    if variant:
        lines.append(f"- model variant: {variant}")
    return "\n".join(lines)


class GeminiGateway:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.model = model or settings.gemini_model
        self.base_url = (base_url or settings.gemini_base_url).rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout or settings.gateway_timeout_seconds)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _request_body(
        self,
        image_base64: str,
        *,
        prompt: str | None,
        config: dict[str, Any] | None,
        aspect_ratio: str,
        quality: str | None,
        variant: str | None,
    ) -> dict[str, Any]:
        if config:
            text = compose_config_prompt(config, variant)
            aspect_ratio = str(config.get("aspectRatio") or aspect_ratio)
        else:
            text = prompt or ""

        return {
            "contents": [
                {
                    "parts": [
                        {"inlineData": {"mimeType": "image/jpeg", "data": strip_data_url(image_base64)}},
                        {"text": text},
                    ]
                }
            ],
            "generationConfig": {
                "responseModalities": ["IMAGE"],
                "imageConfig": {"aspectRatio": aspect_ratio, "imageSize": quality or "1K"},
            },
        }

    async def generate(
        self,
        image_base64: str,
        *,
        prompt: str | None = None,
        config: dict[str, Any] | None = None,
        aspect_ratio: str = "3:4",
        quality: str | None = None,
        variant: str | None = None,
    ) -> GeneratedImage:
        if not self.api_key:
            raise GenerationError("GEMINI_API_KEY is not configured")

        body = self._request_body(
            image_base64,
            prompt=prompt,
            config=config,
            aspect_ratio=aspect_ratio,
            quality=quality,
            variant=variant,
        )
        url = f"{self.base_url}/models/{self.model}:generateContent"

        try:
            response = await self._client.post(url, json=body, headers={"x-goog-api-key": self.api_key})
        except httpx.HTTPError as e:
            raise GenerationError(f"Gateway request failed: {e}") from e

        if response.status_code >= 400:
            raise GenerationError(_error_message(response))

        return _extract_image(response.json())


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        message = (payload.get("error") or {}).get("message")
        if message:
            return str(message)
    return f"Gateway returned HTTP {response.status_code}"


def _extract_image(payload: dict[str, Any]) -> GeneratedImage:
    candidates = payload.get("candidates") or []
    parts = ((candidates[0] if candidates else {}).get("content") or {}).get("parts") or []

    for part in parts:
        inline = part.get("inlineData")
        if not inline:
            continue
        data = inline.get("data") or ""
        if len(data) < MIN_IMAGE_DATA_LENGTH:
            logger.error("gateway_image_too_small length=%s", len(data))
            raise GenerationError("INVALID_IMAGE_DATA_TOO_SMALL")
        return GeneratedImage.from_base64(data, inline.get("mimeType") or "image/png")

    logger.error("gateway_no_image_data")
    raise GenerationError("RENDER_FAILED")

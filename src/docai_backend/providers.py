"""
Clients for the external generative text service.

Every failure mode (missing key, transport error, timeout, HTTP error,
unexpected response shape) is raised as :class:`ProviderError`; callers decide
how to degrade.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from .errors import ProviderError

logger = logging.getLogger(__name__)


class TextProvider(ABC):
    """Anything that can turn a prompt (and optionally an image) into text."""

    name = "provider"

    @property
    @abstractmethod
    def configured(self) -> bool:
        ...

    @abstractmethod
    def generate(self, prompt: str, image_base64: Optional[str] = None, mime_type: str = "image/jpeg") -> str:
        ...

    def close(self) -> None:
        pass


class GeminiProvider(TextProvider):
    """
    Google Gemini ``generateContent`` over REST.

    Text-only prompts go to the text model, prompts with an inline image to
    the vision model. Each call is bounded by ``timeout`` seconds.
    """

    name = "Gemini AI"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta/models",
        text_model: str = "gemini-pro",
        vision_model: str = "gemini-pro-vision",
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.text_model = text_model
        self.vision_model = vision_model
        self.timeout = timeout
        self.client = httpx.Client(
            timeout=httpx.Timeout(timeout),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _endpoint(self, model: str) -> str:
        return f"{self.base_url}/{model}:generateContent"

    def generate(self, prompt: str, image_base64: Optional[str] = None, mime_type: str = "image/jpeg") -> str:
        if not self.configured:
            raise ProviderError("AI service not configured")

        parts: List[Dict[str, Any]] = [{"text": prompt}]
        if image_base64:
            parts.append({"inline_data": {"mime_type": mime_type, "data": image_base64}})
        model = self.vision_model if image_base64 else self.text_model

        try:
            response = self.client.post(
                self._endpoint(model),
                params={"key": self.api_key},
                json={"contents": [{"parts": parts}]},
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ProviderError(f"AI service timed out after {self.timeout}s") from exc
        except httpx.HTTPStatusError as exc:
            raise ProviderError(f"AI service returned HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"AI service request failed: {exc}") from exc

        try:
            return response.json()["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ProviderError("AI service returned an unexpected response shape") from exc

    def close(self) -> None:
        self.client.close()

"""
Whiteboard interpretation via a vision-capable chat model.

The candidate's whiteboard arrives as a data URL (``data:image/png;base64,...``)
and is described in text so the voice agent can reason about it.
"""

from __future__ import annotations

import logging
from typing import Optional

from openai import APIError, APIStatusError, AsyncOpenAI, OpenAIError

from .errors import ImagePayloadTooLarge, VisionUnavailable
from .llm import build_async_client, get_openai_config


logger = logging.getLogger(__name__)


MAX_IMAGE_BYTES = 20 * 1024 * 1024

WHITEBOARD_PROMPT = """You are analyzing a whiteboard drawing from a technical interview. Describe what you see in detail, focusing on:
- Any diagrams, flowcharts, or visual representations
- Code or pseudocode written
- Algorithm designs or data structure drawings
- Problem-solving work or mathematical notation
- Any annotations or notes

Be specific and thorough in your description so that someone who cannot see the image can understand exactly what was drawn. If the whiteboard appears empty or has minimal content, state that clearly."""

FALLBACK_INTERPRETATION = "Unable to interpret the whiteboard image."


def estimate_image_bytes(image: str) -> int:
    """Decoded size of a base64 data URL (or raw base64 string)."""
    _, _, encoded = image.rpartition(",")
    encoded = encoded.strip()
    padding = encoded.count("=", max(0, len(encoded) - 2))
    return max(0, len(encoded) * 3 // 4 - padding)


class WhiteboardInterpreter:
    """Describes whiteboard snapshots. The OpenAI client is created on first use."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        max_bytes: int = MAX_IMAGE_BYTES,
    ) -> None:
        self._client = client
        self._model = model
        self.max_bytes = max_bytes

    def _resolve(self) -> tuple[AsyncOpenAI, str]:
        if self._client is None or self._model is None:
            model, azure_client = get_openai_config("OPENAI_VISION_MODEL")
            if self._client is None:
                self._client = build_async_client(azure_client)
            self._model = self._model or model
        return self._client, self._model

    async def interpret(self, image: str) -> str:
        """
        Describe ``image``.

        Raises:
            ValueError: If ``image`` is empty.
            ImagePayloadTooLarge: Over ``max_bytes`` locally, or rejected with 413.
            VisionUnavailable: Any other model or connection failure.
        """
        if not image or not image.strip():
            raise ValueError("Image data is required")

        size = estimate_image_bytes(image)
        if size > self.max_bytes:
            logger.warning("Whiteboard image rejected locally: %d bytes", size)
            raise ImagePayloadTooLarge(size)

        try:
            client, model = self._resolve()
        except OpenAIError as e:
            raise VisionUnavailable(f"Vision service is not configured: {e}") from e
        try:
            response = await client.chat.completions.create(
                model=model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": WHITEBOARD_PROMPT},
                            {"type": "image_url", "image_url": {"url": image, "detail": "high"}},
                        ],
                    }
                ],
                max_tokens=1000,
            )
        except APIStatusError as e:
            if e.status_code == 413:
                raise ImagePayloadTooLarge(size) from e
            logger.error("Vision request failed with HTTP %d: %s", e.status_code, e.message)
            raise VisionUnavailable(f"Vision service returned HTTP {e.status_code}.") from e
        except APIError as e:
            logger.error("Vision request failed: %s", e)
            raise VisionUnavailable(f"Vision service unreachable: {e.message}") from e

        content = response.choices[0].message.content if response.choices else None
        logger.info("Interpreted whiteboard image (%d bytes)", size)
        return content or FALLBACK_INTERPRETATION

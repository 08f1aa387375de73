"""Portrait image generation.

Turns a user's purchase records plus their gender, trait and style choices
into a text prompt and renders it with one of two providers:

- ``flux-schnell``: Together's FLUX.1-schnell over the REST images API.
- ``gemini``: Gemini image generation via google-genai.

Rendered images are written under the public directory and served
statically; ``cleanup_old_images`` removes them after ``max_age``.
"""

import asyncio
import base64
import logging
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from src.errors import PortraitGenerationError
from src.models import PurchaseHistoryRecord

logger = logging.getLogger(__name__)

TOGETHER_IMAGES_URL = "https://api.together.xyz/v1/images/generations"

DEFAULT_MODEL = "flux-schnell"
MODEL_CONFIG: dict[str, dict[str, str]] = {
    "flux-schnell": {
        "provider": "together",
        "model": "black-forest-labs/FLUX.1-schnell-Free",
    },
    "gemini": {
        "provider": "google-ai",
        "model": "gemini-2.0-flash-preview-image-generation",
    },
}

IMAGE_SIZE = 1024
_PORTRAIT_MARKER = "-portrait-"
_MAX_PROMPT_PRODUCTS = 30


@dataclass
class GeneratedImage:
    """A rendered portrait saved to disk."""

    url: str
    filename: str
    file_size: int
    model: str
    provider: str
    width: int = IMAGE_SIZE
    height: int = IMAGE_SIZE

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "filename": self.filename,
            "fileSize": self.file_size,
            "width": self.width,
            "height": self.height,
        }


def build_portrait_prompt(
    records: list[PurchaseHistoryRecord],
    gender: str = "Female",
    traits: list[str] | None = None,
    style: str = "realistic",
) -> str:
    """Describe a person through the things they bought.

    Product names are deduplicated in record order and capped so the
    prompt stays within provider limits.
    """
    products: list[str] = []
    for record in records:
        for name in record.product_names:
            if name not in products:
                products.append(name)
    products = products[:_MAX_PROMPT_PRODUCTS]

    parts = [f"A {style} style portrait of a {gender.lower()} person"]
    if traits:
        parts.append(f"who is {', '.join(traits)}")
    if products:
        parts.append(
            "whose appearance, clothing and surroundings reflect these purchases: "
            + "; ".join(products)
        )
    return " ".join(parts) + ". Single subject, centered, high detail."


class ImageService:
    """Render portraits and manage the files they are saved to."""

    def __init__(
        self,
        together_api_key: str = "",
        gemini_api_key: str = "",
        output_dir: str | Path = "public",
        timeout: float = 20,
        max_age_hours: float = 24,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._together_api_key = together_api_key
        self._gemini_api_key = gemini_api_key
        self._output_dir = Path(output_dir)
        self._timeout = timeout
        self._max_age_seconds = max_age_hours * 60 * 60
        self._transport = transport
        self._genai_client: genai.Client | None = None

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    async def generate(self, prompt: str, model_name: str = DEFAULT_MODEL) -> GeneratedImage:
        """Render a prompt with the requested model.

        Unknown model names fall back to ``flux-schnell``.

        Raises:
            PortraitGenerationError: Provider misconfigured, timed out, or
                returned no image.
        """
        config = MODEL_CONFIG.get(model_name, MODEL_CONFIG[DEFAULT_MODEL])
        provider = config["provider"]
        logger.info("Generating portrait with %s (%s)", config["model"], provider)
        logger.debug("Portrait prompt: %s", prompt)

        if provider == "together":
            render = self._generate_with_together(prompt, config["model"])
            prefix = "flux"
        else:
            render = self._generate_with_gemini(prompt, config["model"])
            prefix = "gemini"

        try:
            image_bytes = await asyncio.wait_for(render, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise PortraitGenerationError(
                provider,
                f"Image generation timed out after {self._timeout:g} seconds",
            ) from e

        return self._save_image(image_bytes, prefix, config["model"], provider)

    async def _generate_with_together(self, prompt: str, model: str) -> bytes:
        if not self._together_api_key:
            raise PortraitGenerationError("together", "TOGETHER_API_KEY not configured")
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    TOGETHER_IMAGES_URL,
                    headers={"Authorization": f"Bearer {self._together_api_key}"},
                    json={
                        "model": model,
                        "prompt": prompt,
                        "width": IMAGE_SIZE,
                        "height": IMAGE_SIZE,
                        "steps": 4,
                        "n": 1,
                        "response_format": "b64_json",
                    },
                )
                response.raise_for_status()
                data = response.json().get("data") or []
        except (httpx.HTTPError, ValueError) as e:
            raise PortraitGenerationError("together", str(e)) from e

        if not data or not data[0].get("b64_json"):
            raise PortraitGenerationError("together", "No image data in response")
        return base64.b64decode(data[0]["b64_json"])

    def _gemini(self) -> genai.Client:
        if self._genai_client is None:
            self._genai_client = genai.Client(api_key=self._gemini_api_key)
        return self._genai_client

    async def _generate_with_gemini(self, prompt: str, model: str) -> bytes:
        if not self._gemini_api_key:
            raise PortraitGenerationError("google-ai", "GEMINI_API_KEY not configured")

        try:
            response = await self._gemini().aio.models.generate_content(
                model=model,
                contents=prompt,
                config=types.GenerateContentConfig(response_modalities=["TEXT", "IMAGE"]),
            )
        except genai_errors.APIError as e:
            raise PortraitGenerationError("google-ai", str(e)) from e

        if not response.candidates:
            raise PortraitGenerationError("google-ai", "No candidates in response")
        content = response.candidates[0].content
        if content is None or not content.parts:
            raise PortraitGenerationError("google-ai", "No content parts in response")
        for part in content.parts:
            if part.inline_data and part.inline_data.data:
                return part.inline_data.data
        raise PortraitGenerationError("google-ai", "No image data in response")

    def _save_image(
        self, image_bytes: bytes, prefix: str, model: str, provider: str,
    ) -> GeneratedImage:
        self._output_dir.mkdir(parents=True, exist_ok=True)
        filename = f"{prefix}{_PORTRAIT_MARKER}{secrets.token_hex(4)}.png"
        (self._output_dir / filename).write_bytes(image_bytes)
        logger.info("Saved %s image %s (%d bytes)", prefix, filename, len(image_bytes))
        return GeneratedImage(
            url=f"/{filename}",
            filename=filename,
            file_size=len(image_bytes),
            model=model,
            provider=provider,
        )

    def cleanup_old_images(self) -> int:
        """Delete saved portraits older than the max age.

        Returns:
            Number of files removed.
        """
        if not self._output_dir.is_dir():
            return 0
        cutoff = time.time() - self._max_age_seconds
        removed = 0
        for path in self._output_dir.iterdir():
            if _PORTRAIT_MARKER not in path.name or not path.is_file():
                continue
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
                    logger.info("Cleaned up old image %s", path.name)
            except OSError as e:
                logger.warning("Failed to clean up %s: %s", path.name, e)
        return removed

    async def run_cleanup(self, interval_seconds: float) -> None:
        """Clean up immediately, then every ``interval_seconds`` until cancelled."""
        while True:
            self.cleanup_old_images()
            await asyncio.sleep(interval_seconds)

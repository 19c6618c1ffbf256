"""OpenAI image generation for story pages, covers and identity portraits"""

import base64
import os
from typing import Optional

import httpx
from models import ImageMode
from pydantic import BaseModel

from shared.generation_cost_logger import CostTracking, call_with_cost
from shared.llm_client import LLMError


class ImageGenerationError(LLMError):
    """Image call failed; status_code is set when the provider returned one"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, provider="openai", status_code=status_code)


class ImageSettings(BaseModel):
    model: str
    quality: Optional[str] = None
    size: str
    n: int = 1


PAGE_IMAGE_SETTINGS = {
    ImageMode.FAST: ImageSettings(model="gpt-image-1-mini", quality="low", size="1024x1024"),
    ImageMode.BEST: ImageSettings(model="gpt-image-1", quality="high", size="1536x1024"),
}

COVER_IMAGE_SETTINGS = {
    ImageMode.FAST: ImageSettings(model="gpt-image-1-mini", quality="medium", size="1024x1024"),
    ImageMode.BEST: ImageSettings(model="gpt-image-1", quality="high", size="1536x1024"),
}

PORTRAIT_IMAGE_SETTINGS = ImageSettings(model="gpt-image-1", size="1024x1536")


def get_page_image_settings(mode: ImageMode) -> ImageSettings:
    return PAGE_IMAGE_SETTINGS[ImageMode(mode)]


def get_cover_image_settings(mode: ImageMode) -> ImageSettings:
    return COVER_IMAGE_SETTINGS[ImageMode(mode)]


def decode_image(b64_data: str) -> bytes:
    return base64.b64decode(b64_data)


class OpenAIImageClient:
    """Service for generating images through /v1/images/generations"""

    def __init__(
        self,
        base_url: str = None,
        timeout: float = 180.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or os.getenv("OPENAI_BASE_URL") or "https://api.openai.com").rstrip(
            "/"
        )
        self.timeout = timeout
        self.transport = transport

    @property
    def api_key(self) -> Optional[str]:
        return os.getenv("OPENAI_API_KEY")

    async def generate(
        self, prompt: str, settings: ImageSettings, tracking: Optional[CostTracking] = None
    ) -> str:
        """
        Generate one image.

        Returns:
            Base64 image data (may be empty when the provider returned no image)

        Raises:
            ImageGenerationError: Missing key or provider failure
        """
        api_key = self.api_key
        if not api_key:
            raise ImageGenerationError("OPENAI_API_KEY is not set.")

        body = {"model": settings.model, "prompt": prompt, "size": settings.size, "n": settings.n}
        if settings.quality:
            body["quality"] = settings.quality

        async def create_response() -> dict:
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                    response = await client.post(
                        f"{self.base_url}/v1/images/generations",
                        headers={
                            "Authorization": f"Bearer {api_key}",
                            "Content-Type": "application/json",
                        },
                        json=body,
                    )
            except httpx.TimeoutException:
                raise ImageGenerationError("Image generation timed out", status_code=408)
            except httpx.RequestError as e:
                raise ImageGenerationError(f"Image generation request failed: {e}", status_code=503)

            if response.status_code != 200:
                raise ImageGenerationError(
                    f"Image generation failed: {response.status_code} {response.text[:500]}",
                    status_code=response.status_code,
                )
            try:
                return response.json()
            except ValueError:
                raise ImageGenerationError("Image generation returned a non-JSON body", status_code=503)

        result = await call_with_cost(settings.model, create_response, tracking)
        try:
            return result["data"][0].get("b64_json") or ""
        except (KeyError, IndexError, TypeError, AttributeError):
            return ""


# Global instance
image_client = OpenAIImageClient()

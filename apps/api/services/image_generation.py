"""Image generation collaborator (opaque to the entitlement core)."""

from __future__ import annotations

from abc import ABC, abstractmethod
import base64
from dataclasses import dataclass
from typing import List, Optional, Tuple

from fastapi import HTTPException
from openai import AsyncOpenAI

from config import settings

# (filename, content, mime type)
ImageInput = Tuple[str, bytes, str]


class ImageGenerationError(Exception):
    """The provider failed or returned no image."""


@dataclass
class GeneratedImage:
    url: str
    prompt: str
    description: str = ""


def build_prompt(prompt: str, *, image_count: int, partial: bool) -> str:
    if partial:
        return (
            f"{prompt}. Keep the person, face and pose exactly as they are. "
            "Only change the background and the lighting/mood. Generate a new image."
        )
    if image_count >= 2:
        return f"{prompt}. Combine these two images creatively while following the instructions. Generate a new image."
    if image_count == 1:
        return f"{prompt}. Edit or transform this image based on the instructions. Generate a new image."
    return f"Generate an image: {prompt}"


class ImageGenerator(ABC):
    """Interface the generation router depends on."""

    @abstractmethod
    async def generate(self, *, prompt: str, images: List[ImageInput]) -> GeneratedImage:
        raise NotImplementedError


class OpenAIImageGenerator(ImageGenerator):
    def __init__(self, api_key: str, model: str):
        self.client = AsyncOpenAI(api_key=api_key)
        self.model = model

    async def generate(self, *, prompt: str, images: List[ImageInput]) -> GeneratedImage:
        if images:
            response = await self.client.images.edit(model=self.model, image=list(images), prompt=prompt)
        else:
            response = await self.client.images.generate(model=self.model, prompt=prompt)

        first = response.data[0] if response.data else None
        if first is None or not first.b64_json:
            raise ImageGenerationError("The model did not return any images")
        # Reject corrupt payloads.
        base64.b64decode(first.b64_json, validate=True)
        return GeneratedImage(
            url=f"data:image/png;base64,{first.b64_json}",
            prompt=prompt,
            description=getattr(first, "revised_prompt", None) or "",
        )


_generator: Optional[ImageGenerator] = None


def get_image_generator() -> ImageGenerator:
    """FastAPI dependency returning the process-wide generator."""
    global _generator
    api_key = (settings.OPENAI_API_KEY or "").strip()
    if not api_key:
        raise HTTPException(status_code=503, detail="Image generation is not configured.")
    if _generator is None:
        _generator = OpenAIImageGenerator(api_key=api_key, model=settings.IMAGE_MODEL)
    return _generator

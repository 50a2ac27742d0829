"""Generation services: Gemini for real runs, Pillow placeholders for tests."""
from __future__ import annotations

import io
import logging
from typing import Protocol

from PIL import Image, ImageDraw, ImageFont
from pydantic import ValidationError

from .config import IMAGE_MODEL, SCENE_MODEL, Config
from .models import ReferenceImage, Scene
from .retry import QuotaExceededError
from .scene import FALLBACK_SCENES
from .utils import gemini_client

log = logging.getLogger(__name__)

PLACEHOLDER_SIZE = (1024, 1024)


class GenerationError(RuntimeError):
    """The service answered, but without a usable scene or image."""


class GenerationService(Protocol):
    async def generate_scene(self, prompt: str, reference: ReferenceImage) -> Scene: ...

    async def generate_image(self, prompt: str, reference: ReferenceImage) -> bytes: ...


class GeminiService:
    """Scene and image calls against the Gemini API."""

    def __init__(self, config: Config, scene_model: str = SCENE_MODEL, image_model: str = IMAGE_MODEL):
        self.client = gemini_client.make_client(config.gemini_api_key)
        self.scene_model = scene_model
        self.image_model = image_model

    async def generate_scene(self, prompt: str, reference: ReferenceImage) -> Scene:
        try:
            raw = await gemini_client.generate_json(
                self.client,
                self.scene_model,
                prompt,
                reference.data,
                reference.mime_type,
                gemini_client.SCENE_SCHEMA,
            )
        except Exception as e:
            if gemini_client.is_quota_error(e):
                raise QuotaExceededError(str(e)) from e
            raise

        if not raw.strip():
            raise GenerationError("Scene call returned an empty response.")
        try:
            return Scene.model_validate_json(raw)
        except ValidationError as e:
            raise GenerationError(f"Scene response failed validation: {e.error_count()} error(s)") from e

    async def generate_image(self, prompt: str, reference: ReferenceImage) -> bytes:
        try:
            data = await gemini_client.generate_image(
                self.client,
                self.image_model,
                prompt,
                reference.data,
                reference.mime_type,
            )
        except Exception as e:
            if gemini_client.is_quota_error(e):
                raise QuotaExceededError(str(e)) from e
            raise

        if not data:
            raise GenerationError("No image data in response.")
        return data


class PlaceholderService:
    """Offline service: fixed scenes and prompt-captioned images, no API needed."""

    def __init__(self, size: tuple[int, int] = PLACEHOLDER_SIZE):
        self.size = size
        self._scene_calls = 0

    async def generate_scene(self, prompt: str, reference: ReferenceImage) -> Scene:
        scene = FALLBACK_SCENES[self._scene_calls % len(FALLBACK_SCENES)]
        self._scene_calls += 1
        return scene

    async def generate_image(self, prompt: str, reference: ReferenceImage) -> bytes:
        return render_placeholder(prompt, reference.data, self.size)


def render_placeholder(prompt: str, reference: bytes, size: tuple[int, int] = PLACEHOLDER_SIZE) -> bytes:
    """Draw the reference thumbnail with the prompt's first words underneath."""
    width, height = size
    img = Image.new("RGB", (width, height), color=(245, 245, 245))
    draw = ImageDraw.Draw(img)

    try:
        ref = Image.open(io.BytesIO(reference))
        ref.thumbnail((width // 2, height // 2))
        img.paste(ref.convert("RGB"), ((width - ref.width) // 2, height // 8))
    except OSError as e:
        log.debug("Reference not drawable in placeholder: %s", e)

    try:
        font = ImageFont.truetype("/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf", 24)
    except OSError:
        font = ImageFont.load_default()

    # Simple word wrap
    words = prompt.split()[:60]
    lines: list[str] = []
    current = ""
    for w in words:
        test = f"{current} {w}".strip()
        bbox = draw.textbbox((0, 0), test, font=font)
        if bbox[2] > width - 80:
            lines.append(current)
            current = w
        else:
            current = test
    if current:
        lines.append(current)

    y = height * 5 // 8
    for line in lines:
        if y > height - 40:
            break
        bbox = draw.textbbox((0, 0), line, font=font)
        x = (width - bbox[2]) // 2
        draw.text((x, y), line, fill=(40, 40, 40), font=font)
        y += 32

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()

"""Gemini structured-output and image-output calls."""
from __future__ import annotations

import logging

from google import genai
from google.genai import errors, types

log = logging.getLogger(__name__)

_QUOTA_MARKERS = ("quota", "rate limit", "resource_exhausted", "too many requests")

# JSON schema handed to the scene call; mirrors models.Scene
SCENE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "aesthetic": {"type": "STRING", "description": "The chosen aesthetic style"},
        "setting": {"type": "STRING", "description": "Detailed description of the location/environment"},
        "mood": {"type": "STRING", "description": "The overall atmosphere and emotional tone"},
        "lighting": {"type": "STRING", "description": "Specific lighting style and quality"},
        "styling": {"type": "STRING", "description": "Accessories, hair, makeup, and styling choices"},
        "model_description": {"type": "STRING", "description": "Description of the model including pose and expression"},
        "composition": {"type": "STRING", "description": "Camera angle, framing, and visual composition"},
        "props": {
            "type": "ARRAY",
            "items": {"type": "STRING"},
            "description": "List of relevant props and set pieces",
        },
    },
    "required": [
        "aesthetic", "setting", "mood", "lighting", "styling",
        "model_description", "composition", "props",
    ],
}


def make_client(api_key: str) -> genai.Client:
    if not api_key:
        raise ValueError("GEMINI_API_KEY is not set.")
    return genai.Client(api_key=api_key)


def is_quota_error(exc: BaseException) -> bool:
    """True for 429 / RESOURCE_EXHAUSTED style responses."""
    if isinstance(exc, errors.APIError) and exc.code == 429:
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _QUOTA_MARKERS)


def _image_part(data: bytes, mime_type: str) -> types.Part:
    return types.Part(inline_data=types.Blob(mime_type=mime_type, data=data))


async def generate_json(
    client: genai.Client,
    model: str,
    prompt: str,
    image: bytes,
    mime_type: str,
    schema: dict,
) -> str:
    """Send prompt + reference image, return the raw JSON text (may be empty)."""
    log.debug("Structured call to %s (%d prompt chars)", model, len(prompt))
    response = await client.aio.models.generate_content(
        model=model,
        contents=[_image_part(image, mime_type), prompt],
        config=types.GenerateContentConfig(
            response_mime_type="application/json",
            response_schema=schema,
        ),
    )
    return response.text or ""


async def generate_image(
    client: genai.Client,
    model: str,
    prompt: str,
    image: bytes,
    mime_type: str,
) -> bytes | None:
    """Send prompt + reference image, return the first inline image in the reply."""
    log.debug("Image call to %s (%d prompt chars)", model, len(prompt))
    response = await client.aio.models.generate_content(
        model=model,
        contents=[prompt, _image_part(image, mime_type)],
        config=types.GenerateContentConfig(response_modalities=["TEXT", "IMAGE"]),
    )
    for candidate in response.candidates or []:
        content = candidate.content
        if content is None:
            continue
        for part in content.parts or []:
            if part.inline_data is not None and part.inline_data.data:
                return part.inline_data.data
            if part.text:
                log.debug("Model text alongside image: %s", part.text[:200])
    return None

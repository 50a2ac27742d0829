"""Prompt text for the scene call and the five image slots."""
from __future__ import annotations

import re
from typing import Optional

from .models import Item, Scene, StepKind

# Storefront export columns used in prompts
TITLE = "Title"
COLOR = "Option2 Value"
BODY = "Body (HTML)"
TAGS = "Tags"

AESTHETIC_STYLES = [
    "Boho", "60s housewife", "60s LA", "Woodstock", "French new wave", "French noir", "Old money",
    "Beatnik Chic", "Ivy League/Preppy", "Utility/Workwear", "Hollywood Glamour (Golden Age)",
    "Safari/Explorer", "Minimalist Modern", "Art Deco Elegance", "Sporty Luxe", "Gothic Romance",
    "Victorian/Edwardian Inspired", "Rocker/Rebel", "Nautical", "Western/Cowboy", "Flapper (1920s)",
    "Mod (Mid-60s British)", "Cottagecore", "Androgynous Tailoring", "Punk (Early)",
    "Savile Row Bespoke", "Mediterranean Resort",
    "Italian Riviera (1950s)", "Parisian Atelier", "English Country Estate", "New York Socialite (1940s)",
    "Scandinavian Hygge", "Japanese Minimalism", "Russian Ballet", "Moroccan Bohemian",
    "Swiss Alpine Chic", "Cuban Havana (1950s)",
]

# keyword (English or Turkish) -> material name
_MATERIALS = [
    (("pamuk", "cotton"), "cotton"),
    (("yün", "wool"), "wool"),
    (("kaşmir", "cashmere"), "cashmere"),
    (("ipek", "silk"), "silk"),
    (("triko", "knit"), "knit"),
    (("denim", "kot"), "denim"),
    (("polyester",), "polyester"),
    (("elastan", "spandex"), "stretch"),
    (("viskon", "viscose"), "viscose"),
]

_TAG_RE = re.compile(r"<[^>]*>")

TECHNICAL_SPECS = (
    "Professional photography quality with natural lighting, accurate colors, "
    "and realistic proportions."
)


def strip_html(text: str) -> str:
    return _TAG_RE.sub("", text or "").strip()


def extract_material_info(title: str, description: str) -> str:
    """Return a comma-separated list of fabrics mentioned in title/description."""
    text = f"{title} {description}".lower()
    found = [name for keywords, name in _MATERIALS if any(k in text for k in keywords)]
    return ", ".join(found)


def _garment(item: Item) -> tuple[str, str, str]:
    color = item.value(COLOR)
    materials = extract_material_info(item.title, strip_html(item.value(BODY)))
    return item.title, color, materials


def with_technical_specs(prompt: str) -> str:
    return f"{prompt}\n\n{TECHNICAL_SPECS}"


# ---------------------------------------------------------------------------
# Scene concept
# ---------------------------------------------------------------------------

def scene_prompt(item: Item, aesthetic: str) -> str:
    title, color, _ = _garment(item)
    return f"""### AESTHETIC INPUT
{aesthetic}

### FOCUS GARMENT
Garment: {title} in {color} color
- Style characteristics: {item.value(TAGS)}
- Description: {strip_html(item.value(BODY))}

### PHOTOSHOOT SCENE
Create a high-fashion, editorial photoshoot concept inspired by the {aesthetic} aesthetic.
- The photoshoot is centered around the garment described.
- Set the scene according to the aesthetic's emotional tone and cultural references.
- The model poses naturally; the garment is highlighted through lighting, motion and styling.

### VISUAL STYLE
- Lighting: natural light, golden hour, or soft indoor shadows
- Film look: 35mm analog grain, soft focus, vintage finish
- Mood: editorial yet cinematic, intimate and timeless

Prioritize garment accuracy: fabric, shape and color fidelity are crucial.
Analyze the provided garment image and describe one photoshoot concept that authentically
represents the {aesthetic} aesthetic while making the garment the hero of the scene."""


# ---------------------------------------------------------------------------
# White-background product shots
# ---------------------------------------------------------------------------

def garment_full_prompt(item: Item, scene: Optional[Scene] = None) -> str:
    title, color, materials = _garment(item)
    return with_technical_specs(f"""Create a professional product photograph of the {title} in {color} color floating against a pure white background.

Full garment view:
- Complete shot showing the entire garment from top to bottom, centered, natural proportions
- Natural drape with a subtle shadow beneath for depth
- Soft, even studio lighting
- Hyper-realistic fabric texture showing {materials or 'material details'}
- No models, hangers, or props - garment only

Using the provided reference image, replicate the exact design, color, and overall appearance.""")


def garment_closeup_prompt(item: Item, scene: Optional[Scene] = None) -> str:
    title, color, materials = _garment(item)
    return with_technical_specs(f"""Create a detailed close-up product photograph of the {title} in {color} color against a pure white background.

Close-up details:
- Tight crop on fabric texture, stitching and construction details
- Highlight buttons, zippers, seams or patterns
- Sharp focus with shallow depth of field
- Capture {materials or 'fabric'} texture authentically
- No full garment view

Using the provided reference image, identify and highlight the most interesting construction or material details.""")


def garment_angular_prompt(item: Item, scene: Optional[Scene] = None) -> str:
    title, color, materials = _garment(item)
    return with_technical_specs(f"""Create a professional product photograph of the {title} in {color} color in an artistic angular or folded presentation against a pure white background.

Angular/folded view:
- Garment folded, laid flat, or positioned at an interesting angle
- Clean, minimalist composition with negative space
- Soft lighting creating subtle shadows for dimension
- Hyper-realistic fabric texture showing {materials or 'material details'}
- No models, hangers, or props

Using the provided reference image, ensure exact color and design accuracy.""")


# ---------------------------------------------------------------------------
# Styled photoshoot
# ---------------------------------------------------------------------------

def photoshoot_prompt(item: Item, scene: Optional[Scene]) -> str:
    if scene is None:
        raise ValueError("Photoshoot prompts need a scene.")
    title, color, _ = _garment(item)
    return with_technical_specs(f"""An atmospheric, grainy 35mm analog film photograph with a timeless aesthetic.

Clothing fidelity: replicate the piece of clothing from the reference image with the highest possible accuracy,
including fabric texture, drape, color, patterns and logos. The clothing is the central element of the image.

Scene:
The model wearing the {title} in {color} color is positioned in {scene.setting}. The scene is illuminated by
{scene.lighting}, creating a {scene.mood} atmosphere that embodies the {scene.aesthetic} aesthetic.
The styling includes {scene.styling}. The model {scene.model_description}. The composition follows
{scene.composition} with authentic props including {', '.join(scene.props)}.

Avoid: digital artifacts, modern technology, oversaturated or cool tones, Polaroid borders, generic studio portraits.""")


# ---------------------------------------------------------------------------
# Simplified prompts for the last attempt
# ---------------------------------------------------------------------------

def fallback_prompt(kind: StepKind, item: Item) -> str:
    title, color, _ = _garment(item)
    if kind is StepKind.GARMENT_FULL:
        return (f"Create a professional product photograph of the {title} in {color} color floating against a pure "
                "white background. Full shot showing the complete garment with natural drape. Studio lighting with "
                "soft shadows. Using the reference image, match exact colors and design details.")
    if kind is StepKind.GARMENT_CLOSEUP:
        return (f"Create a detailed close-up photograph of the {title} in {color} color against a pure white "
                "background, focusing on fabric texture and stitching. Using the reference image, replicate exact "
                "construction details.")
    if kind is StepKind.GARMENT_ANGULAR:
        return (f"Create an artistic product photograph of the {title} in {color} color folded or positioned at an "
                "angle against a pure white background. Using the reference image, maintain exact colors and design.")
    return (f"Create a fashion photograph of a model wearing the {title} in {color} color. Professional fashion "
            "photography with natural lighting. The garment should be the main focus.")

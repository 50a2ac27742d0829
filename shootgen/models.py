"""Records passed between the loader, the per-product pipeline and the report."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

LOCAL_URL_PREFIX = "file://"


@dataclass(frozen=True)
class Item:
    """One product (garment) from the storefront export."""

    item_id: str  # storefront handle
    title: str
    reference: str  # image URL or local path
    fields: Mapping[str, str] = field(default_factory=dict)

    def value(self, name: str, default: str = "") -> str:
        return (self.fields.get(name) or default).strip()


@dataclass(frozen=True)
class ReferenceImage:
    data: bytes
    mime_type: str = "image/webp"
    local_path: Optional[Path] = None


class Scene(BaseModel):
    """Creative direction for the styled photoshoot images."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    aesthetic: str = Field(min_length=1, description="The chosen aesthetic style")
    setting: str = Field(min_length=1, description="Detailed description of the location/environment")
    mood: str = Field(min_length=1, description="The overall atmosphere and emotional tone")
    lighting: str = Field(min_length=1, description="Specific lighting style and quality")
    styling: str = Field(min_length=1, description="Accessories, hair, makeup, and styling choices")
    model_description: str = Field(min_length=1, description="Description of the model including pose and expression")
    composition: str = Field(min_length=1, description="Camera angle, framing, and visual composition")
    props: list[str] = Field(min_length=1, description="List of relevant props and set pieces")

    @field_validator("props")
    @classmethod
    def _props_not_blank(cls, value: list[str]) -> list[str]:
        cleaned = [p.strip() for p in value]
        if any(not p for p in cleaned):
            raise ValueError("props must not contain blank entries")
        return cleaned


class StepKind(str, Enum):
    GARMENT_FULL = "garment_full"
    GARMENT_CLOSEUP = "garment_closeup"
    GARMENT_ANGULAR = "garment_angular"
    PHOTOSHOOT_1 = "photoshoot_1"
    PHOTOSHOOT_2 = "photoshoot_2"


PromptBuilder = Callable[[Item, Optional[Scene]], str]
FallbackPromptBuilder = Callable[[Item], str]


@dataclass(frozen=True)
class GenerationStep:
    """One fixed output slot per product."""

    kind: StepKind
    label: str
    uses_scene: bool
    build_prompt: PromptBuilder
    build_fallback_prompt: FallbackPromptBuilder


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class StepOutcome:
    kind: StepKind
    status: StepStatus
    artifact_path: Optional[Path] = None
    error: Optional[str] = None
    attempts_used: int = 0
    scene_regenerations_used: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status is StepStatus.SUCCESS

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "status": self.status.value,
            "artifact_path": str(self.artifact_path) if self.artifact_path else None,
            "error": self.error,
            "attempts_used": self.attempts_used,
            "scene_regenerations_used": self.scene_regenerations_used,
        }


@dataclass(frozen=True)
class ItemResult:
    item_id: str
    title: str
    scene_used: Scene
    outcomes: tuple[StepOutcome, ...]
    published_urls: tuple[tuple[StepKind, Optional[str]], ...]
    scene_fallbacks: int = 0

    @property
    def succeeded_steps(self) -> int:
        return sum(1 for o in self.outcomes if o.succeeded)

    @property
    def successful_uploads(self) -> int:
        return sum(1 for _, url in self.published_urls if url and not url.startswith(LOCAL_URL_PREFIX))

    @property
    def fully_succeeded(self) -> bool:
        return bool(self.outcomes) and self.succeeded_steps == len(self.outcomes)

    def url_for(self, kind: StepKind) -> Optional[str]:
        for k, url in self.published_urls:
            if k is kind:
                return url
        return None

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "title": self.title,
            "scene_used": self.scene_used.model_dump(),
            "scene_fallbacks": self.scene_fallbacks,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "published_urls": [{"kind": k.value, "url": url} for k, url in self.published_urls],
            "succeeded_steps": self.succeeded_steps,
            "successful_uploads": self.successful_uploads,
        }


@dataclass(frozen=True)
class SkippedItem:
    item_id: str
    title: str
    reason: str

    def to_dict(self) -> dict:
        return {"item_id": self.item_id, "title": self.title, "skipped": True, "reason": self.reason}


ReportEntry = Union[ItemResult, SkippedItem]


@dataclass
class BatchReport:
    entries: list[ReportEntry] = field(default_factory=list)

    def add(self, entry: ReportEntry) -> None:
        self.entries.append(entry)

    @property
    def results(self) -> list[ItemResult]:
        return [e for e in self.entries if isinstance(e, ItemResult)]

    @property
    def skipped(self) -> list[SkippedItem]:
        return [e for e in self.entries if isinstance(e, SkippedItem)]

    @property
    def succeeded_count(self) -> int:
        return sum(1 for r in self.results if r.fully_succeeded)

    @property
    def partial_count(self) -> int:
        return sum(1 for r in self.results if 0 < r.succeeded_steps < len(r.outcomes))

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if r.succeeded_steps == 0)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    def summary(self) -> dict:
        return {
            "items": len(self.entries),
            "succeeded": self.succeeded_count,
            "partial": self.partial_count,
            "failed": self.failed_count,
            "skipped": self.skipped_count,
            "images_generated": sum(r.succeeded_steps for r in self.results),
            "images_uploaded": sum(r.successful_uploads for r in self.results),
        }

    def to_dict(self) -> dict:
        return {"summary": self.summary(), "entries": [e.to_dict() for e in self.entries]}

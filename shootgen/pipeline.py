"""Per-product generation pipeline: reference → scene → five images → publish."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

from . import prompts
from .config import MAX_ATTEMPTS, MAX_QUOTA_PAUSES, MAX_SCENE_REGENERATIONS, QUOTA_BACKOFF
from .models import (
    GenerationStep,
    Item,
    ItemResult,
    ReferenceImage,
    Scene,
    StepKind,
    StepOutcome,
    StepStatus,
)
from .products import ReferenceImageError, fetch_reference
from .publish import PublishAdapter, local_placeholder
from .retry import BackoffPolicy, CallResult, QuotaPause, RetryExecutor
from .scene import SceneResolver
from .utils.workspace import Workspace

log = logging.getLogger(__name__)

SCENES_FILE = "photoshoot_scenes.json"
METADATA_FILE = "metadata.json"


class ItemSkipped(Exception):
    """The product cannot be processed at all (no reference image)."""

    def __init__(self, item: Item, reason: str):
        super().__init__(f"{item.item_id}: {reason}")
        self.item = item
        self.reason = reason


class StepState(str, Enum):
    PENDING = "pending"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


_TRANSITIONS = {
    StepState.PENDING: {StepState.ATTEMPTING},
    StepState.ATTEMPTING: {StepState.SUCCEEDED, StepState.EXHAUSTED},
    StepState.SUCCEEDED: set(),
    StepState.EXHAUSTED: set(),
}


class StepStateError(RuntimeError):
    pass


@dataclass
class StepRun:
    """Tracks one step through PENDING → ATTEMPTING → SUCCEEDED | EXHAUSTED."""

    step: GenerationStep
    state: StepState = StepState.PENDING
    scene_regenerations: int = 0

    def advance(self, new_state: StepState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise StepStateError(f"{self.step.kind.value}: cannot go from {self.state.value} to {new_state.value}")
        self.state = new_state


def _fallback_builder(kind: StepKind):
    return partial(prompts.fallback_prompt, kind)


def build_default_steps() -> tuple[GenerationStep, ...]:
    """The five output slots, in output numbering order."""
    return (
        GenerationStep(StepKind.GARMENT_FULL, "Full View - White Background", False,
                       prompts.garment_full_prompt, _fallback_builder(StepKind.GARMENT_FULL)),
        GenerationStep(StepKind.GARMENT_CLOSEUP, "Close-up Details - White Background", False,
                       prompts.garment_closeup_prompt, _fallback_builder(StepKind.GARMENT_CLOSEUP)),
        GenerationStep(StepKind.GARMENT_ANGULAR, "Angular/Folded View - White Background", False,
                       prompts.garment_angular_prompt, _fallback_builder(StepKind.GARMENT_ANGULAR)),
        GenerationStep(StepKind.PHOTOSHOOT_1, "Styled Photoshoot Scene 1", True,
                       prompts.photoshoot_prompt, _fallback_builder(StepKind.PHOTOSHOOT_1)),
        GenerationStep(StepKind.PHOTOSHOOT_2, "Styled Photoshoot Scene 2", True,
                       prompts.photoshoot_prompt, _fallback_builder(StepKind.PHOTOSHOOT_2)),
    )


DEFAULT_STEPS = build_default_steps()


@dataclass
class _SceneState:
    """The item's current scene and the regeneration budget spent on it."""

    scene: Scene
    history: list[Scene] = field(default_factory=list)
    regenerations: int = 0
    fallbacks: int = 0


class ItemPipeline:
    """Runs every declared step for one product and collects an ItemResult."""

    def __init__(
        self,
        service,
        executor: RetryExecutor,
        resolver: SceneResolver,
        publisher: PublishAdapter,
        workspace: Workspace,
        *,
        steps: Sequence[GenerationStep] = DEFAULT_STEPS,
        max_attempts: int = MAX_ATTEMPTS,
        backoff: BackoffPolicy | None = None,
        max_scene_regenerations: int = MAX_SCENE_REGENERATIONS,
        quota_backoff: float = QUOTA_BACKOFF,
        max_quota_pauses: int = MAX_QUOTA_PAUSES,
        fetch: Callable[[Item, Workspace], Awaitable[ReferenceImage]] = fetch_reference,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        progress_cb: Callable[[str], None] | None = None,
    ):
        if not steps:
            raise ValueError("At least one generation step is required.")
        self.service = service
        self.executor = executor
        self.resolver = resolver
        self.publisher = publisher
        self.workspace = workspace
        self.steps = tuple(steps)
        self.max_attempts = max_attempts
        self.backoff = backoff or BackoffPolicy()
        self.max_scene_regenerations = max_scene_regenerations
        self.quota_backoff = quota_backoff
        self.max_quota_pauses = max_quota_pauses
        self._fetch = fetch
        self._sleep = sleep
        self.progress_cb = progress_cb or (lambda msg: None)

    async def run(self, item: Item) -> ItemResult:
        self.progress_cb(f"🧵 {item.title} ({item.item_id})")

        try:
            reference = await self._fetch(item, self.workspace)
        except ReferenceImageError as e:
            self.progress_cb(f"  ⚠ Skipping: {e}")
            raise ItemSkipped(item, str(e)) from e

        scenes = await self._resolve_initial_scene(item, reference)
        out_dir = self.workspace.generated_dir(item.item_id)

        outcomes: list[StepOutcome] = []
        artifacts: dict[StepKind, bytes] = {}
        for index, step in enumerate(self.steps, start=1):
            outcome, data = await self._run_step(index, step, item, reference, scenes, out_dir)
            outcomes.append(outcome)
            if data is not None:
                artifacts[step.kind] = data

        published = await self._publish(item, outcomes, artifacts)

        result = ItemResult(
            item_id=item.item_id,
            title=item.title,
            scene_used=scenes.scene,
            outcomes=tuple(outcomes),
            published_urls=tuple(published),
            scene_fallbacks=scenes.fallbacks,
        )
        self._save_sidecars(item, scenes, result)
        self.progress_cb(
            f"  ✅ {result.succeeded_steps}/{len(outcomes)} images generated, "
            f"{result.successful_uploads} uploaded"
        )
        return result

    # ------------------------------------------------------------------
    # Scene
    # ------------------------------------------------------------------

    async def _resolve_initial_scene(self, item: Item, reference: ReferenceImage) -> _SceneState:
        self.progress_cb("  🎨 Resolving photoshoot scene...")
        resolution = await self.resolver.resolve(item, reference, ordinal=0)
        state = _SceneState(scene=resolution.scene, history=[resolution.scene])
        if resolution.used_fallback:
            state.fallbacks += 1
            self.progress_cb(f"  ⚠ Scene generation failed, using fallback '{resolution.scene.aesthetic}'")
        else:
            self.progress_cb(f"  Scene: {resolution.scene.aesthetic} / {resolution.scene.setting[:60]}")
        self.workspace.save_json(
            self.workspace.product_dir(item.item_id),
            SCENES_FILE,
            [s.model_dump() for s in state.history],
        )
        return state

    async def _regenerate_scene(self, item: Item, reference: ReferenceImage, scenes: _SceneState) -> bool:
        if scenes.regenerations >= self.max_scene_regenerations:
            log.info("%s: scene regeneration cap (%d) reached", item.item_id, self.max_scene_regenerations)
            return False
        scenes.regenerations += 1
        self.progress_cb(
            f"  🔄 Regenerating scene ({scenes.regenerations}/{self.max_scene_regenerations})..."
        )
        resolution = await self.resolver.resolve(item, reference, ordinal=scenes.regenerations)
        if resolution.used_fallback:
            scenes.fallbacks += 1
        scenes.scene = resolution.scene
        scenes.history.append(resolution.scene)
        return True

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _image_op(self, prompt: str, reference: ReferenceImage):
        async def op() -> bytes:
            return await self.service.generate_image(prompt, reference)

        return op

    async def _run_step(
        self,
        index: int,
        step: GenerationStep,
        item: Item,
        reference: ReferenceImage,
        scenes: _SceneState,
        out_dir: Path,
    ) -> tuple[StepOutcome, Optional[bytes]]:
        run = StepRun(step)
        run.advance(StepState.ATTEMPTING)
        self.progress_cb(f"  [{index}/{len(self.steps)}] {step.label}")

        def build(scene: Optional[Scene]):
            return self._image_op(step.build_prompt(item, scene if step.uses_scene else None), reference)

        async def on_attempt_failed(attempt: int, error: BaseException):
            # Only the first failure of a scene step earns a new scene
            if not step.uses_scene or attempt != 1:
                return None
            if not await self._regenerate_scene(item, reference, scenes):
                return None
            run.scene_regenerations += 1
            return build(scenes.scene)

        current = build(scenes.scene)
        fallback = self._image_op(step.build_fallback_prompt(item), reference)
        label = f"{step.kind.value}[{item.item_id}]"
        first_attempt = 1
        pauses = 0
        while True:
            try:
                result = await self.executor.execute(
                    current,
                    max_attempts=self.max_attempts,
                    backoff=self.backoff,
                    on_attempt_failed=on_attempt_failed if step.uses_scene else None,
                    fallback=fallback,
                    first_attempt=first_attempt,
                    label=label,
                )
                break
            except QuotaPause as pause:
                pauses += 1
                if pauses > self.max_quota_pauses:
                    log.warning("%s: still over quota after %d pauses", label, self.max_quota_pauses)
                    result = CallResult(error=pause.cause, attempts=pause.attempt - 1)
                    break
                self.progress_cb(f"  ⏳ Quota exceeded, waiting {self.quota_backoff:.0f}s...")
                await self._sleep(self.quota_backoff)
                first_attempt = pause.attempt
                current = pause.op

        if result.ok:
            path = out_dir / f"generated_{index}_{step.kind.value}.png"
            path.write_bytes(result.value)
            run.advance(StepState.SUCCEEDED)
            log.info("%s: saved %s after %d attempt(s)", label, path, result.attempts)
            outcome = StepOutcome(
                kind=step.kind,
                status=StepStatus.SUCCESS,
                artifact_path=path,
                attempts_used=result.attempts,
                scene_regenerations_used=run.scene_regenerations,
            )
            return outcome, result.value

        run.advance(StepState.EXHAUSTED)
        error = str(result.error) if result.error is not None else "unknown error"
        self.progress_cb(f"  ❌ {step.label} failed: {error}")
        outcome = StepOutcome(
            kind=step.kind,
            status=StepStatus.FAILED,
            error=error,
            attempts_used=result.attempts,
            scene_regenerations_used=run.scene_regenerations,
        )
        return outcome, None

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def _publish(
        self,
        item: Item,
        outcomes: list[StepOutcome],
        artifacts: dict[StepKind, bytes],
    ) -> list[tuple[StepKind, Optional[str]]]:
        labels = {s.kind: s.label for s in self.steps}
        published: list[tuple[StepKind, Optional[str]]] = []
        for outcome in outcomes:
            if not outcome.succeeded:
                published.append((outcome.kind, None))
                continue
            display_name = f"{item.title} - {labels[outcome.kind]}"
            try:
                url = await self.publisher.upload(artifacts[outcome.kind], display_name, item.item_id)
            except Exception as e:
                log.warning("Publishing %s for %s failed: %s", outcome.kind.value, item.item_id, e)
                url = None
            if not url:
                url = local_placeholder(outcome.artifact_path)
                self.progress_cb(f"  ⚠ {labels[outcome.kind]} not published, keeping local file")
            published.append((outcome.kind, url))
        return published

    def _save_sidecars(self, item: Item, scenes: _SceneState, result: ItemResult) -> None:
        product_dir = self.workspace.product_dir(item.item_id)
        self.workspace.save_json(product_dir, SCENES_FILE, [s.model_dump() for s in scenes.history])
        labels = {s.kind: s.label for s in self.steps}
        metadata = {
            "product_handle": item.item_id,
            "title": item.title,
            "reference": item.reference,
            "generated_at": datetime.now().isoformat(),
            "scene": result.scene_used.model_dump(),
            "scene_regenerations": scenes.regenerations,
            "images": [
                {**o.to_dict(), "label": labels[o.kind], "url": result.url_for(o.kind)}
                for o in result.outcomes
            ],
        }
        self.workspace.save_json(product_dir, METADATA_FILE, metadata)

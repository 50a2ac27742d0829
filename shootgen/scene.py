"""Photoshoot scene resolution with a deterministic fallback."""
from __future__ import annotations

import asyncio
import hashlib
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable

from .config import MAX_ATTEMPTS, MAX_QUOTA_PAUSES, QUOTA_BACKOFF
from .models import Item, ReferenceImage, Scene
from .prompts import AESTHETIC_STYLES, scene_prompt
from .retry import BackoffPolicy, CallResult, QuotaPause, RetryExecutor

log = logging.getLogger(__name__)


def _studio_scene(aesthetic: str, model_description: str) -> Scene:
    return Scene(
        aesthetic=aesthetic,
        setting="Clean, elegant studio with neutral backdrop",
        mood="Professional and sophisticated",
        lighting="Soft natural lighting",
        styling="Clean, minimal accessories",
        model_description=model_description,
        composition="Center-focused with negative space",
        props=["minimal furniture", "clean lines", "elegant decor"],
    )


FALLBACK_SCENES: tuple[Scene, ...] = (
    _studio_scene("Minimalist Modern", "Professional model with natural pose"),
    _studio_scene("Old money", "Poised model with relaxed, confident posture"),
    _studio_scene("French new wave", "Model caught mid-gesture with an understated expression"),
)


def fallback_scene(item_id: str, ordinal: int = 0) -> Scene:
    """Pick a pool scene keyed by item id and resolution ordinal (stable across runs)."""
    digest = hashlib.md5(f"{item_id}:{ordinal}".encode("utf-8")).hexdigest()
    return FALLBACK_SCENES[int(digest, 16) % len(FALLBACK_SCENES)]


@dataclass(frozen=True)
class SceneResolution:
    scene: Scene
    used_fallback: bool
    attempts: int


class SceneResolver:
    """Produces one Scene per call; total failure degrades to the fallback pool.

    ``resolve`` only raises ``DailyBudgetExhausted`` (from the budget).  Each
    call is independent: a regeneration is simply another ``resolve`` with
    the next ordinal.
    """

    def __init__(
        self,
        service,
        executor: RetryExecutor,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        backoff: BackoffPolicy | None = None,
        rng: random.Random | None = None,
        quota_backoff: float = QUOTA_BACKOFF,
        max_quota_pauses: int = MAX_QUOTA_PAUSES,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.service = service
        self.executor = executor
        self.max_attempts = max_attempts
        self.backoff = backoff or BackoffPolicy()
        self.rng = rng or random.Random()
        self.quota_backoff = quota_backoff
        self.max_quota_pauses = max_quota_pauses
        self._sleep = sleep

    async def resolve(self, item: Item, reference: ReferenceImage, ordinal: int = 0) -> SceneResolution:
        aesthetic = self.rng.choice(AESTHETIC_STYLES)
        log.info("Selected aesthetic %r for %s (resolution %d)", aesthetic, item.item_id, ordinal)
        prompt = scene_prompt(item, aesthetic)

        async def op() -> Scene:
            return await self.service.generate_scene(prompt, reference)

        current = op
        first_attempt = 1
        pauses = 0
        label = f"scene[{item.item_id}]"
        while True:
            try:
                result = await self.executor.execute(
                    current,
                    max_attempts=self.max_attempts,
                    backoff=self.backoff,
                    first_attempt=first_attempt,
                    label=label,
                )
                break
            except QuotaPause as pause:
                pauses += 1
                if pauses > self.max_quota_pauses:
                    log.warning("%s: giving up after %d quota pauses", label, self.max_quota_pauses)
                    result = CallResult(error=pause.cause, attempts=pause.attempt - 1)
                    break
                log.info("%s: quota hit, backing off %.0fs", label, self.quota_backoff)
                await self._sleep(self.quota_backoff)
                first_attempt = pause.attempt
                current = pause.op

        if result.ok:
            return SceneResolution(scene=result.value, used_fallback=False, attempts=result.attempts)

        scene = fallback_scene(item.item_id, ordinal)
        log.warning("%s: using fallback scene %r (%s)", label, scene.aesthetic, result.error)
        return SceneResolution(scene=scene, used_fallback=True, attempts=result.attempts)

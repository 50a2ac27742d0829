import asyncio
import random

import pytest
from pydantic import ValidationError

from conftest import FakeService, make_scene
from shootgen.models import ReferenceImage, Scene
from shootgen.prompts import AESTHETIC_STYLES
from shootgen.retry import QuotaExceededError
from shootgen.scene import FALLBACK_SCENES, SceneResolver, fallback_scene

REFERENCE = ReferenceImage(data=b"ref")


def test_fallback_scene_is_deterministic():
    first = fallback_scene("linen-shirt", 0)
    assert first in FALLBACK_SCENES
    assert fallback_scene("linen-shirt", 0) == first
    picks = {fallback_scene(f"item-{i}", 0).aesthetic for i in range(50)}
    assert len(picks) > 1


def test_resolve_returns_service_scene(executor, item):
    service = FakeService(scenes=[make_scene("Old money")])
    resolver = SceneResolver(service, executor, rng=random.Random(1))

    resolution = asyncio.run(resolver.resolve(item, REFERENCE))

    assert not resolution.used_fallback
    assert resolution.scene.aesthetic == "Old money"
    assert resolution.attempts == 1


def test_resolve_degrades_to_fallback(executor, item, clock):
    service = FakeService(scene_errors=10)
    resolver = SceneResolver(service, executor)

    resolution = asyncio.run(resolver.resolve(item, REFERENCE, ordinal=2))

    assert resolution.used_fallback
    assert resolution.scene == fallback_scene(item.item_id, 2)
    assert service.scene_calls == 3
    assert clock.sleeps == [2.0, 4.0]


def test_resolve_recovers_after_malformed_response(executor, item):
    service = FakeService(scenes=[make_scene("Nautical")], scene_errors=1)
    resolver = SceneResolver(service, executor)

    resolution = asyncio.run(resolver.resolve(item, REFERENCE))

    assert not resolution.used_fallback
    assert resolution.attempts == 2


def test_resolve_absorbs_quota_pauses(executor, item, clock):
    calls = []

    class QuotaOnce(FakeService):
        async def generate_scene(self, prompt, reference):
            calls.append(prompt)
            if len(calls) == 1:
                raise QuotaExceededError("quota exceeded")
            return make_scene("Boho")

    resolver = SceneResolver(QuotaOnce(), executor, quota_backoff=60.0, sleep=clock.sleep)
    resolution = asyncio.run(resolver.resolve(item, REFERENCE))

    assert not resolution.used_fallback
    assert clock.sleeps == [60.0]
    assert len(calls) == 2


def test_resolve_gives_up_after_quota_pause_cap(executor, item, clock):
    class AlwaysQuota(FakeService):
        async def generate_scene(self, prompt, reference):
            raise QuotaExceededError("quota exceeded")

    resolver = SceneResolver(AlwaysQuota(), executor, max_quota_pauses=2, sleep=clock.sleep)
    resolution = asyncio.run(resolver.resolve(item, REFERENCE))

    assert resolution.used_fallback
    assert clock.sleeps.count(60.0) == 2
    assert resolution.attempts == 0


def test_aesthetic_goes_into_prompt(executor, item):
    prompts = []

    class Recording(FakeService):
        async def generate_scene(self, prompt, reference):
            prompts.append(prompt)
            return make_scene("Boho")

    resolver = SceneResolver(Recording(), executor, rng=random.Random(3))
    asyncio.run(resolver.resolve(item, REFERENCE))

    expected = random.Random(3).choice(AESTHETIC_STYLES)
    assert f"inspired by the {expected} aesthetic" in prompts[0]
    assert "Linen Shirt in Ecru color" in prompts[0]


def test_scene_contract_rejects_blank_fields():
    data = make_scene("Boho").model_dump()
    with pytest.raises(ValidationError):
        Scene(**{**data, "mood": "   "})
    with pytest.raises(ValidationError):
        Scene(**{**data, "props": []})
    with pytest.raises(ValidationError):
        Scene(**{**data, "props": ["lamp", " "]})
    del data["lighting"]
    with pytest.raises(ValidationError):
        Scene(**data)

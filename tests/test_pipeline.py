import asyncio
import json

import pytest

from conftest import FakePublisher, FakeService, fake_fetch, make_scene, make_step
from shootgen.imagegen import PlaceholderService
from shootgen.models import Item, StepKind, StepStatus
from shootgen.pipeline import (
    DEFAULT_STEPS,
    ItemPipeline,
    ItemSkipped,
    StepRun,
    StepState,
    StepStateError,
)
from shootgen.publish import LocalPublisher
from shootgen.scene import SceneResolver, fallback_scene

FOUR_STEPS = (
    make_step(StepKind.GARMENT_FULL, False),
    make_step(StepKind.PHOTOSHOOT_1, True),
    make_step(StepKind.GARMENT_CLOSEUP, False),
    make_step(StepKind.GARMENT_ANGULAR, False),
)


def _pipeline(service, executor, workspace, clock, publisher=None, **kwargs):
    return ItemPipeline(
        service,
        executor,
        SceneResolver(service, executor, sleep=clock.sleep),
        publisher or FakePublisher(),
        workspace,
        steps=kwargs.pop("steps", FOUR_STEPS),
        fetch=kwargs.pop("fetch", fake_fetch),
        sleep=clock.sleep,
        **kwargs,
    )


def test_scene_step_recovers_after_regeneration(executor, workspace, clock, item):
    service = FakeService(
        scenes=[make_scene("Boho"), make_scene("Old money")],
        failures={"photoshoot_1": 2},
    )
    pipeline = _pipeline(service, executor, workspace, clock)

    result = asyncio.run(pipeline.run(item))

    assert [o.kind for o in result.outcomes] == [s.kind for s in FOUR_STEPS]
    step = result.outcomes[1]
    assert step.status is StepStatus.SUCCESS
    assert step.attempts_used == 3
    assert step.scene_regenerations_used == 1
    assert result.scene_used.aesthetic == "Old money"
    assert result.scene_used != make_scene("Boho")
    photoshoot_prompts = [p for p in service.image_prompts if "|photoshoot_1|" in p]
    assert photoshoot_prompts == [
        "linen-shirt|photoshoot_1|Boho",
        "linen-shirt|photoshoot_1|Old money",
        "linen-shirt|photoshoot_1|fallback",
    ]


def test_steps_without_scene_never_regenerate(executor, workspace, clock, item):
    service = FakeService(failures={"garment_full": 2})
    pipeline = _pipeline(service, executor, workspace, clock)

    result = asyncio.run(pipeline.run(item))

    assert result.outcomes[0].succeeded
    assert result.outcomes[0].scene_regenerations_used == 0
    assert service.scene_calls == 1


def test_all_steps_failing_still_yields_full_result(executor, workspace, clock, item):
    service = FakeService(fail_items={item.item_id})
    pipeline = _pipeline(service, executor, workspace, clock)

    result = asyncio.run(pipeline.run(item))

    assert len(result.outcomes) == 4
    assert all(o.status is StepStatus.FAILED for o in result.outcomes)
    assert all(o.attempts_used == 3 for o in result.outcomes)
    assert result.outcomes[0].error == "No image data in response."
    assert result.succeeded_steps == 0
    assert all(url is None for _, url in result.published_urls)


def test_regeneration_cap_is_per_item(executor, workspace, clock, item):
    steps = (
        make_step(StepKind.PHOTOSHOOT_1, True),
        make_step(StepKind.PHOTOSHOOT_2, True),
        make_step(StepKind.GARMENT_FULL, True),
    )
    service = FakeService(fail_items={item.item_id})
    pipeline = _pipeline(service, executor, workspace, clock, steps=steps, max_scene_regenerations=2)

    result = asyncio.run(pipeline.run(item))

    assert [o.scene_regenerations_used for o in result.outcomes] == [1, 1, 0]
    assert service.scene_calls == 3


def test_scene_fallbacks_counted(executor, workspace, clock, item):
    service = FakeService(scene_errors=100, fail_items={item.item_id})
    steps = (make_step(StepKind.PHOTOSHOOT_1, True),)
    pipeline = _pipeline(service, executor, workspace, clock, steps=steps)

    result = asyncio.run(pipeline.run(item))

    # the initial scene and the one regeneration both fell back
    assert result.outcomes[0].scene_regenerations_used == 1
    assert result.scene_fallbacks == 2
    assert result.scene_used == fallback_scene(item.item_id, 1)


def test_scene_fallbacks_zero_when_scenes_resolve(executor, workspace, clock, item):
    result = asyncio.run(_pipeline(FakeService(), executor, workspace, clock).run(item))

    assert result.scene_fallbacks == 0


def test_publish_failure_degrades_to_local_placeholder(executor, workspace, clock, item):
    publisher = FakePublisher(null_labels={"Garment Closeup"}, raise_labels={"Garment Angular"})
    pipeline = _pipeline(FakeService(), executor, workspace, clock, publisher=publisher)

    result = asyncio.run(pipeline.run(item))

    assert result.succeeded_steps == 4
    assert result.successful_uploads == 2
    closeup = result.url_for(StepKind.GARMENT_CLOSEUP)
    assert closeup.startswith("file://")
    assert closeup.endswith("generated_3_garment_closeup.png")
    assert result.url_for(StepKind.GARMENT_ANGULAR).startswith("file://")
    assert result.url_for(StepKind.GARMENT_FULL).startswith("https://cdn.test/linen-shirt/")
    assert result.outcomes[2].status is StepStatus.SUCCESS
    assert publisher.uploads[0] == ("Linen Shirt - Garment Full", "linen-shirt")


def test_quota_pause_resumes_same_attempt(executor, workspace, clock, item):
    service = FakeService(quota_failures={"garment_full": 1})
    pipeline = _pipeline(service, executor, workspace, clock, quota_backoff=60.0)

    result = asyncio.run(pipeline.run(item))

    assert result.outcomes[0].succeeded
    assert result.outcomes[0].attempts_used == 1
    assert 60.0 in clock.sleeps


def test_quota_pauses_are_bounded(executor, workspace, clock, item):
    service = FakeService(quota_failures={"garment_full": 100})
    pipeline = _pipeline(service, executor, workspace, clock, max_quota_pauses=2)

    result = asyncio.run(pipeline.run(item))

    assert result.outcomes[0].status is StepStatus.FAILED
    assert "429" in result.outcomes[0].error
    # quota rejections are not counted as attempts
    assert result.outcomes[0].attempts_used == 0
    assert clock.sleeps.count(60.0) == 2
    assert result.outcomes[1].succeeded


def test_missing_reference_skips_item(executor, workspace, clock):
    service = FakeService()
    pipeline = _pipeline(service, executor, workspace, clock)
    item = Item(item_id="ghost", title="Ghost", reference="missing")

    with pytest.raises(ItemSkipped) as info:
        asyncio.run(pipeline.run(item))

    assert "404" in info.value.reason
    assert service.scene_calls == 0
    assert service.image_prompts == []


def test_sidecars_written(executor, workspace, clock, item):
    pipeline = _pipeline(FakeService(), executor, workspace, clock)
    asyncio.run(pipeline.run(item))

    product_dir = workspace.product_dir(item.item_id)
    scenes = json.loads((product_dir / "photoshoot_scenes.json").read_text(encoding="utf-8"))
    metadata = json.loads((product_dir / "metadata.json").read_text(encoding="utf-8"))
    assert scenes[0]["aesthetic"] == "Boho"
    assert [img["kind"] for img in metadata["images"]] == [s.kind.value for s in FOUR_STEPS]
    assert (product_dir / "generated" / "generated_1_garment_full.png").exists()


def test_default_steps_with_placeholder_service(executor, workspace, clock, tmp_path):
    source = tmp_path / "source.webp"
    source.write_bytes(b"not really an image")
    item = Item(item_id="wool-coat", title="Yün Kaban", reference=str(source),
                fields={"Option2 Value": "Camel"})
    service = PlaceholderService(size=(256, 256))
    pipeline = ItemPipeline(
        service,
        executor,
        SceneResolver(service, executor),
        LocalPublisher(),
        workspace,
        sleep=clock.sleep,
    )

    result = asyncio.run(pipeline.run(item))

    assert [o.kind for o in result.outcomes] == [s.kind for s in DEFAULT_STEPS]
    assert result.succeeded_steps == 5
    assert result.successful_uploads == 0
    assert all(url.startswith("file://") for _, url in result.published_urls)
    png = result.outcomes[4].artifact_path
    assert png.name == "generated_5_photoshoot_2.png"
    assert png.read_bytes().startswith(b"\x89PNG")


def test_step_run_rejects_illegal_transitions():
    run = StepRun(DEFAULT_STEPS[0])
    with pytest.raises(StepStateError):
        run.advance(StepState.SUCCEEDED)
    run.advance(StepState.ATTEMPTING)
    run.advance(StepState.EXHAUSTED)
    with pytest.raises(StepStateError):
        run.advance(StepState.ATTEMPTING)

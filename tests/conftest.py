import pytest

from shootgen.imagegen import GenerationError
from shootgen.models import GenerationStep, Item, ReferenceImage, Scene, StepKind
from shootgen.products import ReferenceImageError
from shootgen.ratelimit import RateBudget
from shootgen.retry import QuotaExceededError, RetryExecutor
from shootgen.utils.workspace import Workspace


class FakeClock:
    """Monotonic clock whose sleep just moves time forward."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_scene(aesthetic: str) -> Scene:
    return Scene(
        aesthetic=aesthetic,
        setting=f"{aesthetic} setting",
        mood="calm",
        lighting="window light",
        styling="gold hoops",
        model_description="standing, looking away",
        composition="low angle",
        props=["chair"],
    )


class FakeService:
    """Scripted generation service.

    Image prompts look like ``"<item>|<kind>|<scene aesthetic or fallback>"``.
    ``failures`` maps a step kind to how many image calls fail before one
    succeeds; items in ``fail_items`` never get an image.
    """

    def __init__(self, scenes=None, failures=None, fail_items=(), quota_failures=None, scene_errors=0):
        self.scenes = list(scenes or [make_scene("Boho")])
        self.failures = dict(failures or {})
        self.quota_failures = dict(quota_failures or {})
        self.fail_items = set(fail_items)
        self.scene_errors = scene_errors
        self.scene_calls = 0
        self.image_prompts: list[str] = []

    async def generate_scene(self, prompt, reference):
        self.scene_calls += 1
        if self.scene_errors > 0:
            self.scene_errors -= 1
            raise GenerationError("malformed scene")
        return self.scenes[min(self.scene_calls - 1, len(self.scenes) - 1)]

    async def generate_image(self, prompt, reference):
        self.image_prompts.append(prompt)
        item_id, kind, _ = prompt.split("|")
        if self.quota_failures.get(kind, 0) > 0:
            self.quota_failures[kind] -= 1
            raise QuotaExceededError("429 RESOURCE_EXHAUSTED")
        if item_id in self.fail_items:
            raise GenerationError("No image data in response.")
        if self.failures.get(kind, 0) > 0:
            self.failures[kind] -= 1
            raise GenerationError("No image data in response.")
        return f"png:{prompt}".encode()


class FakePublisher:
    def __init__(self, null_labels=(), raise_labels=()):
        self.null_labels = set(null_labels)
        self.raise_labels = set(raise_labels)
        self.uploads: list[tuple[str, str]] = []

    async def upload(self, data, display_name, group_key):
        self.uploads.append((display_name, group_key))
        label = display_name.split(" - ", 1)[1]
        if label in self.raise_labels:
            raise ConnectionError("upload refused")
        if label in self.null_labels:
            return None
        return f"https://cdn.test/{group_key}/{len(self.uploads)}.png"


def make_step(kind: StepKind, uses_scene: bool) -> GenerationStep:
    def build(item, scene):
        return f"{item.item_id}|{kind.value}|{scene.aesthetic if scene else '-'}"

    def build_fallback(item):
        return f"{item.item_id}|{kind.value}|fallback"

    return GenerationStep(kind, kind.value.replace("_", " ").title(), uses_scene, build, build_fallback)


async def fake_fetch(item, workspace):
    if item.reference == "missing":
        raise ReferenceImageError("404 Not Found")
    return ReferenceImage(data=b"reference", mime_type="image/png")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def budget(clock):
    return RateBudget(400, 500_000, 0, clock=clock, sleep=clock.sleep)


@pytest.fixture
def executor(budget, clock):
    return RetryExecutor(budget, sleep=clock.sleep)


@pytest.fixture
def workspace(tmp_path):
    return Workspace(tmp_path / "work")


@pytest.fixture
def item():
    return Item(item_id="linen-shirt", title="Linen Shirt", reference="https://img.test/linen.jpg",
                fields={"Option2 Value": "Ecru", "Tags": "summer"})

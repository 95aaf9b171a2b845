"""Shared fakes and fixtures: in-memory storage, scripted providers and stores."""

import asyncio

import pytest

from storyreel import metrics
from storyreel.config import PipelineSettings, PollPolicy
from storyreel.errors import PersistenceFailure, ProviderFailure
from storyreel.pipeline.models import (
    Character,
    DebitResult,
    JobKind,
    JobStatus,
    RemoteJob,
    Scene,
    StoryProject,
)
from storyreel.pipeline.orchestrator import PipelineOrchestrator
from storyreel.pipeline.storage import filename_from_url, generate_unique_key


# ── Fakes ────────────────────────────────────────────────────────────────────

class FakeStorage:
    def __init__(self):
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.sources_read: list[str] = []
        self.persisted: list[tuple[str, str]] = []
        self.fail_on_put = False

    async def put(self, key, data, content_type="image/png"):
        if self.fail_on_put:
            raise PersistenceFailure(f"put failed for {key}", key=key)
        self.objects[key] = (data, content_type)
        return f"https://cdn.test/{key}"

    async def get(self, key):
        return self.objects[key][0]

    async def read_source(self, ref):
        self.sources_read.append(ref)
        await asyncio.sleep(0)
        return b"photo:" + ref.encode()

    async def persist_remote(self, url, folder):
        self.persisted.append((url, folder))
        key = generate_unique_key(filename_from_url(url), folder)
        return await self.put(key, url.encode(), "application/octet-stream")

    def keys_in(self, folder):
        return [k for k in self.objects if k.startswith(f"{folder}/")]


class FakeStyleProvider:
    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.fail_for: set[str] = set()

    async def stylize(self, image_url, style_prompt):
        self.calls.append((image_url, style_prompt))
        await asyncio.sleep(0)
        if any(marker in image_url for marker in self.fail_for):
            raise ProviderFailure("Style transfer rejected the photo", provider="fake")
        return f"https://provider.test/styled/{len(self.calls)}.png"


class FakeComposeProvider:
    max_reference_images = 8

    def __init__(self):
        self.calls: list[tuple[str, list[str], str]] = []
        self.error: Exception = None

    async def compose(self, prompt, reference_urls, aspect_ratio="9:16"):
        self.calls.append((prompt, list(reference_urls), aspect_ratio))
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        return f"https://provider.test/scene/{len(self.calls)}.png"


class FakeVideoProvider:
    """Each job reports PROCESSING `polls_to_finish - 1` times, then `final_status`."""

    def __init__(self, polls_to_finish=2, final_status=JobStatus.COMPLETED, error=None):
        self.polls_to_finish = polls_to_finish
        self.final_status = final_status
        self.error = error
        self.submitted: list[tuple[str, str, int]] = []
        self.poll_counts: dict[str, int] = {}

    async def submit(self, image_url, prompt, duration_seconds):
        self.submitted.append((image_url, prompt, duration_seconds))
        job_id = f"job-{len(self.submitted)}"
        self.poll_counts[job_id] = 0
        return job_id

    async def poll(self, job_id):
        self.poll_counts[job_id] += 1
        if self.polls_to_finish is None or self.poll_counts[job_id] < self.polls_to_finish:
            return RemoteJob(job_id=job_id, kind=JobKind.ANIMATE, status=JobStatus.PROCESSING)
        if self.final_status == JobStatus.FAILED:
            return RemoteJob(job_id=job_id, kind=JobKind.ANIMATE, status=JobStatus.FAILED, error=self.error)
        return RemoteJob(
            job_id=job_id,
            kind=JobKind.ANIMATE,
            status=JobStatus.COMPLETED,
            result_url=f"https://provider.test/video/{job_id}.mp4",
        )


class FakeBalanceStore:
    def __init__(self, balance=10_000):
        self.balance = balance
        self.debits: list[tuple[str, int, str]] = []

    async def get_balance(self, user_id):
        return self.balance

    async def debit(self, user_id, amount, reason):
        if self.balance < amount:
            return DebitResult(ok=False, new_balance=self.balance)
        self.balance -= amount
        self.debits.append((user_id, amount, reason))
        return DebitResult(ok=True, new_balance=self.balance)


class FakeGenerationStore:
    def __init__(self):
        self.records = {}
        self.fail_on_save = False

    async def save(self, record):
        if self.fail_on_save:
            raise RuntimeError("generations table unavailable")
        generation_id = f"gen-{len(self.records) + 1}"
        self.records[generation_id] = record.model_copy(update={"id": generation_id})
        return generation_id

    async def get(self, generation_id, user_id):
        record = self.records.get(generation_id)
        if record is None or record.user_id != user_id:
            return None
        return record

    async def list_for_user(self, user_id):
        return [r for r in reversed(list(self.records.values())) if r.user_id == user_id]

    async def rename(self, generation_id, user_id, name):
        record = await self.get(generation_id, user_id)
        if record is None:
            raise ValueError("Generation not found.")
        record.name = name
        return record


# ── Builders ─────────────────────────────────────────────────────────────────

def make_character(character_id, name=None, description="", **kwargs):
    kwargs.setdefault("source_image_ref", f"https://photos.test/{character_id}.jpg")
    return Character(id=character_id, name=name or character_id.title(), description=description, **kwargs)


def make_project(scenes=None, characters=None, style="sketch", user_id="user-1"):
    if scenes is None:
        scenes = [Scene(id="s1", prompt="A walk in the park")]
    return StoryProject(
        user_id=user_id,
        characters=characters or [],
        scenes=scenes,
        style=style,
    )


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def settings():
    return PipelineSettings(poll=PollPolicy(interval_seconds=0, max_attempts=4))


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def style_provider():
    return FakeStyleProvider()


@pytest.fixture
def compose_provider():
    return FakeComposeProvider()


@pytest.fixture
def video_provider():
    return FakeVideoProvider()


@pytest.fixture
def balance_store():
    return FakeBalanceStore()


@pytest.fixture
def generation_store():
    return FakeGenerationStore()


@pytest.fixture
def orchestrator(settings, storage, style_provider, compose_provider, video_provider, balance_store, generation_store):
    return PipelineOrchestrator(
        settings=settings,
        storage=storage,
        style_provider=style_provider,
        compose_provider=compose_provider,
        video_provider=video_provider,
        balance_store=balance_store,
        generation_store=generation_store,
    )

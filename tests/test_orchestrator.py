"""End-to-end behaviour of the pipeline orchestrator against in-memory fakes."""

import asyncio
import logging

import pytest

from storyreel import metrics
from storyreel.errors import ProviderFailure, RunConflict
from storyreel.pipeline.cancellation import CancellationToken
from storyreel.pipeline.models import (
    JobStatus,
    OperationKind,
    PipelineStage,
    RunMode,
    RunStatus,
    Scene,
    SceneStatus,
    StyleStatus,
)

from conftest import FakeVideoProvider, make_character, make_project


def _two_pets_project():
    rex = make_character("rex", "Rex", "golden retriever puppy")
    luna = make_character("luna", "Luna", "grey tabby cat")
    scene = Scene(id="s1", prompt="Rex and Luna chase butterflies", referenced_character_ids=["luna", "rex"])
    return make_project(scenes=[scene], characters=[rex, luna], style="sketch")


def _styled_project():
    rex = make_character(
        "rex", "Rex", "golden retriever puppy",
        uploaded_url="https://cdn.test/uploads/rex.jpg",
        styled_url="https://cdn.test/styled/rex.png",
        style_status=StyleStatus.DONE,
    )
    luna = make_character(
        "luna", "Luna", "grey tabby cat",
        uploaded_url="https://cdn.test/uploads/luna.jpg",
        styled_url="https://cdn.test/styled/luna.png",
        style_status=StyleStatus.DONE,
    )
    scenes = [
        Scene(
            id=f"s{i}",
            prompt=f"Scene {i}",
            referenced_character_ids=["rex"] if i == 2 else ["rex", "luna"],
            generated_image_url=f"https://cdn.test/scenes/s{i}.png",
            video_url=f"https://cdn.test/videos/s{i}.mp4",
            status=SceneStatus.VIDEO_READY,
        )
        for i in (1, 2, 3)
    ]
    return make_project(scenes=scenes, characters=[rex, luna], style="pixar")


# ── Full run ─────────────────────────────────────────────────────────────────

class TestFullRun:
    def test_two_characters_sketch_scene(
        self, orchestrator, style_provider, compose_provider, video_provider, balance_store, generation_store
    ):
        outcome = asyncio.run(orchestrator.run_full(_two_pets_project()))

        assert outcome.status == RunStatus.COMPLETE
        assert outcome.stage == PipelineStage.COMPLETE
        assert len(style_provider.calls) == 2

        rex, luna = outcome.characters
        assert rex.style_status == StyleStatus.DONE and luna.style_status == StyleStatus.DONE

        prompt, refs, aspect_ratio = compose_provider.calls[0]
        assert refs == [rex.styled_url, luna.styled_url]
        assert 'PROTAGONIST_1: "Rex" (golden retriever puppy)' in prompt
        assert 'PROTAGONIST_2: "Luna" (grey tabby cat)' in prompt
        assert "pencil sketch style" in prompt
        assert aspect_ratio == "9:16"

        scene = outcome.scenes[0]
        assert scene.status == SceneStatus.VIDEO_READY
        assert video_provider.submitted[0][0] == scene.generated_image_url
        assert video_provider.submitted[0][2] == 5
        assert outcome.video_urls == [scene.video_url]
        assert scene.video_url.startswith("https://cdn.test/videos/")

        assert outcome.playlist.total_duration == 5
        assert outcome.playlist.manifest_url.startswith("https://cdn.test/playlists/")

        record = outcome.generation_record
        assert record.id == "gen-1"
        assert record.style == "sketch"
        assert record.name.startswith("Sketch - ")
        assert record.thumbnail_url == scene.generated_image_url
        assert [c.name for c in record.characters] == ["Rex", "Luna"]
        assert "gen-1" in generation_store.records

        assert [(e.operation_kind, e.amount) for e in outcome.ledger] == [
            (OperationKind.IMAGE_GENERATION, 10),
            (OperationKind.VIDEO_GENERATION, 375),
        ]
        assert balance_store.balance == 10_000 - 385

    def test_five_second_scene_round_trip(self, orchestrator, video_provider):
        project = make_project(scenes=[Scene(id="s1", prompt="Sunset", duration_seconds=5)])

        outcome = asyncio.run(orchestrator.run_full(project))

        assert outcome.status == RunStatus.COMPLETE
        assert video_provider.submitted[0][2] == 5
        assert outcome.playlist.videos[0].duration == 5
        assert outcome.playlist.total_duration == 5
        assert outcome.generation_record.scenes[0].duration == 5

    def test_scenes_are_processed_in_order(self, orchestrator, compose_provider, video_provider):
        project = make_project(scenes=[Scene(id=f"s{i}", prompt=f"Beat {i}") for i in (1, 2, 3)])

        outcome = asyncio.run(orchestrator.run_full(project))

        assert outcome.status == RunStatus.COMPLETE
        assert [s.generated_image_url for s in outcome.scenes] == [v[0] for v in video_provider.submitted]
        assert len(compose_provider.calls) == 3
        assert outcome.playlist.total_duration == 15
        assert outcome.ledger[1].amount == 15 * 75

    def test_progress_is_monotonic_and_reaches_100_only_on_complete(self, orchestrator):
        events = []
        outcome = asyncio.run(orchestrator.run_full(_two_pets_project(), on_progress=events.append))

        assert outcome.status == RunStatus.COMPLETE
        percentages = [e.percentage for e in events]
        assert percentages == sorted(percentages)
        assert events[-1].percentage == 100
        assert events[-1].stage == PipelineStage.COMPLETE
        assert all(p < 100 for p in percentages[:-1])

    def test_caller_project_is_not_mutated(self, orchestrator):
        project = _two_pets_project()

        outcome = asyncio.run(orchestrator.run_full(project))

        assert outcome.scenes[0].video_url
        assert project.scenes[0].generated_image_url is None
        assert project.characters[0].styled_url is None

    def test_configured_aspect_ratio_applies_when_project_omits_one(self, settings, orchestrator, compose_provider):
        settings.default_aspect_ratio = "16:9"

        outcome = asyncio.run(orchestrator.run_full(make_project()))
        explicit = make_project()
        explicit.aspect_ratio = "1:1"
        asyncio.run(orchestrator.run_images_only(explicit))

        assert compose_provider.calls[0][2] == "16:9"
        assert outcome.generation_record.aspect_ratio == "16:9"
        assert compose_provider.calls[1][2] == "1:1"

    def test_listeners_see_character_and_scene_updates(self, orchestrator):
        characters, scenes = [], []

        asyncio.run(orchestrator.run_full(
            _two_pets_project(),
            on_character_update=lambda c: characters.append((c.id, c.style_status)),
            on_scene_update=lambda s: scenes.append(s.status),
        ))

        assert ("rex", StyleStatus.DONE) in characters
        assert ("luna", StyleStatus.DONE) in characters
        assert scenes == [SceneStatus.IMAGE_READY, SceneStatus.VIDEO_READY]

    def test_record_write_failure_still_completes(self, orchestrator, generation_store):
        generation_store.fail_on_save = True

        outcome = asyncio.run(orchestrator.run_full(make_project()))

        assert outcome.status == RunStatus.COMPLETE
        assert outcome.generation_record is None
        assert len(outcome.video_urls) == 1

    def test_run_metrics(self, orchestrator):
        asyncio.run(orchestrator.run_full(make_project()))

        counters = metrics.get_snapshot()["counters"]
        assert counters["runs.started"] == 1
        assert counters["runs.completed"] == 1
        assert "runs.failed" not in counters


# ── Balance gate ─────────────────────────────────────────────────────────────

class TestBalanceGate:
    def test_insufficient_image_balance_makes_no_remote_calls(
        self, orchestrator, storage, style_provider, compose_provider, video_provider, balance_store
    ):
        balance_store.balance = 5

        outcome = asyncio.run(orchestrator.run_full(_two_pets_project()))

        assert outcome.status == RunStatus.FAILED
        assert outcome.reason == "insufficient-balance"
        assert outcome.stage == PipelineStage.COMPOSING_SCENE_IMAGES
        assert storage.sources_read == [] and storage.objects == {}
        assert style_provider.calls == []
        assert compose_provider.calls == []
        assert video_provider.submitted == []
        assert len(outcome.ledger) == 1 and not outcome.ledger[0].accepted
        assert balance_store.balance == 5

    def test_insufficient_video_balance_after_images_only(self, orchestrator, video_provider, balance_store):
        balance_store.balance = 30
        project = make_project(characters=[make_character("rex")], scenes=[
            Scene(id="s1", prompt="Rex naps", referenced_character_ids=["rex"]),
        ])

        images = asyncio.run(orchestrator.run_images_only(project))
        assert images.status == RunStatus.COMPLETE
        assert images.scenes[0].status == SceneStatus.IMAGE_READY
        assert balance_store.balance == 20

        follow_up = project.model_copy(update={"characters": images.characters, "scenes": images.scenes})
        videos = asyncio.run(orchestrator.run_videos_only(follow_up))

        assert videos.status == RunStatus.FAILED
        assert videos.reason == "insufficient-balance"
        assert videos.stage == PipelineStage.ANIMATING_SCENES
        assert video_provider.submitted == []
        assert videos.scenes[0].generated_image_url == images.scenes[0].generated_image_url
        assert balance_store.balance == 20


# ── Partial runs ─────────────────────────────────────────────────────────────

class TestPartialRuns:
    def test_images_only_stops_before_video(self, orchestrator, video_provider):
        events = []
        outcome = asyncio.run(orchestrator.run_images_only(_two_pets_project(), on_progress=events.append))

        assert outcome.status == RunStatus.COMPLETE
        assert outcome.scenes[0].status == SceneStatus.IMAGE_READY
        assert outcome.video_urls == []
        assert outcome.generation_record is None
        assert video_provider.submitted == []
        assert [e.operation_kind for e in outcome.ledger] == [OperationKind.IMAGE_GENERATION]
        assert events[-1].percentage == 100

    def test_styling_is_memoized_across_runs(self, orchestrator, storage, style_provider):
        project = _two_pets_project()

        first = asyncio.run(orchestrator.run_images_only(project))
        second = asyncio.run(orchestrator.run_images_only(
            project.model_copy(update={"characters": first.characters})
        ))

        assert second.status == RunStatus.COMPLETE
        assert len(style_provider.calls) == 2
        assert len(storage.sources_read) == 2
        assert [c.styled_url for c in second.characters] == [c.styled_url for c in first.characters]

    def test_videos_only_requires_every_scene_image(self, orchestrator, video_provider):
        scenes = [
            Scene(id="s1", prompt="One", generated_image_url="https://cdn.test/scenes/1.png",
                  status=SceneStatus.IMAGE_READY),
            Scene(id="s2", prompt="Two"),
        ]

        outcome = asyncio.run(orchestrator.run_videos_only(make_project(scenes=scenes)))

        assert outcome.status == RunStatus.FAILED
        assert outcome.reason == "missing-scene-image"
        assert outcome.ledger == []
        assert video_provider.submitted == []

    def test_videos_only_animates_existing_images(self, orchestrator, compose_provider, video_provider):
        scenes = [
            Scene(id=f"s{i}", prompt=f"Beat {i}", generated_image_url=f"https://cdn.test/scenes/{i}.png",
                  status=SceneStatus.IMAGE_READY)
            for i in (1, 2)
        ]
        events = []

        outcome = asyncio.run(orchestrator.run_videos_only(make_project(scenes=scenes), on_progress=events.append))

        assert outcome.status == RunStatus.COMPLETE
        assert compose_provider.calls == []
        assert [v[0] for v in video_provider.submitted] == [s.generated_image_url for s in scenes]
        assert outcome.playlist.total_duration == 10
        assert outcome.ledger[0].amount == 10 * 75
        assert events[-1].percentage == 100

    def test_regenerate_touches_only_the_target_scene(self, orchestrator, storage, style_provider, compose_provider):
        project = _styled_project()

        outcome = asyncio.run(orchestrator.regenerate_scene(project, "s2"))

        assert outcome.status == RunStatus.COMPLETE
        assert outcome.scenes[0] == project.scenes[0]
        assert outcome.scenes[2] == project.scenes[2]

        target = outcome.scenes[1]
        assert target.generated_image_url != project.scenes[1].generated_image_url
        assert target.video_url is None
        assert target.status == SceneStatus.IMAGE_READY

        assert style_provider.calls == []
        assert storage.sources_read == []
        assert compose_provider.calls[0][1] == ["https://cdn.test/styled/rex.png"]
        assert [(e.operation_kind, e.amount) for e in outcome.ledger] == [(OperationKind.IMAGE_GENERATION, 10)]

    def test_regenerate_styles_only_referenced_characters(self, orchestrator, storage, style_provider):
        rex = make_character("rex", uploaded_url="https://cdn.test/uploads/rex.jpg")
        luna = make_character("luna")
        project = make_project(
            characters=[rex, luna],
            scenes=[Scene(id="s1", prompt="Rex alone", referenced_character_ids=["rex"])],
        )

        outcome = asyncio.run(orchestrator.regenerate_scene(project, "s1"))

        assert outcome.status == RunStatus.COMPLETE
        assert storage.sources_read == []
        assert style_provider.calls[0][0] == "https://cdn.test/uploads/rex.jpg"
        assert len(style_provider.calls) == 1
        assert outcome.characters[1].uploaded_url is None

    def test_regenerate_unknown_scene(self, orchestrator, compose_provider):
        outcome = asyncio.run(orchestrator.regenerate_scene(_styled_project(), "nope"))

        assert outcome.status == RunStatus.FAILED
        assert outcome.reason == "unknown-scene"
        assert compose_provider.calls == []


# ── Validation ───────────────────────────────────────────────────────────────

def _invalid_projects():
    four = [Scene(id=f"s{i}", prompt="x") for i in range(4)]
    return [
        ("no-scenes", make_project(scenes=[])),
        ("scene-limit-exceeded", make_project(scenes=four)),
        ("invalid-scene-duration", make_project(scenes=[Scene(id="s1", prompt="x", duration_seconds=7)])),
        ("duration-limit-exceeded", make_project(scenes=[
            Scene(id="s1", prompt="x", duration_seconds=10),
            Scene(id="s2", prompt="y", duration_seconds=10),
        ])),
        ("unknown-style", make_project(style="anime")),
        ("style-not-selected", make_project(style=None)),
        ("unknown-character", make_project(scenes=[
            Scene(id="s1", prompt="x", referenced_character_ids=["ghost"]),
        ])),
        ("unknown-character", make_project(
            characters=[make_character("rex", source_image_ref=None)],
            scenes=[Scene(id="s1", prompt="x", referenced_character_ids=["rex"])],
        )),
        ("too-many-references", make_project(
            characters=[make_character(f"c{i}") for i in range(9)],
            scenes=[Scene(id="s1", prompt="x", referenced_character_ids=[f"c{i}" for i in range(9)])],
        )),
    ]


@pytest.mark.parametrize("reason,project", _invalid_projects())
def test_invalid_runs_fail_before_any_remote_call(
    reason, project, settings, orchestrator, storage, style_provider, compose_provider, video_provider
):
    settings.limits.allowed_scene_durations = [5, 10]

    outcome = asyncio.run(orchestrator.run_full(project))

    assert outcome.status == RunStatus.FAILED
    assert outcome.reason == reason
    assert outcome.error_kind == "precondition_failure"
    assert outcome.ledger == []
    assert storage.sources_read == []
    assert style_provider.calls == [] and compose_provider.calls == [] and video_provider.submitted == []


def test_crowded_later_scene_is_rejected_before_any_debit(
    orchestrator, storage, style_provider, compose_provider, video_provider, balance_store
):
    cast = [make_character(f"c{i}") for i in range(9)]
    scenes = [
        Scene(id="s1", prompt="Two friends", referenced_character_ids=["c0", "c1"]),
        Scene(id="s2", prompt="Everyone at the party", referenced_character_ids=[c.id for c in cast]),
    ]

    outcome = asyncio.run(orchestrator.run_full(make_project(scenes=scenes, characters=cast)))

    assert outcome.status == RunStatus.FAILED
    assert outcome.reason == "too-many-references"
    assert "s2" in outcome.error
    assert balance_store.debits == [] and outcome.ledger == []
    assert storage.sources_read == []
    assert style_provider.calls == [] and compose_provider.calls == [] and video_provider.submitted == []


def test_regenerate_rejects_crowded_scene(orchestrator, compose_provider, balance_store):
    cast = [make_character(f"c{i}") for i in range(9)]
    scenes = [Scene(id="s1", prompt="Everyone", referenced_character_ids=[c.id for c in cast])]

    outcome = asyncio.run(orchestrator.regenerate_scene(make_project(scenes=scenes, characters=cast), "s1"))

    assert outcome.reason == "too-many-references"
    assert balance_store.debits == []
    assert compose_provider.calls == []


# ── Failures ─────────────────────────────────────────────────────────────────

class TestFailures:
    def test_compose_failure_is_reported_verbatim(self, orchestrator, compose_provider, video_provider):
        compose_provider.error = ProviderFailure("Flux rejected the prompt", provider="kie")

        outcome = asyncio.run(orchestrator.run_full(make_project()))

        assert outcome.status == RunStatus.FAILED
        assert outcome.error == "Flux rejected the prompt"
        assert outcome.error_kind == "provider_failure"
        assert outcome.stage == PipelineStage.COMPOSING_SCENE_IMAGES
        assert outcome.scenes[0].status == SceneStatus.FAILED
        assert video_provider.submitted == []
        assert metrics.get_snapshot()["counters"]["runs.failed"] == 1

    def test_one_character_failing_style_fails_the_run(self, orchestrator, style_provider, compose_provider):
        style_provider.fail_for = {"luna"}

        outcome = asyncio.run(orchestrator.run_full(_two_pets_project()))

        assert outcome.status == RunStatus.FAILED
        assert outcome.stage == PipelineStage.STYLING_CHARACTERS
        assert outcome.error == "Style transfer rejected the photo"
        rex, luna = outcome.characters
        assert rex.style_status == StyleStatus.DONE
        assert luna.style_status == StyleStatus.ERROR
        assert compose_provider.calls == []

    def test_video_timeout(self, settings, orchestrator, video_provider):
        video_provider.polls_to_finish = None

        outcome = asyncio.run(orchestrator.run_full(make_project()))

        assert outcome.status == RunStatus.FAILED
        assert outcome.error_kind == "timeout_failure"
        assert outcome.stage == PipelineStage.ANIMATING_SCENES
        assert video_provider.poll_counts["job-1"] == settings.poll.max_attempts
        assert outcome.scenes[0].status == SceneStatus.FAILED

    def test_every_upload_failure_is_logged(self, orchestrator, storage, caplog):
        storage.fail_on_put = True

        with caplog.at_level(logging.ERROR, logger="storyreel.pipeline.orchestrator"):
            outcome = asyncio.run(orchestrator.run_full(_two_pets_project()))

        assert outcome.status == RunStatus.FAILED
        assert outcome.error_kind == "persistence_failure"
        upload_errors = [r for r in caplog.records if "Character upload failed" in r.getMessage()]
        assert len(upload_errors) == 2

    def test_video_provider_failure(self, orchestrator, video_provider):
        video_provider.final_status = JobStatus.FAILED
        video_provider.error = "content policy"

        outcome = asyncio.run(orchestrator.run_full(make_project()))

        assert outcome.status == RunStatus.FAILED
        assert outcome.error == "Video generation failed: content policy"
        assert outcome.error_kind == "provider_failure"

    def test_cancel_between_image_and_video(self, orchestrator, video_provider):
        token = CancellationToken()

        def _cancel_on_image(scene):
            if scene.status == SceneStatus.IMAGE_READY:
                token.cancel()

        async def scenario():
            return await orchestrator.run_full(make_project(), on_scene_update=_cancel_on_image, token=token)

        outcome = asyncio.run(scenario())

        assert outcome.status == RunStatus.FAILED
        assert outcome.error_kind == "cancelled"
        assert outcome.stage == PipelineStage.ANIMATING_SCENES
        assert video_provider.submitted == []


# ── Registry & background runs ───────────────────────────────────────────────

class TestRegistry:
    def test_background_run_reports_status(self, orchestrator):
        async def scenario():
            run_id = orchestrator.start_background(RunMode.FULL, make_project(), run_id="run-42")
            assert orchestrator.get_status(run_id).status == RunStatus.RUNNING
            for _ in range(1000):
                if orchestrator.get_status(run_id).status != RunStatus.RUNNING:
                    break
                await asyncio.sleep(0)
            return orchestrator.get_status(run_id)

        status = asyncio.run(scenario())

        assert status.run_id == "run-42"
        assert status.status == RunStatus.COMPLETE
        assert status.progress.percentage == 100
        assert status.outcome.video_urls

    def test_cancel_background_run(self, orchestrator, storage):
        async def scenario():
            run_id = orchestrator.start_background(RunMode.FULL, make_project(characters=[make_character("rex")]))
            assert orchestrator.cancel(run_id) is True
            for _ in range(1000):
                if orchestrator.get_status(run_id).status != RunStatus.RUNNING:
                    break
                await asyncio.sleep(0)
            return run_id, orchestrator.get_status(run_id)

        run_id, status = asyncio.run(scenario())

        assert status.status == RunStatus.FAILED
        assert status.outcome.error_kind == "cancelled"
        assert storage.sources_read == []
        assert orchestrator.cancel(run_id) is False

    def test_unknown_run(self, orchestrator):
        assert orchestrator.get_status("missing") is None
        assert orchestrator.cancel("missing") is False

    def test_run_id_cannot_be_reused(self, orchestrator):
        async def scenario():
            orchestrator.start_background(RunMode.FULL, make_project(), run_id="r1")
            with pytest.raises(RunConflict):
                orchestrator.start_background(RunMode.FULL, make_project(), run_id="r1")
            assert orchestrator.cancel("r1") is True
            for _ in range(1000):
                if orchestrator.get_status("r1").status != RunStatus.RUNNING:
                    break
                await asyncio.sleep(0)
            with pytest.raises(RunConflict):
                await orchestrator.run_full(make_project(), run_id="r1")
            return orchestrator.get_status("r1")

        status = asyncio.run(scenario())

        assert status.outcome.error_kind == "cancelled"
        assert orchestrator.get_status("r1").mode == RunMode.FULL

    def test_separate_runs_keep_separate_ledgers(self, orchestrator):
        async def scenario():
            first = await orchestrator.run_full(make_project(), run_id="a")
            second = await orchestrator.run_full(make_project(), run_id="b")
            return first, second

        first, second = asyncio.run(scenario())

        assert [e.operation_kind for e in first.ledger] == [
            OperationKind.IMAGE_GENERATION,
            OperationKind.VIDEO_GENERATION,
        ]
        assert len(second.ledger) == 2

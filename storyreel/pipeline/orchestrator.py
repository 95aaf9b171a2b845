"""
PipelineOrchestrator - runs a story project through the generation stages.

  uploading → styling_characters → composing_scene_images
            → animating_scenes → assembling → complete
  (any stage) → failed

Entry points:
  run_full          - every stage, scenes processed one after another
  run_images_only   - stops once every scene has an image
  run_videos_only   - animates scenes that already have images
  regenerate_scene  - recomposes a single scene, siblings untouched

Each run works on its own copy of the caller's project. Callers observe it
through the progress / character / scene listeners and the returned
RunOutcome. Costed stages are debited once, before their first remote call.
"""

import time
import uuid
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .. import metrics
from ..config import PipelineSettings
from ..errors import PreconditionFailure, RunConflict
from ..kie import KieClient
from ..styles import STYLES
from .animate import VideoAnimator
from .cache import ArtifactCache
from .cancellation import CancellationToken
from .compose import SceneImageComposer
from .ledger import BalanceStore, CostLedger, SupabaseBalanceStore, estimate_image_cost, estimate_video_cost
from .models import (
    Character,
    OperationKind,
    PipelineStage,
    RunMode,
    RunOutcome,
    RunStatus,
    RunStatusResponse,
    Scene,
    StoryProject,
)
from .playlist import PlaylistAssembler
from .progress import ProgressListener, ProgressTracker
from .providers import (
    ComposeProvider,
    KieComposeProvider,
    KieStyleProvider,
    KieVideoProvider,
    StyleProvider,
    VideoProvider,
)
from .records import GenerationStore, SupabaseGenerationStore
from .storage import ObjectStorage, R2Storage
from .stylize import CharacterOutcome, CharacterStylizer

logger = logging.getLogger(__name__)

CharacterListener = Callable[[Character], None]
SceneListener = Callable[[Scene], None]

FIRST_STAGE = {
    RunMode.FULL: PipelineStage.UPLOADING,
    RunMode.IMAGES_ONLY: PipelineStage.UPLOADING,
    RunMode.VIDEOS_ONLY: PipelineStage.ANIMATING_SCENES,
    RunMode.REGENERATE_SCENE: PipelineStage.UPLOADING,
}


@dataclass
class _Run:
    run_id: str
    mode: RunMode
    project: StoryProject
    token: CancellationToken
    tracker: ProgressTracker
    stage: PipelineStage
    cache: ArtifactCache = field(default_factory=ArtifactCache)
    on_character_update: Optional[CharacterListener] = None
    on_scene_update: Optional[SceneListener] = None
    video_debited: bool = False
    started_at: float = field(default_factory=time.monotonic)

    def notify_character(self, character: Character):
        if self.on_character_update:
            self.on_character_update(character)

    def notify_scene(self, scene: Scene):
        if self.on_scene_update:
            self.on_scene_update(scene)


class PipelineOrchestrator:
    """
    Usage:
        orchestrator = PipelineOrchestrator.from_settings(PipelineSettings.from_env())

        outcome = await orchestrator.run_full(project, on_progress=print)
        run_id = orchestrator.start_background(RunMode.IMAGES_ONLY, project)
        orchestrator.get_status(run_id)
    """

    def __init__(
        self,
        settings: PipelineSettings,
        storage: ObjectStorage,
        style_provider: StyleProvider,
        compose_provider: ComposeProvider,
        video_provider: VideoProvider,
        balance_store: BalanceStore,
        generation_store: GenerationStore,
        styles: Optional[dict[str, dict]] = None,
    ):
        self.settings = settings
        self.styles = styles if styles is not None else STYLES
        self.generation_store = generation_store
        self.ledger = CostLedger(balance_store)
        self.stylizer = CharacterStylizer(storage, style_provider)
        self.composer = SceneImageComposer(storage, compose_provider)
        self.animator = VideoAnimator(
            video_provider, settings.poll, storage=storage, persist_videos=settings.persist_videos
        )
        self.assembler = PlaylistAssembler(storage, generation_store)

        self._runs: dict[str, RunStatusResponse] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "PipelineOrchestrator":
        """Wire the production collaborators: Kie.ai, Cloudflare R2 and Supabase."""
        kie = KieClient(settings.kie.api_key, settings.kie.base_url, timeout=settings.kie.request_timeout)
        return cls(
            settings=settings,
            storage=R2Storage(settings.r2),
            style_provider=KieStyleProvider(kie),
            compose_provider=KieComposeProvider(kie),
            video_provider=KieVideoProvider(kie),
            balance_store=SupabaseBalanceStore(settings.supabase),
            generation_store=SupabaseGenerationStore(settings.supabase),
        )

    # ── Run registry ─────────────────────────────────────────────────────

    def get_status(self, run_id: str) -> Optional[RunStatusResponse]:
        return self._runs.get(run_id)

    def cancel(self, run_id: str) -> bool:
        """Stop issuing remote calls for a run. Returns False for unknown or finished runs."""
        token = self._tokens.get(run_id)
        status = self._runs.get(run_id)
        if token is None or status is None or status.status != RunStatus.RUNNING:
            return False
        token.cancel()
        logger.info(f"[{run_id}] Cancellation requested")
        return True

    def start_background(
        self,
        mode: RunMode,
        project: StoryProject,
        scene_id: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> str:
        """Fire-and-forget: schedule the run on the event loop and return its id."""
        run = self._prepare(mode, project, run_id)
        task = asyncio.create_task(self._execute(run, scene_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return run.run_id

    async def get_balance(self, user_id: str) -> int:
        return await self.ledger.store.get_balance(user_id)

    # ── Entry points ─────────────────────────────────────────────────────

    async def run_full(
        self,
        project: StoryProject,
        run_id: Optional[str] = None,
        on_progress: Optional[ProgressListener] = None,
        on_character_update: Optional[CharacterListener] = None,
        on_scene_update: Optional[SceneListener] = None,
        token: Optional[CancellationToken] = None,
    ) -> RunOutcome:
        run = self._prepare(
            RunMode.FULL, project, run_id, on_progress, on_character_update, on_scene_update, token
        )
        return await self._execute(run)

    async def run_images_only(
        self,
        project: StoryProject,
        run_id: Optional[str] = None,
        on_progress: Optional[ProgressListener] = None,
        on_character_update: Optional[CharacterListener] = None,
        on_scene_update: Optional[SceneListener] = None,
        token: Optional[CancellationToken] = None,
    ) -> RunOutcome:
        run = self._prepare(
            RunMode.IMAGES_ONLY, project, run_id, on_progress, on_character_update, on_scene_update, token
        )
        return await self._execute(run)

    async def run_videos_only(
        self,
        project: StoryProject,
        run_id: Optional[str] = None,
        on_progress: Optional[ProgressListener] = None,
        on_scene_update: Optional[SceneListener] = None,
        token: Optional[CancellationToken] = None,
    ) -> RunOutcome:
        run = self._prepare(
            RunMode.VIDEOS_ONLY, project, run_id, on_progress, None, on_scene_update, token
        )
        return await self._execute(run)

    async def regenerate_scene(
        self,
        project: StoryProject,
        scene_id: str,
        run_id: Optional[str] = None,
        on_progress: Optional[ProgressListener] = None,
        on_character_update: Optional[CharacterListener] = None,
        on_scene_update: Optional[SceneListener] = None,
        token: Optional[CancellationToken] = None,
    ) -> RunOutcome:
        run = self._prepare(
            RunMode.REGENERATE_SCENE, project, run_id, on_progress, on_character_update, on_scene_update, token
        )
        return await self._execute(run, scene_id)

    # ── Run lifecycle ────────────────────────────────────────────────────

    def _prepare(
        self,
        mode: RunMode,
        project: StoryProject,
        run_id: Optional[str] = None,
        on_progress: Optional[ProgressListener] = None,
        on_character_update: Optional[CharacterListener] = None,
        on_scene_update: Optional[SceneListener] = None,
        token: Optional[CancellationToken] = None,
    ) -> _Run:
        run_id = run_id or str(uuid.uuid4())
        if run_id in self._runs:
            raise RunConflict(run_id)

        stage = FIRST_STAGE[mode]
        tracker = ProgressTracker(run_id, len(project.scenes), stage)
        working = project.model_copy(deep=True)
        if "aspect_ratio" not in project.model_fields_set:
            working.aspect_ratio = self.settings.default_aspect_ratio
        run = _Run(
            run_id=run_id,
            mode=mode,
            project=working,
            token=token or CancellationToken(),
            tracker=tracker,
            stage=stage,
            on_character_update=on_character_update,
            on_scene_update=on_scene_update,
        )
        tracker.subscribe(lambda progress: self._record_progress(run, progress))
        tracker.subscribe(on_progress)

        self._tokens[run_id] = run.token
        self._runs[run_id] = RunStatusResponse(run_id=run_id, mode=mode)
        return run

    def _record_progress(self, run: _Run, progress):
        status = self._runs.get(run.run_id)
        if status is not None:
            status.progress = progress

    async def _execute(self, run: _Run, scene_id: Optional[str] = None) -> RunOutcome:
        metrics.inc_counter("runs.started")
        logger.info(
            f"[{run.run_id}] Starting {run.mode.value} run for user {run.project.user_id}: "
            f"{len(run.project.scenes)} scene(s), {len(run.project.characters)} character(s)"
        )

        try:
            if run.mode == RunMode.FULL:
                outcome = await self._full(run)
            elif run.mode == RunMode.IMAGES_ONLY:
                outcome = await self._images_only(run)
            elif run.mode == RunMode.VIDEOS_ONLY:
                outcome = await self._videos_only(run)
            else:
                outcome = await self._regenerate(run, scene_id)
        except Exception as e:
            outcome = self._fail(run, e)
        finally:
            self._tokens.pop(run.run_id, None)

        metrics.record_latency(f"run.{run.mode.value}", (time.monotonic() - run.started_at) * 1000)
        status = self._runs[run.run_id]
        status.status = outcome.status
        status.outcome = outcome
        status.error = outcome.error
        return outcome

    def _outcome(self, run: _Run, **kwargs) -> RunOutcome:
        return RunOutcome(
            run_id=run.run_id,
            mode=run.mode,
            characters=run.project.characters,
            scenes=run.project.scenes,
            ledger=self.ledger.entries_for(run.run_id),
            **kwargs,
        )

    def _succeed(self, run: _Run, message: str, **kwargs) -> RunOutcome:
        run.stage = PipelineStage.COMPLETE
        run.tracker.complete(message)
        metrics.inc_counter("runs.completed")
        logger.info(f"[{run.run_id}] {run.mode.value} run complete")
        return self._outcome(run, status=RunStatus.COMPLETE, stage=PipelineStage.COMPLETE, **kwargs)

    def _fail(self, run: _Run, error: Exception) -> RunOutcome:
        kind = getattr(error, "kind", type(error).__name__)
        reason = getattr(error, "reason", None)
        logger.error(
            f"[{run.run_id}] {run.mode.value} run failed during {run.stage.value}: {error}",
            exc_info=True,
        )
        metrics.inc_counter("runs.failed")
        metrics.record_error("orchestrator", kind, str(error), run_id=run.run_id)
        run.tracker.fail(str(error))
        return self._outcome(
            run,
            status=RunStatus.FAILED,
            stage=run.stage,
            error=str(error),
            error_kind=kind,
            reason=reason,
        )

    # ── Validation ───────────────────────────────────────────────────────

    def _validate_scenes(self, project: StoryProject):
        limits = self.settings.limits
        if not project.scenes:
            raise PreconditionFailure("no-scenes", "The project has no scenes")
        if len(project.scenes) > limits.max_scenes:
            raise PreconditionFailure(
                "scene-limit-exceeded",
                f"{len(project.scenes)} scenes requested; at most {limits.max_scenes} allowed",
            )
        for scene in project.scenes:
            if scene.duration_seconds not in limits.allowed_scene_durations:
                raise PreconditionFailure(
                    "invalid-scene-duration",
                    f"Scene {scene.id} lasts {scene.duration_seconds}s; "
                    f"allowed durations: {limits.allowed_scene_durations}",
                )
        if project.total_duration > limits.max_total_duration_seconds:
            raise PreconditionFailure(
                "duration-limit-exceeded",
                f"Total duration {project.total_duration}s exceeds "
                f"{limits.max_total_duration_seconds}s",
            )

    def _validate_references(self, project: StoryProject, scenes: list[Scene], composing: bool = True):
        active = {c.id for c in project.active_characters()}
        limit = self.composer.max_references
        for scene in scenes:
            if composing and len(scene.referenced_character_ids) > limit:
                raise PreconditionFailure(
                    "too-many-references",
                    f"Scene {scene.id} references {len(scene.referenced_character_ids)} characters; "
                    f"the provider accepts at most {limit}",
                )
            unknown = [cid for cid in scene.referenced_character_ids if cid not in active]
            if unknown:
                raise PreconditionFailure(
                    "unknown-character",
                    f"Scene {scene.id} references unknown or inactive character(s): {', '.join(unknown)}",
                )

    def _resolve_style(self, project: StoryProject) -> dict:
        if not project.style:
            raise PreconditionFailure("style-not-selected", "No visual style selected")
        style = self.styles.get(project.style)
        if style is None:
            raise PreconditionFailure(
                "unknown-style",
                f"Unknown style: {project.style}. Available: {list(self.styles.keys())}",
            )
        return style

    # ── Stages ───────────────────────────────────────────────────────────

    async def _debit_images(self, run: _Run, scene_count: int):
        run.stage = PipelineStage.COMPOSING_SCENE_IMAGES
        amount = estimate_image_cost(scene_count, self.settings.costs)
        await self.ledger.require(
            run.project.user_id, amount, OperationKind.IMAGE_GENERATION, run.run_id
        )

    async def _debit_videos(self, run: _Run):
        if run.video_debited:
            return
        run.stage = PipelineStage.ANIMATING_SCENES
        amount = estimate_video_cost(run.project.scenes, self.settings.costs)
        await self.ledger.require(
            run.project.user_id, amount, OperationKind.VIDEO_GENERATION, run.run_id
        )
        run.video_debited = True

    @staticmethod
    def _count_work(characters: list[Character]) -> tuple[int, int]:
        """(uploads needed, styles needed)"""
        uploads = sum(1 for c in characters if not c.uploaded_url)
        styles = sum(1 for c in characters if not c.styled_url)
        return uploads, styles

    async def _upload_characters(self, run: _Run, characters: list[Character]):
        run.stage = PipelineStage.UPLOADING
        run.tracker.enter(PipelineStage.UPLOADING, f"Uploading {len(characters)} character photo(s)")
        run.token.raise_if_cancelled()

        async def _one(character: Character):
            needed = not character.uploaded_url
            await self.stylizer.ensure_uploaded(character, run.cache, run.token, run.notify_character)
            if needed:
                run.tracker.advance(f"Uploaded {character.name}")

        results = await asyncio.gather(*(_one(c) for c in characters), return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        for error in errors:
            logger.error(f"[{run.run_id}] Character upload failed: {error}")
        if errors:
            raise errors[0]

    async def _style_characters(self, run: _Run, characters: list[Character], style: dict):
        run.stage = PipelineStage.STYLING_CHARACTERS
        run.tracker.enter(
            PipelineStage.STYLING_CHARACTERS, f"Styling {len(characters)} character(s) as {style['name']}"
        )
        needed = {c.id for c in characters if not c.styled_url}
        by_id = {c.id: c for c in characters}

        def _done(outcome: CharacterOutcome):
            if outcome.ok and outcome.character_id in needed:
                run.tracker.advance(f"Styled {by_id[outcome.character_id].name}")

        outcomes = await self.stylizer.style_all(
            characters, style, run.cache, run.token, run.notify_character, on_done=_done
        )
        failed = [o for o in outcomes if not o.ok]
        if failed:
            logger.warning(f"[{run.run_id}] {len(failed)} character(s) failed styling")
            raise failed[0].error

    async def _compose_scene(self, run: _Run, index: int, scene: Scene, style: dict):
        run.stage = PipelineStage.COMPOSING_SCENE_IMAGES
        run.tracker.enter(
            PipelineStage.COMPOSING_SCENE_IMAGES,
            f"Composing scene {index + 1}/{len(run.project.scenes)}",
            scene_index=index,
        )
        characters = run.project.referenced_characters(scene)
        try:
            url = await self.composer.compose(
                scene, characters, style, run.cache, run.project.aspect_ratio, run.token
            )
        except Exception as e:
            scene.mark_failed(str(e))
            run.notify_scene(scene)
            raise
        scene.set_image(url)
        run.notify_scene(scene)
        run.tracker.advance(f"Scene {index + 1} image ready")

    async def _animate_scene(self, run: _Run, index: int, scene: Scene):
        await self._debit_videos(run)
        run.stage = PipelineStage.ANIMATING_SCENES
        run.tracker.enter(
            PipelineStage.ANIMATING_SCENES,
            f"Animating scene {index + 1}/{len(run.project.scenes)}",
            scene_index=index,
        )
        characters = run.project.referenced_characters(scene)
        try:
            url = await self.animator.render(
                scene.generated_image_url, characters, scene.prompt, scene.duration_seconds, run.token
            )
        except Exception as e:
            scene.mark_failed(str(e))
            run.notify_scene(scene)
            raise
        scene.set_video(url)
        run.notify_scene(scene)
        run.tracker.advance(f"Scene {index + 1} video ready")

    async def _assemble(self, run: _Run) -> RunOutcome:
        run.stage = PipelineStage.ASSEMBLING
        run.tracker.enter(PipelineStage.ASSEMBLING, "Assembling playlist")
        run.token.raise_if_cancelled()

        scenes = run.project.scenes
        manifest = await self.assembler.assemble([(s.video_url, s.duration_seconds) for s in scenes])
        video_urls = [v.url for v in manifest.videos]

        record = self.assembler.build_record(run.project, video_urls)
        saved = await self.assembler.persist_generation_record(record)
        run.tracker.advance("Playlist ready")

        return self._succeed(
            run,
            "Your story is ready!",
            video_urls=video_urls,
            playlist=manifest,
            generation_record=saved,
        )

    # ── Modes ────────────────────────────────────────────────────────────

    async def _prepare_cast(self, run: _Run, characters: list[Character], style: dict, scene_units: int):
        uploads, styles = self._count_work(characters)
        run.tracker.start(uploads + styles + scene_units)
        await self._upload_characters(run, characters)
        await self._style_characters(run, characters, style)

    async def _full(self, run: _Run) -> RunOutcome:
        project = run.project
        self._validate_scenes(project)
        self._validate_references(project, project.scenes)
        style = self._resolve_style(project)

        await self._debit_images(run, len(project.scenes))
        await self._prepare_cast(run, project.active_characters(), style, 2 * len(project.scenes) + 1)

        for index, scene in enumerate(project.scenes):
            await self._compose_scene(run, index, scene, style)
            await self._animate_scene(run, index, scene)

        return await self._assemble(run)

    async def _images_only(self, run: _Run) -> RunOutcome:
        project = run.project
        self._validate_scenes(project)
        self._validate_references(project, project.scenes)
        style = self._resolve_style(project)

        await self._debit_images(run, len(project.scenes))
        await self._prepare_cast(run, project.active_characters(), style, len(project.scenes))

        for index, scene in enumerate(project.scenes):
            await self._compose_scene(run, index, scene, style)

        return self._succeed(run, "Scene images ready")

    async def _videos_only(self, run: _Run) -> RunOutcome:
        project = run.project
        self._validate_scenes(project)
        self._validate_references(project, project.scenes, composing=False)
        missing = [s.id for s in project.scenes if not s.generated_image_url]
        if missing:
            raise PreconditionFailure(
                "missing-scene-image",
                f"Scene(s) without an image: {', '.join(missing)}",
            )

        run.tracker.start(len(project.scenes) + 1)
        for index, scene in enumerate(project.scenes):
            await self._animate_scene(run, index, scene)

        return await self._assemble(run)

    async def _regenerate(self, run: _Run, scene_id: Optional[str]) -> RunOutcome:
        project = run.project
        scene = project.find_scene(scene_id) if scene_id else None
        if scene is None:
            raise PreconditionFailure("unknown-scene", f"Scene not found: {scene_id}")
        self._validate_references(project, [scene])
        style = self._resolve_style(project)

        await self._debit_images(run, 1)
        await self._prepare_cast(run, project.referenced_characters(scene), style, 1)
        index = next(i for i, s in enumerate(project.scenes) if s.id == scene.id)
        await self._compose_scene(run, index, scene, style)

        return self._succeed(run, f"Scene {scene.id} regenerated")

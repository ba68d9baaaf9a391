"""
Pipeline Service

Collaborator-facing facade: every user-triggered pipeline operation,
with its precondition checks, in one place. Rejected operations raise
``PreconditionError`` (or ``RecordNotFoundError`` for unknown/foreign
records) and change nothing.

``create_pipeline`` wires the whole object graph from ``Settings``.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from storyreel.core.config import Settings, get_settings
from storyreel.core.constants import (
    CHARACTER_MEDIA_DIR,
    PipelineStage,
    Provider,
    StageState,
    StoryStatus,
    VideoStatus,
)
from storyreel.core.exceptions import PreconditionError, RecordNotFoundError
from storyreel.core.logging_config import get_logger
from storyreel.llm.api_clients import (
    AnthropicClient,
    ImageGenerationClient,
    KlingClient,
    NanoBananaClient,
    TextGenerationClient,
    VideoGenerationClient,
)
from storyreel.llm.script_analyst import ScriptAnalyst
from storyreel.models.entities import Character, Story, StoryboardFrame, Video
from storyreel.pipelines.clip_production import SUBMISSION_IN_FLIGHT, ClipProducer
from storyreel.pipelines.events import EventBus
from storyreel.pipelines.final_assembly import FinalAssembler
from storyreel.pipelines.image_regeneration import ImageRegenerator
from storyreel.pipelines.orchestrator import AdvancePipelineListener, PipelineOrchestrator
from storyreel.pipelines.poller import JobPoller
from storyreel.pipelines.reconciliation import ChainDiff, FrameReconciler
from storyreel.pipelines.task_queue import TaskQueue
from storyreel.pipelines.workers import CharacterWorker, StoryboardWorker, VideoProductionWorker
from storyreel.storage.credentials import CredentialVault, EnvCredentialVault
from storyreel.storage.json_repository import JsonStoryRepository
from storyreel.storage.media_store import LocalMediaStore
from storyreel.storage.repository import StoryRepository
from storyreel.storage.usage import UsageRecorder
from storyreel.video.concatenation import VideoConcatenator
from storyreel.video.ffmpeg import FfmpegRunner

logger = get_logger("pipelines.service")

CLIP_DURATIONS = ("5", "10")
CLIP_MODES = ("std", "pro")
CLIP_MODELS = (
    "kling-v2-6",
    "kling-v2-5-turbo",
    "kling-v2-1-master",
    "kling-v2-master",
    "kling-v1-6",
    "kling-v1",
)
CAMERA_CONTROLS = ("simple", "down_back", "forward_up", "right_turn_forward", "left_turn_forward")

_CLIP_PARAM_CHOICES = {
    "duration": CLIP_DURATIONS,
    "mode": CLIP_MODES,
    "model_name": CLIP_MODELS,
    "camera_control": CAMERA_CONTROLS,
}


def clean_clip_params(params: Dict[str, Any]) -> Dict[str, str]:
    """Drop empty overrides and reject values the video provider does not accept."""
    cleaned = {}
    for key, value in params.items():
        if value in (None, ""):
            continue
        if key not in _CLIP_PARAM_CHOICES:
            raise PreconditionError(f"Unknown clip parameter: {key}")
        value = str(value)
        if value not in _CLIP_PARAM_CHOICES[key]:
            raise PreconditionError(f"Invalid {key}: {value}")
        cleaned[key] = value
    return cleaned


class PipelineService:
    """Entry point for UI/API collaborators."""

    def __init__(
        self,
        repository: StoryRepository,
        orchestrator: PipelineOrchestrator,
        queue: TaskQueue,
        vault: CredentialVault,
        media_store: LocalMediaStore,
        images: ImageRegenerator,
        clips: ClipProducer,
        assembler: FinalAssembler,
        reconciler: FrameReconciler,
    ):
        self.repository = repository
        self.orchestrator = orchestrator
        self.queue = queue
        self.vault = vault
        self.media_store = media_store
        self.images = images
        self.clips = clips
        self.assembler = assembler
        self.reconciler = reconciler

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def get_story(self, story_id: int) -> Story:
        return self.repository.require_story(story_id)

    def _character(self, story: Story, character_id: int) -> Character:
        character = self.repository.get_character(character_id)
        if character is None or character.story_id != story.id:
            raise RecordNotFoundError("Character", character_id)
        return character

    def _frame(self, story: Story, frame_id: int) -> StoryboardFrame:
        frame = self.repository.get_frame(frame_id)
        if frame is None or frame.story_id != story.id:
            raise RecordNotFoundError("StoryboardFrame", frame_id)
        return frame

    def _clip(self, story: Story, clip_id: int, action: str) -> Video:
        clip = self.repository.get_video(clip_id)
        if clip is None or clip.story_id != story.id:
            raise RecordNotFoundError("Video", clip_id)
        if clip.is_final or clip.sequence_number is None:
            raise PreconditionError(f"Can only {action} mini-videos.")
        return clip

    def _require_review(self, story: Story, status: StoryStatus, message: str) -> None:
        if story.status != status:
            raise PreconditionError(message)

    # =========================================================================
    # STORY & SCRIPT
    # =========================================================================

    def create_story(self, user_id: Any, title: str, synopsis: Optional[str] = None) -> Story:
        story = self.repository.add_story(Story(user_id=user_id, title=title, synopsis=synopsis))
        logger.info(f"Story {story.id} created for user {user_id}")
        return story

    def begin_scripting(self, story_id: int) -> Story:
        story = self.get_story(story_id)
        if story.status == StoryStatus.SCRIPTING:
            return story
        if story.status != StoryStatus.PENDING:
            raise PreconditionError("Script writing can only begin on a pending story.")
        self.orchestrator.advance_to_stage(story, PipelineStage.SCRIPT)
        return story

    def finalize_script(self, story_id: int, script: str) -> Story:
        story = self.get_story(story_id)
        if story.status not in (StoryStatus.PENDING, StoryStatus.SCRIPTING):
            raise PreconditionError("The script can only be finalized before the pipeline starts.")
        if not script or not script.strip():
            raise PreconditionError("Script cannot be empty.")

        story.full_script = script
        story.status = StoryStatus.SCRIPTING
        story.current_stage = PipelineStage.SCRIPT
        self.repository.save_story(story)
        logger.info(f"Story {story.id}: script finalized ({len(script)} chars)")
        return story

    # =========================================================================
    # STAGE MACHINE
    # =========================================================================

    def start(self, story_id: int) -> Story:
        story = self.get_story(story_id)
        if not story.has_script:
            raise PreconditionError("Script must be finalized first.")
        self.orchestrator.start_pipeline(story)
        return story

    def approve_characters(self, story_id: int) -> Story:
        story = self.get_story(story_id)
        self._require_review(story, StoryStatus.CHARACTER_REVIEW, "Characters are not awaiting review.")
        self.orchestrator.advance_to_stage(story, PipelineStage.STORYBOARD)
        return story

    def approve_storyboard(self, story_id: int) -> Story:
        story = self.get_story(story_id)
        self._require_review(story, StoryStatus.STORYBOARD_REVIEW, "Storyboard is not awaiting review.")
        if not self.vault.has(Provider.KLING, story.user_id):
            raise PreconditionError(
                "Kling API key not configured. Add it in Settings before starting video generation."
            )
        self.orchestrator.advance_to_stage(story, PipelineStage.VIDEO)
        return story

    def revert(self, story_id: int, stage: Union[PipelineStage, str]) -> Story:
        story = self.get_story(story_id)
        try:
            target = PipelineStage(stage)
        except ValueError:
            raise PreconditionError("Invalid pipeline stage.") from None

        if target == PipelineStage.VIDEO:
            raise PreconditionError("Cannot revert to the final stage.")

        statuses = self.orchestrator.get_stage_status(story)
        if StageState.IN_PROGRESS in statuses.values():
            raise PreconditionError("Cannot revert while a stage is in progress.")
        if statuses[target] != StageState.COMPLETED:
            raise PreconditionError("Can only revert stages that have been completed.")

        self.orchestrator.revert_to_stage(story, target)
        return story

    def stage_overview(self, story_id: int) -> List[Dict[str, str]]:
        """Derived status of every stage, in pipeline order."""
        story = self.get_story(story_id)
        return [
            {"stage": stage.value, "label": stage.label, "status": state.value}
            for stage, state in self.orchestrator.get_stage_status(story).items()
        ]

    # =========================================================================
    # CHARACTERS
    # =========================================================================

    def create_character(self, story_id: int, name: str, description: str) -> Character:
        story = self.get_story(story_id)
        self._require_review(story, StoryStatus.CHARACTER_REVIEW, "Characters are not awaiting review.")

        character = self.repository.add_character(Character(story_id=story.id, name=name, description=description))
        self.images.regenerate_character(character, description)
        return character

    def update_character(
        self,
        story_id: int,
        character_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Character:
        story = self.get_story(story_id)
        self._require_review(story, StoryStatus.CHARACTER_REVIEW, "Characters are not awaiting review.")
        character = self._character(story, character_id)

        if name is not None:
            character.name = name
        if description is not None:
            character.description = description
        return self.repository.save_character(character)

    def delete_character(self, story_id: int, character_id: int) -> None:
        story = self.get_story(story_id)
        self._require_review(story, StoryStatus.CHARACTER_REVIEW, "Characters are not awaiting review.")
        character = self._character(story, character_id)

        self.media_store.delete(character.image_path)
        self.repository.delete_character(character.id)

    def regenerate_character(self, story_id: int, character_id: int, prompt: str) -> Character:
        story = self.get_story(story_id)
        character = self._character(story, character_id)

        character.description = prompt
        self.images.regenerate_character(character, prompt)
        return character

    def upload_character_image(
        self, story_id: int, character_id: int, content: bytes, extension: str = "jpg"
    ) -> Character:
        story = self.get_story(story_id)
        character = self._character(story, character_id)

        stored = self.media_store.store(content, CHARACTER_MEDIA_DIR.format(story_id=story.id), extension)
        self.media_store.delete(character.image_path)
        character.image_path = stored.path
        character.image_url = stored.url
        return self.repository.save_character(character)

    # =========================================================================
    # STORYBOARD FRAMES
    # =========================================================================

    def regenerate_frame(self, story_id: int, frame_id: int, prompt: str) -> StoryboardFrame:
        story = self.get_story(story_id)
        frame = self._frame(story, frame_id)

        self.images.regenerate_frame(frame, prompt)
        self.reconciler.mark_clips_stale(frame.id)
        return frame

    def upload_frame_image(
        self, story_id: int, frame_id: int, content: bytes, extension: str = "jpg"
    ) -> StoryboardFrame:
        story = self.get_story(story_id)
        return self.reconciler.upload_frame_image(self._frame(story, frame_id), content, extension)

    def delete_frame(self, story_id: int, frame_id: int) -> Optional[ChainDiff]:
        story = self.get_story(story_id)
        return self.reconciler.delete_frame(self._frame(story, frame_id))

    # =========================================================================
    # CLIPS & FINAL VIDEO
    # =========================================================================

    def _require_video_key(self, story: Story) -> None:
        if not self.vault.has(Provider.KLING, story.user_id):
            raise PreconditionError("Kling API key not configured. Add it in Settings before generating video.")

    def generate_clips(self, story_id: int) -> Optional[Video]:
        """Start the sequential chain at the first queued clip."""
        story = self.get_story(story_id)
        if not self.repository.list_clips(story.id):
            raise PreconditionError("No mini-videos to generate.")
        self._require_video_key(story)
        return self.clips.generate_all(story)

    def submit_clip(self, story_id: int, clip_id: int) -> Video:
        story = self.get_story(story_id)
        clip = self._clip(story, clip_id, "submit")
        if clip.status != VideoStatus.QUEUED:
            raise PreconditionError("Only queued mini-videos can be submitted.")
        self.clips.ensure_idle(story.id)
        self._require_video_key(story)

        if not self.clips.dispatch_submit(story.id, clip.id):
            raise PreconditionError(SUBMISSION_IN_FLIGHT)
        return clip

    def regenerate_clip(self, story_id: int, clip_id: int, prompt: Optional[str] = None, **params: Any) -> Video:
        story = self.get_story(story_id)
        clip = self._clip(story, clip_id, "regenerate")
        overrides = clean_clip_params(params)
        self._require_video_key(story)

        if not self.clips.dispatch_regenerate(story.id, clip.id, prompt, overrides):
            raise PreconditionError(SUBMISSION_IN_FLIGHT)
        return clip

    def upload_clip_video(self, story_id: int, clip_id: int, content: bytes, extension: str = "mp4") -> Video:
        story = self.get_story(story_id)
        return self.clips.upload_clip_video(self._clip(story, clip_id, "upload"), content, extension)

    def concatenate(self, story_id: int) -> bool:
        story = self.get_story(story_id)
        clips = self.repository.list_clips(story.id)
        if not clips:
            raise PreconditionError("No mini-videos to concatenate.")
        if any(clip.status != VideoStatus.COMPLETED for clip in clips):
            raise PreconditionError("All mini-videos must be completed before concatenation.")
        return self.assembler.request_concatenation(story.id)

    def track_final_job(self, story_id: int, job_id: str) -> Video:
        story = self.get_story(story_id)
        return self.assembler.track_final_job(story.id, job_id)

    # =========================================================================
    # RESTART
    # =========================================================================

    def resume(self) -> int:
        """
        Re-arm background work after a restart.

        Pollers restart from their persisted attempt counters. Stage workers
        interrupted mid-run are dispatched again; the Video stage only when
        no clips were created yet.
        """
        resumed = 0
        for story in self.repository.list_stories():
            resumed += self.clips.resume_polling(story.id)
            resumed += self.images.resume_polling(story.id)
            resumed += self.assembler.resume_polling(story.id)

            stage = story.current_stage
            if stage is None or story.status != stage.story_status() or stage == PipelineStage.SCRIPT:
                continue
            if stage == PipelineStage.VIDEO and self.repository.list_clips(story.id):
                continue
            logger.info(f"Story {story.id}: re-dispatching interrupted {stage.value} stage")
            self.orchestrator.advance_to_stage(story, stage)
            resumed += 1

        if resumed:
            logger.info(f"Resumed {resumed} background task(s)")
        return resumed


# =============================================================================
# WIRING
# =============================================================================

def create_pipeline(
    settings: Optional[Settings] = None,
    repository: Optional[StoryRepository] = None,
    vault: Optional[CredentialVault] = None,
    text_client: Optional[TextGenerationClient] = None,
    image_client: Optional[ImageGenerationClient] = None,
    video_client: Optional[VideoGenerationClient] = None,
    runner: Optional[FfmpegRunner] = None,
) -> PipelineService:
    """Build a fully wired service; collaborators default to the concrete adapters."""
    settings = settings or get_settings()

    if repository is None:
        repository = JsonStoryRepository(Path(settings.data_file)) if settings.data_file else StoryRepository()
    vault = vault or EnvCredentialVault()
    text_client = text_client or AnthropicClient(
        model=settings.text_model,
        max_tokens=settings.text_max_tokens,
        timeout=settings.text_timeout,
    )
    image_client = image_client or NanoBananaClient()
    video_client = video_client or KlingClient()

    media_store = LocalMediaStore(settings.media_root, settings.media_base_url)
    queue = TaskQueue(
        lane=settings.queue_lane,
        max_workers=settings.max_workers,
        default_timeout=settings.worker_timeout,
    )
    events = EventBus()
    poller = JobPoller(queue)
    usage = UsageRecorder(repository)
    analyst = ScriptAnalyst(text_client, max_tokens=settings.text_max_tokens)

    orchestrator = PipelineOrchestrator(
        repository,
        queue,
        events,
        media_store=media_store,
        stage_retry=settings.stage_retry(),
        stage_timeout=settings.worker_timeout,
    )
    AdvancePipelineListener(orchestrator).attach(events)

    concatenator = VideoConcatenator(
        media_store,
        runner or FfmpegRunner(settings.ffmpeg_binary, settings.ffprobe_binary),
        scratch_dir=settings.scratch_dir,
        probe_timeout=settings.probe_timeout,
        encode_timeout=settings.encode_timeout,
        concat_timeout=settings.concat_timeout,
    )
    assembler = FinalAssembler(
        repository,
        orchestrator,
        queue,
        concatenator,
        media_store=media_store,
        timeout=settings.worker_timeout,
        poller=poller,
        video_client=video_client,
        vault=vault,
        final_policy=settings.poll_policy("final"),
    )
    clips = ClipProducer(
        repository,
        orchestrator,
        queue,
        poller,
        video_client,
        vault,
        usage,
        media_store,
        assembler,
        clip_policy=settings.poll_policy("clip"),
        submit_retry=settings.clip_submit_retry(),
        clip_params={"duration": settings.clip_duration, "mode": settings.clip_mode},
    )
    images = ImageRegenerator(
        repository,
        queue,
        poller,
        image_client,
        vault,
        usage,
        media_store,
        image_policy=settings.poll_policy("image"),
        retry=settings.stage_retry(),
        timeout=settings.worker_timeout,
    )
    reconciler = FrameReconciler(repository, media_store, assembler)

    worker_args = (repository, orchestrator, vault, usage)
    orchestrator.register_worker(CharacterWorker(*worker_args, analyst=analyst))
    orchestrator.register_worker(StoryboardWorker(*worker_args, analyst=analyst))
    orchestrator.register_worker(VideoProductionWorker(
        *worker_args,
        analyst=analyst,
        on_clips_ready=clips.generate_all if settings.auto_generate_clips else None,
    ))

    return PipelineService(
        repository,
        orchestrator,
        queue,
        vault,
        media_store,
        images,
        clips,
        assembler,
        reconciler,
    )

"""
Clip Production

Turns queued clips into finished video, strictly one at a time per story:

    submit clip -> poll until done -> download -> submit the next queued clip
                                               -> or, when every clip is done,
                                                  request concatenation

A story never has more than one clip in ``processing``. Regenerating or
uploading a single clip leaves the stage machine alone, but invalidates
the final video.
"""

from functools import partial
from typing import Any, Dict, Optional

from storyreel.core.constants import VIDEO_MEDIA_DIR, PipelineStage, Provider, VideoStatus
from storyreel.core.exceptions import PreconditionError
from storyreel.core.logging_config import get_logger
from storyreel.core.retry import PollPolicy, RetryConfig
from storyreel.llm.api_clients import CallContext, JobStatus, VideoGenerationClient
from storyreel.models.entities import Story, StoryboardFrame, Video
from storyreel.pipelines.final_assembly import FinalAssembler
from storyreel.pipelines.orchestrator import PipelineOrchestrator
from storyreel.pipelines.poller import JobPoller, PollTarget
from storyreel.pipelines.task_queue import TaskQueue
from storyreel.storage.credentials import CredentialVault
from storyreel.storage.media_store import LocalMediaStore
from storyreel.storage.repository import StoryRepository
from storyreel.storage.usage import UsageRecorder

logger = get_logger("pipelines.clip_production")

SUBMISSION_IN_FLIGHT = "A mini-video submission is already in progress."


def chain_key(story_id: int) -> str:
    """Queue key shared by every clip submission of a story."""
    return f"clip-chain-{story_id}"


class ClipProducer:
    """Submits clips to the video provider and chains them to completion."""

    def __init__(
        self,
        repository: StoryRepository,
        orchestrator: PipelineOrchestrator,
        queue: TaskQueue,
        poller: JobPoller,
        video_client: VideoGenerationClient,
        vault: CredentialVault,
        usage: UsageRecorder,
        media_store: LocalMediaStore,
        assembler: FinalAssembler,
        clip_policy: Optional[PollPolicy] = None,
        submit_retry: Optional[RetryConfig] = None,
        clip_params: Optional[Dict[str, Any]] = None,
    ):
        self.repository = repository
        self.orchestrator = orchestrator
        self.queue = queue
        self.poller = poller
        self.video_client = video_client
        self.vault = vault
        self.usage = usage
        self.media_store = media_store
        self.assembler = assembler
        self.clip_policy = clip_policy or PollPolicy(interval=30, max_attempts=60, initial_delay=60)
        self.submit_retry = submit_retry or RetryConfig.fixed(3, 30)
        self.clip_params = clip_params or {"duration": "5", "mode": "pro"}

    def context_for(self, story: Story) -> CallContext:
        api_key = self.vault.require(Provider.KLING, story.user_id)
        return CallContext(user_id=story.user_id, api_key=api_key)

    def busy_clip(self, story_id: int, exclude_id: Optional[int] = None) -> Optional[Video]:
        """The clip currently being generated for this story, if any."""
        for clip in self.repository.list_clips(story_id):
            if clip.status == VideoStatus.PROCESSING and clip.id != exclude_id:
                return clip
        return None

    def ensure_idle(self, story_id: int, clip_id: Optional[int] = None) -> None:
        busy = self.busy_clip(story_id, exclude_id=clip_id)
        if busy is not None:
            raise PreconditionError(f"Clip #{busy.sequence_number} is still being generated.")

    def _frame_pair(self, clip: Video):
        frame_from = self.repository.get_frame(clip.frame_from_id)
        frame_to = self.repository.get_frame(clip.frame_to_id)
        if not _has_image(frame_from) or not _has_image(frame_to):
            return None
        return frame_from, frame_to

    def _start_polling(self, clip: Video, job_id: str, attempt: int = 0, delay: Optional[float] = None) -> bool:
        return self.poller.start(ClipPollTarget(self, clip.id), job_id, self.clip_policy, attempt=attempt, delay=delay)

    # =========================================================================
    # SEQUENTIAL SUBMISSION
    # =========================================================================

    def generate_all(self, story: Story) -> Optional[Video]:
        """Start the chain with the first queued clip; None if nothing is queued."""
        self.ensure_idle(story.id)

        for clip in self.repository.list_clips(story.id):
            if clip.status == VideoStatus.QUEUED:
                if not self.dispatch_submit(story.id, clip.id):
                    raise PreconditionError(SUBMISSION_IN_FLIGHT)
                return clip
        return None

    def dispatch_submit(self, story_id: int, clip_id: int) -> bool:
        return self.queue.dispatch(
            "submit-clip",
            self.submit_clip,
            story_id,
            clip_id,
            retry=self.submit_retry,
            unique_key=chain_key(story_id),
            on_failure=partial(self._on_submit_exhausted, story_id),
        )

    async def submit_clip(self, story_id: int, clip_id: int) -> None:
        story = self.repository.get_story(story_id)
        clip = self.repository.get_video(clip_id)
        if story is None or clip is None:
            logger.warning(f"Submit skipped: story {story_id} or clip {clip_id} no longer exists")
            return
        if clip.status != VideoStatus.QUEUED:
            logger.info(f"Clip {clip_id} is {clip.status.value}, not submitting")
            return
        self.ensure_idle(story_id, clip_id)

        pair = self._frame_pair(clip)
        if pair is None:
            clip.status = VideoStatus.FAILED
            self.repository.save_video(clip)
            self.orchestrator.fail_stage(
                story, PipelineStage.VIDEO, f"Missing frame images for clip #{clip.sequence_number}"
            )
            return
        frame_from, frame_to = pair

        job_id = await self.video_client.submit(
            self.context_for(story),
            frame_from.image_url,
            frame_to.image_url,
            {"prompt": clip.prompt, **self.clip_params},
        )
        self.usage.record_call(story.id, Provider.KLING.value, "submit_mini_video_generation", {
            "task_id": job_id,
            "sequence_number": clip.sequence_number,
            "frame_from": frame_from.id,
            "frame_to": frame_to.id,
        })

        clip.external_job_id = job_id
        clip.status = VideoStatus.PROCESSING
        clip.annotations.poll_attempts = 0
        self.repository.save_video(clip)
        logger.info(f"Story {story.id}: clip #{clip.sequence_number} submitted as {job_id}")

        self._start_polling(clip, job_id)

    def _on_submit_exhausted(self, story_id: int, error: Exception) -> None:
        story = self.repository.get_story(story_id)
        if story is not None:
            self.orchestrator.fail_stage(story, PipelineStage.VIDEO, str(error))

    def submit_next_or_finish(self, story_id: int, after_sequence: int) -> None:
        """Chain step run after a clip completes."""
        clips = self.repository.list_clips(story_id)

        for clip in clips:
            if clip.status == VideoStatus.QUEUED and clip.sequence_number > after_sequence:
                if not self.dispatch_submit(story_id, clip.id):
                    logger.warning(f"Story {story_id}: clip #{clip.sequence_number} not chained, another submission is pending")
                return

        if clips and all(clip.status == VideoStatus.COMPLETED for clip in clips):
            logger.info(f"Story {story_id}: all {len(clips)} clip(s) completed, requesting concatenation")
            self.assembler.request_concatenation(story_id)

    # =========================================================================
    # PER-CLIP OPERATIONS
    # =========================================================================

    def dispatch_regenerate(
        self,
        story_id: int,
        clip_id: int,
        prompt: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> bool:
        self.ensure_idle(story_id, clip_id)

        return self.queue.dispatch(
            "regenerate-clip",
            self.regenerate_clip,
            story_id,
            clip_id,
            prompt,
            params,
            retry=self.submit_retry,
            unique_key=chain_key(story_id),
        )

    async def regenerate_clip(
        self,
        story_id: int,
        clip_id: int,
        prompt: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> None:
        story = self.repository.get_story(story_id)
        clip = self.repository.get_video(clip_id)
        if story is None or clip is None:
            logger.warning(f"Regenerate skipped: story {story_id} or clip {clip_id} no longer exists")
            return
        self.ensure_idle(story_id, clip_id)

        self.assembler.discard_final(story_id)

        if prompt:
            clip.prompt = prompt
            self.repository.save_video(clip)

        pair = self._frame_pair(clip)
        if pair is None:
            logger.warning(f"Clip {clip_id}: frame images missing, cannot regenerate")
            clip.status = VideoStatus.FAILED
            self.repository.save_video(clip)
            return
        frame_from, frame_to = pair

        try:
            job_id = await self.video_client.submit(
                self.context_for(story),
                frame_from.image_url,
                frame_to.image_url,
                {"prompt": clip.prompt, **self.clip_params, **(params or {})},
            )
        except Exception as e:
            logger.error(f"Clip {clip_id}: regeneration submit failed: {e}")
            clip.status = VideoStatus.FAILED
            self.repository.save_video(clip)
            raise

        self.usage.record_call(story.id, Provider.KLING.value, "regenerate_mini_video", {
            "task_id": job_id,
            "video_id": clip.id,
            "sequence_number": clip.sequence_number,
            "params": dict(params or {}),
        })

        self.media_store.delete(clip.video_path)
        clip.annotations.stale = False
        clip.annotations.poll_attempts = 0
        clip.external_job_id = job_id
        clip.status = VideoStatus.PROCESSING
        clip.video_url = None
        clip.video_path = None
        clip.duration_seconds = None
        self.repository.save_video(clip)
        logger.info(f"Story {story.id}: clip #{clip.sequence_number} resubmitted as {job_id}")

        self._start_polling(clip, job_id)

    def upload_clip_video(self, clip: Video, content: bytes, extension: str = "mp4") -> Video:
        """Replace a clip's video with a user-supplied file."""
        stored = self.media_store.store(content, VIDEO_MEDIA_DIR.format(story_id=clip.story_id), extension)
        self.media_store.delete(clip.video_path)

        clip.video_path = stored.path
        clip.video_url = stored.url
        clip.duration_seconds = None
        clip.external_job_id = None
        clip.status = VideoStatus.COMPLETED
        clip.annotations.stale = False
        self.repository.save_video(clip)

        self.assembler.discard_final(clip.story_id)
        logger.info(f"Clip {clip.id}: uploaded video stored at {stored.path}")
        return clip

    def resume_polling(self, story_id: int) -> int:
        """Re-arm polling for clips left processing by a previous process."""
        resumed = 0
        for clip in self.repository.list_clips(story_id):
            if clip.status != VideoStatus.PROCESSING or not clip.external_job_id:
                continue
            if self._start_polling(clip, clip.external_job_id, attempt=clip.annotations.poll_attempts, delay=0):
                resumed += 1
        return resumed


def _has_image(frame: Optional[StoryboardFrame]) -> bool:
    return frame is not None and bool(frame.image_url)


class ClipPollTarget(PollTarget):
    """Polls one clip's provider job; the result is downloaded into the media store."""

    label = "Mini-video generation"
    poll_label = "Mini-video"

    def __init__(self, producer: ClipProducer, clip_id: int):
        self.producer = producer
        self.clip_id = clip_id

    @property
    def key(self) -> str:
        return f"clip-{self.clip_id}"

    def _clip(self) -> Optional[Video]:
        return self.producer.repository.get_video(self.clip_id)

    def is_active(self, job_id: str) -> bool:
        clip = self._clip()
        return clip is not None and clip.external_job_id == job_id and clip.status == VideoStatus.PROCESSING

    def record_attempt(self, attempt: int) -> None:
        clip = self._clip()
        if clip is not None:
            clip.annotations.poll_attempts = attempt
            self.producer.repository.save_video(clip)

    async def check(self, job_id: str) -> JobStatus:
        clip = self._clip()
        story = self.producer.repository.require_story(clip.story_id)
        return await self.producer.video_client.poll(self.producer.context_for(story), job_id)

    async def on_completed(self, job_id: str, status: JobStatus) -> None:
        producer = self.producer
        clip = self._clip()
        if not status.result_url:
            raise ValueError("provider reported success without a video URL")

        stored = await producer.media_store.download(
            status.result_url, VIDEO_MEDIA_DIR.format(story_id=clip.story_id), "mp4"
        )

        clip.status = VideoStatus.COMPLETED
        clip.video_path = stored.path
        clip.video_url = stored.url
        clip.duration_seconds = status.duration_seconds
        producer.repository.save_video(clip)
        logger.info(f"Story {clip.story_id}: clip #{clip.sequence_number} completed")

        producer.submit_next_or_finish(clip.story_id, clip.sequence_number)

    async def on_failed(self, job_id: str, message: str) -> None:
        producer = self.producer
        clip = self._clip()
        if clip is None:
            return
        clip.status = VideoStatus.FAILED
        producer.repository.save_video(clip)

        story = producer.repository.get_story(clip.story_id)
        if story is not None:
            producer.orchestrator.fail_stage(story, PipelineStage.VIDEO, message)

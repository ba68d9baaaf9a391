"""
Final Assembly

Produces the story's single final video, either by concatenating every
completed clip locally, or by tracking one provider-side job that renders
the whole video and hands back a URL. Both paths end in
``complete_stage(VIDEO)`` on success and ``fail_stage(VIDEO, ...)`` on
failure.
"""

from functools import partial
from typing import Optional

from storyreel.core.constants import JobState, PipelineStage, Provider, VideoStatus
from storyreel.core.exceptions import MissingCredentialError
from storyreel.core.logging_config import get_logger
from storyreel.core.retry import PollPolicy
from storyreel.llm.api_clients import CallContext, JobStatus, VideoGenerationClient
from storyreel.models.entities import Video
from storyreel.pipelines.orchestrator import PipelineOrchestrator
from storyreel.pipelines.poller import JobPoller, PollTarget
from storyreel.pipelines.task_queue import TaskQueue, TaskTimeoutError
from storyreel.storage.credentials import CredentialVault
from storyreel.storage.media_store import LocalMediaStore
from storyreel.storage.repository import StoryRepository
from storyreel.video.concatenation import ClipSource, VideoConcatenator

logger = get_logger("pipelines.final_assembly")


class FinalAssembler:
    """Builds or tracks the final video of a story."""

    def __init__(
        self,
        repository: StoryRepository,
        orchestrator: PipelineOrchestrator,
        queue: TaskQueue,
        concatenator: VideoConcatenator,
        media_store: Optional[LocalMediaStore] = None,
        timeout: float = 600,
        poller: Optional[JobPoller] = None,
        video_client: Optional[VideoGenerationClient] = None,
        vault: Optional[CredentialVault] = None,
        final_policy: Optional[PollPolicy] = None,
    ):
        self.repository = repository
        self.orchestrator = orchestrator
        self.queue = queue
        self.concatenator = concatenator
        self.media_store = media_store
        self.timeout = timeout
        self.poller = poller
        self.video_client = video_client
        self.vault = vault
        self.final_policy = final_policy or PollPolicy(interval=15, max_attempts=120, initial_delay=15)

    # =========================================================================
    # CONCATENATION
    # =========================================================================

    def request_concatenation(self, story_id: int) -> bool:
        """Queue the concatenation task; False if one is already queued or running."""
        return self.queue.dispatch(
            "concatenate-videos",
            self.concatenate,
            story_id,
            timeout=self.timeout,
            unique_key=f"concatenate-{story_id}",
            on_failure=partial(self._on_timeout, story_id),
        )

    async def concatenate(self, story_id: int) -> None:
        story = self.repository.get_story(story_id)
        if story is None:
            logger.error(f"Concatenation: story {story_id} not found")
            return

        clips = self.repository.list_clips(story_id)
        if not clips or any(clip.status != VideoStatus.COMPLETED for clip in clips):
            logger.warning(f"Story {story_id}: not all clips are completed, skipping concatenation")
            return

        try:
            self.discard_final(story_id)
            result = await self.concatenator.concatenate_async(
                story_id,
                [
                    ClipSource(
                        path=clip.video_path,
                        url=clip.video_url,
                        duration_seconds=clip.duration_seconds,
                        label=f"#{clip.sequence_number}",
                    )
                    for clip in clips
                ],
            )

            self.repository.add_video(Video(
                story_id=story_id,
                is_final=True,
                status=VideoStatus.COMPLETED,
                video_path=result.path,
                video_url=result.url,
                duration_seconds=result.duration_seconds,
            ))
            logger.info(f"Story {story_id}: final video assembled from {len(clips)} clip(s)")
            self.orchestrator.complete_stage(story, PipelineStage.VIDEO)
        except Exception as e:
            logger.error(f"Story {story_id}: concatenation failed: {e}")
            self.orchestrator.fail_stage(story, PipelineStage.VIDEO, f"Video concatenation failed: {e}")

    def _on_timeout(self, story_id: int, error: Exception) -> None:
        if not isinstance(error, TaskTimeoutError):
            return
        story = self.repository.get_story(story_id)
        if story is not None:
            self.orchestrator.fail_stage(story, PipelineStage.VIDEO, f"Video concatenation failed: {error}")

    def discard_final(self, story_id: int) -> int:
        """Delete the final video row and its stored file."""
        final = self.repository.get_final_video(story_id)
        if final is not None and self.media_store is not None:
            self.media_store.delete(final.video_path)
        return self.repository.delete_final_videos(story_id)

    # =========================================================================
    # PROVIDER-RENDERED FINAL VIDEO
    # =========================================================================

    def track_final_job(self, story_id: int, job_id: str) -> Video:
        """Record a provider job that renders the whole video and start polling it."""
        if self.poller is None or self.video_client is None or self.vault is None:
            raise RuntimeError("Final job tracking requires a poller, a video client and a credential vault")

        self.repository.require_story(story_id)
        self.discard_final(story_id)
        video = self.repository.add_video(Video(
            story_id=story_id,
            is_final=True,
            external_job_id=job_id,
            status=VideoStatus.PROCESSING,
        ))
        self.poller.start(FinalVideoPollTarget(self, video.id), job_id, self.final_policy)
        return video

    def resume_polling(self, story_id: int) -> int:
        """Re-arm polling for a final job left processing by a previous process."""
        if self.poller is None:
            return 0
        final = self.repository.get_final_video(story_id)
        if final is None or final.status != VideoStatus.PROCESSING or not final.external_job_id:
            return 0
        started = self.poller.start(
            FinalVideoPollTarget(self, final.id),
            final.external_job_id,
            self.final_policy,
            attempt=final.annotations.poll_attempts,
            delay=0,
        )
        return 1 if started else 0


class FinalVideoPollTarget(PollTarget):
    """Polls a provider-rendered final video; the result URL is stored as-is."""

    label = "Video generation"

    def __init__(self, assembler: FinalAssembler, video_id: int):
        self.assembler = assembler
        self.video_id = video_id

    @property
    def key(self) -> str:
        return f"final-{self.video_id}"

    def _video(self) -> Optional[Video]:
        return self.assembler.repository.get_video(self.video_id)

    def is_active(self, job_id: str) -> bool:
        video = self._video()
        return (
            video is not None
            and video.external_job_id == job_id
            and video.status == VideoStatus.PROCESSING
        )

    def record_attempt(self, attempt: int) -> None:
        video = self._video()
        if video is not None:
            video.annotations.poll_attempts = attempt
            self.assembler.repository.save_video(video)

    async def check(self, job_id: str) -> JobStatus:
        video = self._video()
        story = self.assembler.repository.require_story(video.story_id)
        try:
            api_key = self.assembler.vault.require(Provider.KLING, story.user_id)
        except MissingCredentialError as e:
            return JobStatus(state=JobState.FAILED, error=str(e))
        return await self.assembler.video_client.poll(CallContext(user_id=story.user_id, api_key=api_key), job_id)

    async def on_completed(self, job_id: str, status: JobStatus) -> None:
        repository = self.assembler.repository
        video = self._video()
        video.video_url = status.result_url
        video.duration_seconds = status.duration_seconds
        video.status = VideoStatus.COMPLETED
        repository.save_video(video)

        logger.info(f"Story {video.story_id}: final video ready at {status.result_url}")
        story = repository.require_story(video.story_id)
        self.assembler.orchestrator.complete_stage(story, PipelineStage.VIDEO)

    async def on_failed(self, job_id: str, message: str) -> None:
        repository = self.assembler.repository
        video = self._video()
        if video is None:
            return
        video.status = VideoStatus.FAILED
        repository.save_video(video)

        story = repository.get_story(video.story_id)
        if story is not None:
            self.assembler.orchestrator.fail_stage(story, PipelineStage.VIDEO, message)

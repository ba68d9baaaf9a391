"""
Video stage entry.

Builds the clip chain: one queued clip per consecutive frame pair, each
with a motion prompt. Submission to the video provider happens later, one
clip at a time, so this worker never completes the stage itself.
"""

from typing import Callable, List, Optional

from storyreel.core.constants import MIN_FRAMES_FOR_VIDEO, PipelineStage, Provider, VideoStatus
from storyreel.core.logging_config import get_logger
from storyreel.llm.script_analyst import ScriptAnalyst, Transition
from storyreel.models.entities import Story, StoryboardFrame, Video
from storyreel.pipelines.workers.base import StageWorker

logger = get_logger("pipelines.workers.production")


def build_transitions(frames: List[StoryboardFrame]) -> List[Transition]:
    return [
        Transition(
            from_seq=a.sequence_number,
            to_seq=b.sequence_number,
            from_desc=a.scene_description or a.prompt or "",
            to_desc=b.scene_description or b.prompt or "",
        )
        for a, b in zip(frames, frames[1:])
    ]


class VideoProductionWorker(StageWorker):
    """Creates N-1 queued clip placeholders for N frames."""

    stage = PipelineStage.VIDEO

    def __init__(
        self,
        *args,
        analyst: ScriptAnalyst,
        on_clips_ready: Optional[Callable[[Story], None]] = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.analyst = analyst
        self.on_clips_ready = on_clips_ready

    async def handle(self, story: Story) -> None:
        self.orchestrator.delete_videos(story)

        if self.context_for(story, Provider.KLING) is None:
            return

        frames = self.repository.list_frames(story.id)
        if len(frames) < MIN_FRAMES_FOR_VIDEO:
            logger.warning(f"Story {story.id}: only {len(frames)} frame(s), cannot build clips")
            self.orchestrator.fail_stage(
                story, self.stage,
                f"At least {MIN_FRAMES_FOR_VIDEO} storyboard frames are required to produce video clips.",
            )
            return

        ctx = self.context_for(story, Provider.ANTHROPIC)
        if ctx is None:
            return

        transitions = build_transitions(frames)
        result = await self.analyst.generate_transition_prompts(ctx, story.full_script or "", transitions)
        self.usage.record_text(
            story.id, Provider.ANTHROPIC.value, "generate_video_prompts",
            result.input_tokens, result.output_tokens,
        )

        for index, (frame_from, frame_to) in enumerate(zip(frames, frames[1:])):
            self.repository.add_video(Video(
                story_id=story.id,
                sequence_number=index + 1,
                is_final=False,
                prompt=result.items[index],
                frame_from_id=frame_from.id,
                frame_to_id=frame_to.id,
                status=VideoStatus.QUEUED,
            ))

        logger.info(f"Story {story.id}: {len(transitions)} clip(s) queued")

        if self.on_clips_ready is not None:
            self.on_clips_ready(story)

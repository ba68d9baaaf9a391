"""
Storyboard stage.

Three steps inside one stage: estimate scene durations, compute frame
timestamps per scene, then describe every frame in one batched call.
"""

from typing import List

from storyreel.core.constants import (
    DEFAULT_SCENE_DURATION,
    FRAME_INTERVAL_SECONDS,
    MIN_SCENE_DURATION,
    PipelineStage,
    Provider,
)
from storyreel.core.logging_config import get_logger
from storyreel.llm import prompts
from storyreel.llm.script_analyst import SceneEstimate, SceneFrames, ScriptAnalyst
from storyreel.models.entities import FrameAnnotations, Story, StoryboardFrame
from storyreel.pipelines.workers.base import StageWorker

logger = get_logger("pipelines.workers.storyboard")


def calculate_frame_timestamps(duration_seconds: int) -> List[int]:
    """
    Frame timestamps for a scene: the start, every 5s, and the end.

    Examples:
        15 -> [0, 5, 10, 15]
        8  -> [0, 5, 8]
        3  -> [0, 3]
        12 -> [0, 5, 10, 12]
    """
    timestamps = [0]
    t = FRAME_INTERVAL_SECONDS
    while t < duration_seconds:
        timestamps.append(t)
        t += FRAME_INTERVAL_SECONDS
    if timestamps[-1] != duration_seconds:
        timestamps.append(duration_seconds)
    return timestamps


def scene_duration(scene: SceneEstimate) -> int:
    return max(int(scene.duration_seconds or DEFAULT_SCENE_DURATION), MIN_SCENE_DURATION)


def build_frame_structure(scenes: List[SceneEstimate]) -> List[SceneFrames]:
    structure = []
    for scene in scenes:
        duration = scene_duration(scene)
        structure.append(SceneFrames(
            scene=scene.scene,
            duration_seconds=duration,
            summary=scene.summary,
            frames=calculate_frame_timestamps(duration),
        ))
    return structure


class StoryboardWorker(StageWorker):
    """Creates the ordered StoryboardFrame list for a story."""

    stage = PipelineStage.STORYBOARD

    def __init__(self, *args, analyst: ScriptAnalyst, **kwargs):
        super().__init__(*args, **kwargs)
        self.analyst = analyst

    async def handle(self, story: Story) -> None:
        self.orchestrator.delete_frames(story)

        if not self.require_script(story):
            return
        ctx = self.context_for(story, Provider.ANTHROPIC)
        if ctx is None:
            return

        durations = await self.analyst.estimate_scene_durations(ctx, story.full_script)
        self.usage.record_text(
            story.id, Provider.ANTHROPIC.value, "estimate_scene_durations",
            durations.input_tokens, durations.output_tokens,
        )

        structure = build_frame_structure(durations.items)
        total = sum(len(s.frames) for s in structure)
        logger.info(f"Story {story.id}: {len(structure)} scene(s), {total} frame(s) planned")

        names = [c.name for c in self.repository.list_characters(story.id)]
        descriptions = await self.analyst.generate_frame_descriptions(ctx, story.full_script, structure, names)
        self.usage.record_text(
            story.id, Provider.ANTHROPIC.value, "generate_frame_descriptions",
            descriptions.input_tokens, descriptions.output_tokens,
        )

        for position, panel in enumerate(descriptions.items, start=1):
            self.repository.add_frame(StoryboardFrame(
                story_id=story.id,
                sequence_number=position,
                scene_description=f"[Scene {panel.scene} @ {panel.second}s] {panel.description}",
                prompt=prompts.frame_image_prompt(panel.description),
                annotations=FrameAnnotations(
                    scene=panel.scene,
                    second=panel.second,
                    characters=list(panel.characters),
                ),
            ))

        self.orchestrator.complete_stage(story, self.stage)

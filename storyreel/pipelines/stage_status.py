"""
Derived stage status.

Each stage's display status is recomputed from persisted facts on every
call; the cached ``Story.status`` is only used to tell in-progress, review
and failed apart. This view is what both the UI and revert checks consult.

Precedence per stage: failed > review > completed > in_progress > pending.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from storyreel.core.constants import PipelineStage, StageState, StoryStatus


@dataclass(frozen=True)
class StageFacts:
    """Existence predicates read from storage."""
    has_script: bool = False
    has_characters: bool = False
    has_frames: bool = False
    has_final_video: bool = False

    def exists(self, stage: PipelineStage) -> bool:
        return {
            PipelineStage.SCRIPT: self.has_script,
            PipelineStage.CHARACTERS: self.has_characters,
            PipelineStage.STORYBOARD: self.has_frames,
            PipelineStage.VIDEO: self.has_final_video,
        }[stage]


def derive_stage_state(
    stage: PipelineStage,
    facts: StageFacts,
    status: StoryStatus,
    current_stage: Optional[PipelineStage],
) -> StageState:
    if status == StoryStatus.FAILED and current_stage == stage:
        return StageState.FAILED

    review = stage.review_status()
    if review is not None and status == review:
        return StageState.REVIEW

    if facts.exists(stage):
        return StageState.COMPLETED

    if status == stage.story_status():
        return StageState.IN_PROGRESS

    return StageState.PENDING


def derive_stage_statuses(
    facts: StageFacts,
    status: StoryStatus,
    current_stage: Optional[PipelineStage],
) -> Dict[PipelineStage, StageState]:
    """Status of all four stages, in pipeline order."""
    return {
        stage: derive_stage_state(stage, facts, status, current_stage)
        for stage in PipelineStage
    }

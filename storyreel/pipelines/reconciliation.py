"""
Frame Reconciliation

Keeps the clip chain consistent with the storyboard when frames are edited
out of band (user deletes a frame or replaces its image).

Invariant: after ``delete_frame`` returns, frame sequence numbers are
1..N with no gaps and the clip chain holds exactly one clip per
consecutive frame pair, in order.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from storyreel.core.constants import FRAME_MEDIA_DIR, VideoStatus
from storyreel.core.logging_config import get_logger
from storyreel.llm.prompts import default_clip_prompt
from storyreel.models.entities import StoryboardFrame, Video
from storyreel.pipelines.final_assembly import FinalAssembler
from storyreel.storage.media_store import LocalMediaStore
from storyreel.storage.repository import StoryRepository

logger = get_logger("pipelines.reconciliation")


@dataclass
class ChainDiff:
    """What a chain rebuild did, by clip id."""
    kept: List[int] = field(default_factory=list)
    created: List[int] = field(default_factory=list)
    deleted: List[int] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.deleted)


class FrameReconciler:
    """Frame deletion, re-sequencing, clip-chain rebuild and stale flags."""

    def __init__(self, repository: StoryRepository, media_store: LocalMediaStore, assembler: FinalAssembler):
        self.repository = repository
        self.media_store = media_store
        self.assembler = assembler

    def delete_frame(self, frame: StoryboardFrame) -> Optional[ChainDiff]:
        """
        Delete a frame and repair everything that depended on its position.

        Returns the chain diff, or None when the story has no clips yet.
        """
        story_id = frame.story_id
        had_clips = bool(self.repository.list_clips(story_id))

        self.mark_clips_stale(frame.id)
        self.media_store.delete(frame.image_path)
        self.repository.delete_frame(frame.id)
        self.resequence(story_id)
        logger.info(f"Story {story_id}: frame {frame.id} deleted")

        if not had_clips:
            return None

        diff = self.rebuild_clip_chain(story_id)
        self.assembler.discard_final(story_id)
        return diff

    def resequence(self, story_id: int) -> None:
        """Close gaps so sequence numbers run 1..N in the current order."""
        frames = self.repository.list_frames(story_id)
        self.repository.renumber_frames(story_id, [f.id for f in frames])

    def rebuild_clip_chain(self, story_id: int) -> ChainDiff:
        """
        Diff the desired consecutive frame pairs against existing clips.

        Clips whose (from, to) pair survives keep their content and only
        get a new sequence number; new pairs get a queued clip with the
        default prompt; clips for vanished pairs are deleted. Running it
        twice in a row changes nothing the second time.
        """
        frames = self.repository.list_frames(story_id)
        existing: Dict[Tuple[Optional[int], Optional[int]], Video] = {}
        duplicates: List[Video] = []
        for clip in self.repository.list_clips(story_id):
            if clip.pair in existing:
                duplicates.append(clip)
            else:
                existing[clip.pair] = clip

        diff = ChainDiff()
        for index, (frame_from, frame_to) in enumerate(zip(frames, frames[1:])):
            sequence = index + 1
            clip = existing.pop((frame_from.id, frame_to.id), None)

            if clip is not None:
                if clip.sequence_number != sequence:
                    clip.sequence_number = sequence
                    self.repository.save_video(clip)
                diff.kept.append(clip.id)
                continue

            created = self.repository.add_video(Video(
                story_id=story_id,
                is_final=False,
                sequence_number=sequence,
                prompt=default_clip_prompt(frame_from.sequence_number, frame_to.sequence_number),
                frame_from_id=frame_from.id,
                frame_to_id=frame_to.id,
                status=VideoStatus.QUEUED,
            ))
            diff.created.append(created.id)

        for clip in list(existing.values()) + duplicates:
            self.media_store.delete(clip.video_path)
            self.repository.delete_video(clip.id)
            diff.deleted.append(clip.id)

        if diff.changed:
            logger.info(
                f"Story {story_id}: clip chain rebuilt "
                f"(kept={len(diff.kept)}, created={len(diff.created)}, deleted={len(diff.deleted)})"
            )
        return diff

    def mark_clips_stale(self, frame_id: int) -> int:
        """Flag every clip built from this frame; returns how many were flagged."""
        count = 0
        for video in self._clips_referencing(frame_id):
            video.annotations.stale = True
            self.repository.save_video(video)
            count += 1
        if count:
            logger.debug(f"Frame {frame_id}: {count} clip(s) marked stale")
        return count

    def _clips_referencing(self, frame_id: int) -> List[Video]:
        frame = self.repository.get_frame(frame_id)
        if frame is None:
            return []
        return [clip for clip in self.repository.list_clips(frame.story_id) if clip.references(frame_id)]

    def upload_frame_image(self, frame: StoryboardFrame, content: bytes, extension: str = "jpg") -> StoryboardFrame:
        """Replace a frame's image with a user-supplied one; the frame keeps its identity."""
        stored = self.media_store.store(content, FRAME_MEDIA_DIR.format(story_id=frame.story_id), extension)
        self.media_store.delete(frame.image_path)

        frame.image_path = stored.path
        frame.image_url = stored.url
        self.repository.save_frame(frame)

        self.mark_clips_stale(frame.id)
        return frame

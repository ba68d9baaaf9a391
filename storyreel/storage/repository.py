"""
Story Repository

Identity-mapped record store for stories, characters, frames, videos and
usage rows. Lookups return the live record objects; callers mutate them and
call the matching ``save_*`` so invariants are re-checked and the change is
committed.

Invariants enforced here:
- ``(story_id, sequence_number)`` is unique among storyboard frames
- at most one final video exists per story
- deleting a frame nulls the weak frame references held by clips
"""

import threading
from datetime import datetime
from typing import Dict, List, Optional

from storyreel.core.exceptions import IntegrityError, RecordNotFoundError
from storyreel.core.logging_config import get_logger
from storyreel.models.entities import ApiUsage, Character, Story, StoryboardFrame, Video

logger = get_logger("storage.repository")


class StoryRepository:
    """In-memory repository. Subclasses persist by overriding ``_commit``."""

    def __init__(self):
        self._lock = threading.RLock()
        self._stories: Dict[int, Story] = {}
        self._characters: Dict[int, Character] = {}
        self._frames: Dict[int, StoryboardFrame] = {}
        self._videos: Dict[int, Video] = {}
        self._usage: Dict[int, ApiUsage] = {}
        self._sequences: Dict[str, int] = {}

    def _next_id(self, table: str) -> int:
        self._sequences[table] = self._sequences.get(table, 0) + 1
        return self._sequences[table]

    def _commit(self) -> None:
        """Hook called after every mutation."""
        pass

    # =========================================================================
    # STORIES
    # =========================================================================

    def add_story(self, story: Story) -> Story:
        with self._lock:
            story.id = self._next_id("stories")
            self._stories[story.id] = story
            self._commit()
        return story

    def get_story(self, story_id: int) -> Optional[Story]:
        return self._stories.get(story_id)

    def require_story(self, story_id: int) -> Story:
        story = self.get_story(story_id)
        if story is None:
            raise RecordNotFoundError("Story", story_id)
        return story

    def save_story(self, story: Story) -> Story:
        with self._lock:
            story.updated_at = datetime.now()
            self._stories[story.id] = story
            self._commit()
        return story

    def list_stories(self, user_id=None) -> List[Story]:
        stories = list(self._stories.values())
        if user_id is not None:
            stories = [s for s in stories if s.user_id == user_id]
        return sorted(stories, key=lambda s: s.id)

    # =========================================================================
    # CHARACTERS
    # =========================================================================

    def add_character(self, character: Character) -> Character:
        with self._lock:
            character.id = self._next_id("characters")
            self._characters[character.id] = character
            self._commit()
        return character

    def get_character(self, character_id: int) -> Optional[Character]:
        return self._characters.get(character_id)

    def require_character(self, character_id: int) -> Character:
        character = self.get_character(character_id)
        if character is None:
            raise RecordNotFoundError("Character", character_id)
        return character

    def save_character(self, character: Character) -> Character:
        with self._lock:
            self._characters[character.id] = character
            self._commit()
        return character

    def list_characters(self, story_id: int) -> List[Character]:
        return sorted(
            (c for c in self._characters.values() if c.story_id == story_id),
            key=lambda c: c.id,
        )

    def delete_character(self, character_id: int) -> bool:
        with self._lock:
            removed = self._characters.pop(character_id, None)
            self._commit()
        return removed is not None

    def delete_characters(self, story_id: int) -> int:
        with self._lock:
            doomed = [c.id for c in self._characters.values() if c.story_id == story_id]
            for character_id in doomed:
                del self._characters[character_id]
            self._commit()
        return len(doomed)

    # =========================================================================
    # STORYBOARD FRAMES
    # =========================================================================

    def _check_frame_sequence(self, frame: StoryboardFrame) -> None:
        for other in self._frames.values():
            if (
                other.id != frame.id
                and other.story_id == frame.story_id
                and other.sequence_number == frame.sequence_number
            ):
                raise IntegrityError(
                    f"Frame sequence {frame.sequence_number} already used in story {frame.story_id}",
                    {"story_id": frame.story_id, "sequence_number": frame.sequence_number},
                )

    def add_frame(self, frame: StoryboardFrame) -> StoryboardFrame:
        with self._lock:
            self._check_frame_sequence(frame)
            frame.id = self._next_id("frames")
            self._frames[frame.id] = frame
            self._commit()
        return frame

    def get_frame(self, frame_id: Optional[int]) -> Optional[StoryboardFrame]:
        if frame_id is None:
            return None
        return self._frames.get(frame_id)

    def require_frame(self, frame_id: int) -> StoryboardFrame:
        frame = self.get_frame(frame_id)
        if frame is None:
            raise RecordNotFoundError("StoryboardFrame", frame_id)
        return frame

    def save_frame(self, frame: StoryboardFrame) -> StoryboardFrame:
        with self._lock:
            self._check_frame_sequence(frame)
            self._frames[frame.id] = frame
            self._commit()
        return frame

    def list_frames(self, story_id: int) -> List[StoryboardFrame]:
        return sorted(
            (f for f in self._frames.values() if f.story_id == story_id),
            key=lambda f: (f.sequence_number, f.id),
        )

    def renumber_frames(self, story_id: int, ordered_ids: List[int]) -> None:
        """Assign sequence numbers 1..N in the given order as one change."""
        with self._lock:
            story_frames = {f.id for f in self._frames.values() if f.story_id == story_id}
            if set(ordered_ids) != story_frames:
                raise IntegrityError(
                    f"Renumbering must cover every frame of story {story_id}",
                    {"story_id": story_id},
                )
            for position, frame_id in enumerate(ordered_ids, start=1):
                self._frames[frame_id].sequence_number = position
            self._commit()

    def _release_frame_references(self, frame_ids) -> None:
        for video in self._videos.values():
            if video.frame_from_id in frame_ids:
                video.frame_from_id = None
            if video.frame_to_id in frame_ids:
                video.frame_to_id = None

    def delete_frame(self, frame_id: int) -> bool:
        with self._lock:
            removed = self._frames.pop(frame_id, None)
            if removed is not None:
                self._release_frame_references({frame_id})
            self._commit()
        return removed is not None

    def delete_frames(self, story_id: int) -> int:
        with self._lock:
            doomed = {f.id for f in self._frames.values() if f.story_id == story_id}
            for frame_id in doomed:
                del self._frames[frame_id]
            self._release_frame_references(doomed)
            self._commit()
        return len(doomed)

    # =========================================================================
    # VIDEOS
    # =========================================================================

    def _check_single_final(self, video: Video) -> None:
        if not video.is_final:
            return
        for other in self._videos.values():
            if other.id != video.id and other.story_id == video.story_id and other.is_final:
                raise IntegrityError(
                    f"Story {video.story_id} already has a final video",
                    {"story_id": video.story_id, "existing_id": other.id},
                )

    def add_video(self, video: Video) -> Video:
        with self._lock:
            self._check_single_final(video)
            video.id = self._next_id("videos")
            self._videos[video.id] = video
            self._commit()
        return video

    def get_video(self, video_id: int) -> Optional[Video]:
        return self._videos.get(video_id)

    def require_video(self, video_id: int) -> Video:
        video = self.get_video(video_id)
        if video is None:
            raise RecordNotFoundError("Video", video_id)
        return video

    def save_video(self, video: Video) -> Video:
        with self._lock:
            self._check_single_final(video)
            self._videos[video.id] = video
            self._commit()
        return video

    def list_clips(self, story_id: int) -> List[Video]:
        """Non-final videos of a story in sequence order."""
        return sorted(
            (
                v for v in self._videos.values()
                if v.story_id == story_id and not v.is_final and v.sequence_number is not None
            ),
            key=lambda v: (v.sequence_number, v.id),
        )

    def get_final_video(self, story_id: int) -> Optional[Video]:
        for video in self._videos.values():
            if video.story_id == story_id and video.is_final:
                return video
        return None

    def delete_video(self, video_id: int) -> bool:
        with self._lock:
            removed = self._videos.pop(video_id, None)
            self._commit()
        return removed is not None

    def delete_final_videos(self, story_id: int) -> int:
        with self._lock:
            doomed = [v.id for v in self._videos.values() if v.story_id == story_id and v.is_final]
            for video_id in doomed:
                del self._videos[video_id]
            self._commit()
        return len(doomed)

    def delete_videos(self, story_id: int) -> int:
        with self._lock:
            doomed = [v.id for v in self._videos.values() if v.story_id == story_id]
            for video_id in doomed:
                del self._videos[video_id]
            self._commit()
        return len(doomed)

    # =========================================================================
    # USAGE
    # =========================================================================

    def add_usage(self, usage: ApiUsage) -> ApiUsage:
        with self._lock:
            usage.id = self._next_id("usage")
            self._usage[usage.id] = usage
            self._commit()
        return usage

    def list_usage(self, story_id: Optional[int] = None) -> List[ApiUsage]:
        rows = sorted(self._usage.values(), key=lambda u: u.id)
        if story_id is not None:
            rows = [u for u in rows if u.story_id == story_id]
        return rows

"""Domain records for stories and their generated media."""

from storyreel.models.entities import (
    ApiUsage,
    Character,
    CharacterAnnotations,
    ClipAnnotations,
    FrameAnnotations,
    Story,
    StoryboardFrame,
    Video,
)

__all__ = [
    "ApiUsage",
    "Character",
    "CharacterAnnotations",
    "ClipAnnotations",
    "FrameAnnotations",
    "Story",
    "StoryboardFrame",
    "Video",
]

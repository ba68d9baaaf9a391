"""
Storyreel Domain Entities

Story is the aggregate root; characters, storyboard frames and videos hang
off it. Records get their ``id`` from the repository on insert.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, List, Optional

from storyreel.core.constants import PipelineStage, StoryStatus, VideoStatus


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def _parse_time(value) -> datetime:
    if isinstance(value, datetime):
        return value
    if value:
        return datetime.fromisoformat(value)
    return datetime.now()


# =============================================================================
# ANNOTATIONS
# =============================================================================

@dataclass
class ImageJobAnnotations:
    """Transient state of an image regeneration running against a record."""
    regenerating: bool = False
    error: Optional[str] = None
    task_id: Optional[str] = None
    original_image_url: Optional[str] = None
    poll_attempts: int = 0

    def start_job(self, task_id: str) -> None:
        self.regenerating = True
        self.error = None
        self.task_id = task_id
        self.poll_attempts = 0

    def finish_job(self, image_url: Optional[str] = None) -> None:
        self.regenerating = False
        self.task_id = None
        self.poll_attempts = 0
        if image_url:
            self.original_image_url = image_url

    def fail_job(self, error: str) -> None:
        self.regenerating = False
        self.task_id = None
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]):
        return cls(**_known_fields(cls, data or {}))


@dataclass
class CharacterAnnotations(ImageJobAnnotations):
    """Extra facts about a character portrait."""
    pass


@dataclass
class FrameAnnotations(ImageJobAnnotations):
    """Extra facts about a storyboard frame."""
    scene: Optional[int] = None
    second: Optional[int] = None
    characters: List[str] = field(default_factory=list)


@dataclass
class ClipAnnotations:
    """Extra facts about a clip."""
    stale: bool = False
    poll_attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ClipAnnotations":
        return cls(**_known_fields(cls, data or {}))


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class Story:
    """One end-to-end production run."""
    user_id: Any
    title: str
    synopsis: Optional[str] = None
    full_script: Optional[str] = None
    status: StoryStatus = StoryStatus.PENDING
    current_stage: Optional[PipelineStage] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def has_script(self) -> bool:
        return bool(self.full_script and self.full_script.strip())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "synopsis": self.synopsis,
            "full_script": self.full_script,
            "status": self.status.value,
            "current_stage": self.current_stage.value if self.current_stage else None,
            "error_message": self.error_message,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Story":
        stage = data.get("current_stage")
        return cls(
            id=data.get("id"),
            user_id=data.get("user_id"),
            title=data.get("title", ""),
            synopsis=data.get("synopsis"),
            full_script=data.get("full_script"),
            status=StoryStatus(data.get("status", StoryStatus.PENDING.value)),
            current_stage=PipelineStage(stage) if stage else None,
            error_message=data.get("error_message"),
            metadata=dict(data.get("metadata") or {}),
            created_at=_parse_time(data.get("created_at")),
            updated_at=_parse_time(data.get("updated_at")),
        )


@dataclass
class Character:
    """A character extracted from, or added to, a story."""
    story_id: int
    name: str
    description: str = ""
    image_path: Optional[str] = None
    image_url: Optional[str] = None
    annotations: CharacterAnnotations = field(default_factory=CharacterAnnotations)
    id: Optional[int] = None

    @property
    def reference_url(self) -> Optional[str]:
        return self.annotations.original_image_url or self.image_url

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "story_id": self.story_id,
            "name": self.name,
            "description": self.description,
            "image_path": self.image_path,
            "image_url": self.image_url,
            "annotations": self.annotations.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Character":
        return cls(
            id=data.get("id"),
            story_id=data["story_id"],
            name=data.get("name", ""),
            description=data.get("description", ""),
            image_path=data.get("image_path"),
            image_url=data.get("image_url"),
            annotations=CharacterAnnotations.from_dict(data.get("annotations")),
        )


@dataclass
class StoryboardFrame:
    """One storyboard panel; ``sequence_number`` is dense and 1-based."""
    story_id: int
    sequence_number: int
    scene_description: str = ""
    prompt: str = ""
    image_path: Optional[str] = None
    image_url: Optional[str] = None
    annotations: FrameAnnotations = field(default_factory=FrameAnnotations)
    id: Optional[int] = None

    @property
    def reference_url(self) -> Optional[str]:
        return self.annotations.original_image_url or self.image_url

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "story_id": self.story_id,
            "sequence_number": self.sequence_number,
            "scene_description": self.scene_description,
            "prompt": self.prompt,
            "image_path": self.image_path,
            "image_url": self.image_url,
            "annotations": self.annotations.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoryboardFrame":
        return cls(
            id=data.get("id"),
            story_id=data["story_id"],
            sequence_number=data["sequence_number"],
            scene_description=data.get("scene_description", ""),
            prompt=data.get("prompt", ""),
            image_path=data.get("image_path"),
            image_url=data.get("image_url"),
            annotations=FrameAnnotations.from_dict(data.get("annotations")),
        )


@dataclass
class Video:
    """
    A clip between two consecutive frames, or the story's final cut.

    Clips carry ``sequence_number`` and weak ``frame_from_id``/``frame_to_id``
    references; the final video (``is_final``) carries neither.
    """
    story_id: int
    is_final: bool = False
    sequence_number: Optional[int] = None
    frame_from_id: Optional[int] = None
    frame_to_id: Optional[int] = None
    prompt: Optional[str] = None
    external_job_id: Optional[str] = None
    status: VideoStatus = VideoStatus.QUEUED
    video_path: Optional[str] = None
    video_url: Optional[str] = None
    duration_seconds: Optional[int] = None
    annotations: ClipAnnotations = field(default_factory=ClipAnnotations)
    id: Optional[int] = None

    @property
    def pair(self):
        return (self.frame_from_id, self.frame_to_id)

    def references(self, frame_id: int) -> bool:
        return frame_id in (self.frame_from_id, self.frame_to_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "story_id": self.story_id,
            "is_final": self.is_final,
            "sequence_number": self.sequence_number,
            "frame_from_id": self.frame_from_id,
            "frame_to_id": self.frame_to_id,
            "prompt": self.prompt,
            "external_job_id": self.external_job_id,
            "status": self.status.value,
            "video_path": self.video_path,
            "video_url": self.video_url,
            "duration_seconds": self.duration_seconds,
            "annotations": self.annotations.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Video":
        return cls(
            id=data.get("id"),
            story_id=data["story_id"],
            is_final=bool(data.get("is_final", False)),
            sequence_number=data.get("sequence_number"),
            frame_from_id=data.get("frame_from_id"),
            frame_to_id=data.get("frame_to_id"),
            prompt=data.get("prompt"),
            external_job_id=data.get("external_job_id"),
            status=VideoStatus(data.get("status", VideoStatus.QUEUED.value)),
            video_path=data.get("video_path"),
            video_url=data.get("video_url"),
            duration_seconds=data.get("duration_seconds"),
            annotations=ClipAnnotations.from_dict(data.get("annotations")),
        )


@dataclass
class ApiUsage:
    """One external call, kept for cost accounting."""
    story_id: Optional[int]
    service: str
    operation: str
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "story_id": self.story_id,
            "service": self.service,
            "operation": self.operation,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApiUsage":
        return cls(
            id=data.get("id"),
            story_id=data.get("story_id"),
            service=data.get("service", ""),
            operation=data.get("operation", ""),
            input_tokens=data.get("input_tokens"),
            output_tokens=data.get("output_tokens"),
            metadata=dict(data.get("metadata") or {}),
            created_at=_parse_time(data.get("created_at")),
        )

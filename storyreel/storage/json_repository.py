"""
JSON Story Repository

Repository that snapshots every table to one JSON file after each change,
so pollers can be re-armed from persisted job ids and attempt counters
after a restart.
"""

import json
from pathlib import Path
from typing import Any, Dict

from storyreel.core.exceptions import StorageError
from storyreel.core.logging_config import get_logger
from storyreel.models.entities import ApiUsage, Character, Story, StoryboardFrame, Video
from storyreel.storage.repository import StoryRepository

logger = get_logger("storage.json_repository")

SNAPSHOT_VERSION = 1


class JsonStoryRepository(StoryRepository):
    """Repository backed by a single JSON snapshot file."""

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        self._loading = False
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt repository snapshot: {self.path}", {"error": str(e)}) from e

        self._loading = True
        try:
            self._stories = {s["id"]: Story.from_dict(s) for s in data.get("stories", [])}
            self._characters = {c["id"]: Character.from_dict(c) for c in data.get("characters", [])}
            self._frames = {f["id"]: StoryboardFrame.from_dict(f) for f in data.get("frames", [])}
            self._videos = {v["id"]: Video.from_dict(v) for v in data.get("videos", [])}
            self._usage = {u["id"]: ApiUsage.from_dict(u) for u in data.get("usage", [])}
            self._sequences = {k: int(v) for k, v in data.get("sequences", {}).items()}
        finally:
            self._loading = False

        logger.info(
            f"Loaded snapshot {self.path}: {len(self._stories)} stories, "
            f"{len(self._videos)} videos"
        )

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "sequences": dict(self._sequences),
            "stories": [s.to_dict() for s in self._stories.values()],
            "characters": [c.to_dict() for c in self._characters.values()],
            "frames": [f.to_dict() for f in self._frames.values()],
            "videos": [v.to_dict() for v in self._videos.values()],
            "usage": [u.to_dict() for u in self._usage.values()],
        }

    def _commit(self) -> None:
        if self._loading:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._snapshot(), indent=2, default=str), encoding="utf-8")
        tmp_path.replace(self.path)

"""Usage ledger: one row per external call, consumed for cost accounting."""

from typing import Any, Dict, Optional

from storyreel.core.logging_config import get_logger
from storyreel.models.entities import ApiUsage
from storyreel.storage.repository import StoryRepository

logger = get_logger("storage.usage")


class UsageRecorder:
    """Writes ApiUsage rows. Cost math happens elsewhere."""

    def __init__(self, repository: StoryRepository):
        self.repository = repository

    def record_text(
        self,
        story_id: Optional[int],
        service: str,
        operation: str,
        input_tokens: int,
        output_tokens: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ApiUsage:
        return self.repository.add_usage(ApiUsage(
            story_id=story_id,
            service=service,
            operation=operation,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            metadata=dict(metadata or {}),
        ))

    def record_call(
        self,
        story_id: Optional[int],
        service: str,
        operation: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ApiUsage:
        logger.debug(f"Usage: story={story_id} {service}.{operation}")
        return self.repository.add_usage(ApiUsage(
            story_id=story_id,
            service=service,
            operation=operation,
            metadata=dict(metadata or {}),
        ))

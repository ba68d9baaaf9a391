"""
Storyreel Custom Exceptions

Custom exception classes for error handling throughout the production pipeline.
"""


class StoryreelError(Exception):
    """Base exception for all Storyreel errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================

class ConfigurationError(StoryreelError):
    """Raised when there's an issue with configuration."""
    pass


class MissingCredentialError(ConfigurationError):
    """Raised when a user has no credential stored for a provider."""

    def __init__(self, provider: str, user_id=None, label: str = None):
        message = f"{label or provider} API key not configured."
        super().__init__(message, {"provider": provider, "user_id": user_id})
        self.provider = provider

    def __str__(self):
        return self.message


# =============================================================================
# PIPELINE ERRORS
# =============================================================================

class PipelineError(StoryreelError):
    """Base exception for pipeline errors."""
    pass


class PreconditionError(PipelineError):
    """Raised when an operation is rejected because the story is in the wrong state."""

    def __str__(self):
        return self.message


class InvalidStageTransitionError(PipelineError):
    """Raised when a stage transition is not allowed."""

    def __init__(self, stage: str, reason: str):
        message = f"Cannot move to stage '{stage}': {reason}"
        super().__init__(message, {"stage": stage, "reason": reason})


# =============================================================================
# LLM ERRORS
# =============================================================================

class LLMError(StoryreelError):
    """Base exception for LLM-related errors."""
    pass


class LLMProviderError(LLMError):
    """Raised when there's an issue with an LLM provider."""

    def __init__(self, provider: str, reason: str):
        message = f"LLM provider '{provider}' error: {reason}"
        super().__init__(message, {"provider": provider, "reason": reason})


class LLMResponseError(LLMError):
    """Raised when LLM response is invalid or unexpected."""

    def __str__(self):
        return self.message


# =============================================================================
# GENERATION PROVIDER ERRORS
# =============================================================================

class GenerationProviderError(StoryreelError):
    """Raised when an image or video provider call fails."""

    def __init__(self, provider: str, reason: str, status_code: int = None):
        message = f"{provider} error: {reason}"
        details = {"provider": provider, "reason": reason}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details)
        self.provider = provider
        self.reason = reason
        self.status_code = status_code


# =============================================================================
# STORAGE ERRORS
# =============================================================================

class StorageError(StoryreelError):
    """Base exception for persistence errors."""
    pass


class RecordNotFoundError(StorageError):
    """Raised when a record does not exist."""

    def __init__(self, entity: str, record_id):
        message = f"{entity} not found: {record_id}"
        super().__init__(message, {"entity": entity, "id": record_id})


class IntegrityError(StorageError):
    """Raised when a write would break a uniqueness invariant."""
    pass


# =============================================================================
# MEDIA ERRORS
# =============================================================================

class MediaError(StoryreelError):
    """Base exception for media handling errors."""
    pass


class MediaDownloadError(MediaError):
    """Raised when a remote media file cannot be fetched."""

    def __init__(self, url: str, reason: str):
        message = f"Failed to download {url}: {reason}"
        super().__init__(message, {"url": url})


class MediaProcessingError(MediaError):
    """Raised when ffmpeg or ffprobe exits unsuccessfully."""

    def __init__(self, command: str, stderr: str):
        message = f"{command} failed: {stderr.strip()[-500:] if stderr else 'no output'}"
        super().__init__(message)
        self.command = command
        self.stderr = stderr

"""
API Dependencies

Common dependencies for route handlers.
"""

from fastapi import Request

from storyreel.pipelines.service import PipelineService


def get_service(request: Request) -> PipelineService:
    """The pipeline service the app was created with."""
    return request.app.state.service

"""
Error taxonomy for the scene pipeline.
Every error is recoverable at the API boundary: app.py maps each one to an
HTTP status and a short machine-readable code.
"""
from typing import Optional


class StudioError(Exception):
    """Base class for every error the pipeline surfaces to a caller."""
    code = "studio_error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__ or self.code)

    @property
    def message(self) -> str:
        return str(self)


class UnsupportedFormat(StudioError):
    """Unsupported file type. Please upload a text or PDF file."""
    code = "unsupported_format"


class EmptyDocument(StudioError):
    """File is empty or text could not be extracted."""
    code = "empty_document"


class NotIngested(StudioError):
    """No story has been uploaded for this project yet."""
    code = "not_ingested"


class AlreadyIngested(StudioError):
    """A story has already been uploaded for this project."""
    code = "already_ingested"


class MissingIllustration(StudioError):
    """An illustration is required to generate this scene."""
    code = "missing_illustration"


class InvalidImage(StudioError):
    """Uploaded illustration is not a readable image."""
    code = "invalid_image"


class UnknownScene(StudioError):
    """Scene does not exist in this project."""
    code = "unknown_scene"


class SceneNotReachable(StudioError):
    """Earlier scenes must be completed first."""
    code = "scene_not_reachable"


class GenerationInProgress(StudioError):
    """This scene is already being generated."""
    code = "generation_in_progress"


class ProjectNotFound(StudioError):
    """Project not found."""
    code = "project_not_found"


class ConfigurationError(StudioError):
    """Server configuration error."""
    code = "configuration_error"


class ServiceError(StudioError):
    """The generation service returned an error response."""
    code = "service_error"

    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"Generation service failed {status}: {body[:500]}")


class EmptyResponse(StudioError):
    """The generation service returned no candidate output."""
    code = "empty_response"


class MalformedResponse(StudioError):
    """The generation service returned output that is not valid scene JSON."""
    code = "malformed_response"


class SynthesisError(StudioError):
    """Video synthesis failed."""
    code = "synthesis_error"

"""Error taxonomy shared by the prediction pipeline and the HTTP layer.

Every error carries the HTTP status it maps to, so the API layer can render
``{"success": false, "message": ...}`` without knowing where it was raised.
"""

from __future__ import annotations


class TriageError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(TriageError):
    """Bad or missing request fields; fixable by the caller."""

    status_code = 400


class MissingImageError(ValidationError):
    def __init__(self, message: str = "Medical image file is required") -> None:
        super().__init__(message)


class UnknownModelType(ValidationError):
    def __init__(self, model_type: object) -> None:
        super().__init__(f"Unknown model type: {model_type}")
        self.model_type = model_type


class InvalidImageError(ValidationError):
    """Image bytes are empty, too large or cannot be decoded."""


class Unauthenticated(TriageError):
    status_code = 401


class AccessDeniedError(TriageError):
    status_code = 403

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(message)


class NotFoundError(TriageError):
    status_code = 404


class ConfigurationError(TriageError):
    pass


class ShapeMismatchError(TriageError):
    """Classifier output does not line up with the model configuration."""


class ModelLoadError(TriageError):
    """A model artifact is missing or corrupt for one model type."""


class StorageError(TriageError):
    """A document or blob store call failed."""


class PredictionFailedError(TriageError):
    """The classification step failed; the only fatal mid-pipeline error."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause
        if isinstance(cause, InvalidImageError):
            self.status_code = InvalidImageError.status_code

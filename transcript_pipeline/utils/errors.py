"""Custom exception hierarchy for the transcription pipeline.

All exceptions inherit from PipelineError, enabling targeted handling
at the routing and worker boundaries while preserving failure context.
Errors that the HTTP layer may surface carry a ``status_code`` hint.
"""


class PipelineError(Exception):
    """Base exception for all transcription pipeline errors."""

    status_code = 500

    def __init__(self, message: str, run_id: str | None = None) -> None:
        self.run_id = run_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.run_id:
            return f"[run={self.run_id}] {super().__str__()}"
        return super().__str__()


class ValidationError(PipelineError):
    """Raised for caller errors that must never be retried."""

    status_code = 400

    def __init__(
        self, message: str, run_id: str | None = None, field: str | None = None
    ) -> None:
        self.field = field
        super().__init__(message, run_id)


class NotFoundError(ValidationError):
    """Raised when a run, job or audio resource does not exist."""

    status_code = 404


class RequestTooLargeError(ValidationError):
    """Raised when an internal request body exceeds the accepted size."""

    status_code = 413


class InvalidStateError(PipelineError):
    """Raised when a run or job is not in a state that allows the request."""

    status_code = 409

    def __init__(
        self,
        message: str,
        run_id: str | None = None,
        current_status: str | None = None,
    ) -> None:
        self.current_status = current_status
        super().__init__(message, run_id)


class ASRError(PipelineError):
    """Raised when the speech recognition backend fails."""

    def __init__(
        self,
        message: str,
        run_id: str | None = None,
        provider: str | None = None,
    ) -> None:
        self.provider = provider
        super().__init__(message, run_id)


class RecognitionTooLongError(ASRError):
    """Raised when buffer-mode recognition rejects input as too long."""


class AudioFetchError(PipelineError):
    """Raised when downloading audio from object storage fails."""

    def __init__(
        self, message: str, run_id: str | None = None, key: str | None = None
    ) -> None:
        self.key = key
        super().__init__(message, run_id)


class TransientAudioFetchError(AudioFetchError):
    """Raised when object storage throttles or times out; safe to retry."""


class StorageError(PipelineError):
    """Raised when database or collaborator API operations fail."""

    def __init__(
        self,
        message: str,
        run_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.operation = operation
        super().__init__(message, run_id)


class AuthorizationError(PipelineError):
    """Raised when an internal request fails shared-secret verification."""

    status_code = 401

    def __init__(self, message: str, status_code: int = 401) -> None:
        self.status_code = status_code
        super().__init__(message)

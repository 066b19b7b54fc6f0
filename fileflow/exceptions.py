"""Exception hierarchy for the upload and processing service.

    FileFlowError (base)
    ├── NotFoundError
    ├── ValidationError
    ├── ServiceUnavailableError
    ├── QuotaExhaustedError
    ├── StorageError
    └── ProcessingError
        ├── StreamReadError
        ├── JobTimeoutError
        └── FileAlreadyProcessingError

Per-line parse problems are not exceptions; see ``ParseFailure`` in
``fileflow.processing.parsers``.
"""

from typing import Any, Dict, Optional


class FileFlowError(Exception):
    """Base exception carrying a machine-readable code and context."""

    def __init__(
        self,
        message: str,
        error_code: str = "FILEFLOW_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        result = {"error": self.message, "error_code": self.error_code}
        if self.details:
            result["details"] = self.details
        return result


class NotFoundError(FileFlowError):
    """Raised when a file or job does not exist."""

    def __init__(self, resource: str, identifier: str, **kwargs):
        kwargs.setdefault("error_code", "NOT_FOUND")
        kwargs.setdefault("details", {}).update({"resource": resource, "id": identifier})
        super().__init__(f"{resource} not found", **kwargs)


class ValidationError(FileFlowError):
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "VALIDATION_ERROR")
        super().__init__(message, **kwargs)


class ServiceUnavailableError(FileFlowError):
    """Raised while the scheduler is in degraded mode.

    Callers should treat this as temporary and retry later.
    """

    def __init__(self, message: str = "Service temporarily unavailable", **kwargs):
        kwargs.setdefault("error_code", "SERVICE_UNAVAILABLE")
        super().__init__(message, **kwargs)


class QuotaExhaustedError(FileFlowError):
    """The persistence layer ran out of storage quota."""

    def __init__(self, message: str = "Storage quota exceeded", **kwargs):
        kwargs.setdefault("error_code", "QUOTA_EXHAUSTED")
        super().__init__(message, **kwargs)


class StorageError(FileFlowError):
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "STORAGE_ERROR")
        super().__init__(message, **kwargs)


class ProcessingError(FileFlowError):
    """Execution-level failure; counted against the job's attempts."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "PROCESSING_ERROR")
        super().__init__(message, **kwargs)


class StreamReadError(ProcessingError):
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "STREAM_READ_ERROR")
        super().__init__(message, **kwargs)


class JobTimeoutError(ProcessingError):
    def __init__(self, timeout_seconds: float, **kwargs):
        kwargs.setdefault("error_code", "JOB_TIMEOUT")
        kwargs.setdefault("details", {}).update({"timeout_seconds": timeout_seconds})
        super().__init__("Job timeout - exceeded maximum processing time", **kwargs)


class FileAlreadyProcessingError(ProcessingError):
    def __init__(self, file_id: str, **kwargs):
        kwargs.setdefault("error_code", "FILE_ALREADY_PROCESSING")
        kwargs.setdefault("details", {}).update({"file_id": file_id})
        super().__init__("File is already being processed", **kwargs)

from fastapi import HTTPException, status
from typing import Optional, Any, Dict

class AppException(HTTPException):
    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail)
        self.error_code = error_code
        self.metadata = metadata or {}

class AuthenticationError(AppException):
    def __init__(self, detail: str = "Unauthorized", metadata: Optional[Dict[str, Any]] = None):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="UNAUTHORIZED",
            metadata=metadata
        )

class InvalidRequestError(AppException):
    def __init__(self, detail: str, metadata: Optional[Dict[str, Any]] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code="INVALID_REQUEST",
            metadata=metadata
        )

class JobNotFoundError(AppException):
    def __init__(self, job_id: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Processing job not found",
            error_code="JOB_NOT_FOUND",
            metadata={"job_id": job_id}
        )


class PipelineError(Exception):
    """Base class for failures raised inside the processing pipeline"""
    error_code = "PIPELINE_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

class DownloadError(PipelineError):
    """The referenced file could not be fetched or was empty"""
    error_code = "DOWNLOAD_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

class ExtractionError(PipelineError):
    """The document service produced no analyzable pages or no text"""
    error_code = "EXTRACTION_ERROR"

class NormalizationError(PipelineError):
    """The completion service failed after all retries or returned unusable data"""
    error_code = "NORMALIZATION_ERROR"

    def __init__(
        self,
        message: str,
        last_error: Optional[BaseException] = None,
        attempts: int = 0
    ):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts

class BatchError(PipelineError):
    """An exception escaped the per-item isolation boundary of a batch"""
    error_code = "BATCH_ERROR"

    def __init__(self, message: str, batch_number: int):
        super().__init__(message)
        self.batch_number = batch_number

class InvalidTransitionError(PipelineError):
    """A processing item was asked to move backwards or out of a terminal state"""
    error_code = "INVALID_TRANSITION"

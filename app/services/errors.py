"""Shared error classes for dispatch, lead sourcing, and upstream providers."""

from __future__ import annotations


class DispatchError(RuntimeError):
    """Base exception raised by the dispatch core."""

    def __init__(self, message: str, code: str = "DISPATCH_ERROR") -> None:
        super().__init__(message)
        self.code = code


class JobNotFoundError(DispatchError):
    """Raised when the job being dispatched does not exist."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found", code="404_JOB_NOT_FOUND")
        self.job_id = job_id


class AlreadyDispatchedError(DispatchError):
    """Raised when an outreach already exists for the job."""

    def __init__(self, job_id: str, outreach_id: str | None) -> None:
        super().__init__(
            f"Dispatch already initiated for job {job_id}",
            code="409_ALREADY_DISPATCHED",
        )
        self.job_id = job_id
        self.outreach_id = outreach_id


class NoCandidatesError(DispatchError):
    """Raised when neither channel produced a single candidate."""

    def __init__(self, trade: str | None, location: str) -> None:
        super().__init__(
            f"No {trade or 'General'} contractors found in {location}",
            code="404_NO_CANDIDATES",
        )
        self.trade = trade
        self.location = location


class CreditExhaustedError(DispatchError):
    """Raised when the email verification budget has no credits left."""

    def __init__(self, message: str = "No email verification credits available") -> None:
        super().__init__(message, code="402_NO_VERIFICATION_CREDITS")


class PipelineError(DispatchError):
    """Raised when the sourcing pipeline cannot reach a required provider."""

    def __init__(self, message: str, code: str = "502_PIPELINE_UPSTREAM") -> None:
        super().__init__(message, code=code)


class DatastoreError(DispatchError):
    """Raised when a datastore read or write fails."""

    def __init__(self, message: str, code: str = "500_DATASTORE_ERROR") -> None:
        super().__init__(message, code=code)


class DuplicateRecordError(DatastoreError):
    """Raised when an insert collides with a unique constraint."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="409_DUPLICATE_RECORD")


class UpstreamError(RuntimeError):
    """Failure returned by a third-party API.

    ``status_code`` is None for transport-level failures (DNS, reset, timeout).
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str = "UPSTREAM_ERROR",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code

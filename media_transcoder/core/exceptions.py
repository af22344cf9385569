"""Job failure taxonomy for the transcoding pipeline.

Every failure the pipeline raises on purpose is a ``JobFailure``. Callers map
``error_type`` / ``status_code`` to a response; the message is written so it
can be shown to the person who uploaded the file.
"""

from typing import Optional


class JobFailure(Exception):
    """Base exception for all classified job failures."""

    error_type: str = "JobFailure"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        original_error: Optional[Exception] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.original_error = original_error
        if status_code is not None:
            self.status_code = status_code


class ValidationError(JobFailure):
    """The caller supplied something the pipeline refuses to process."""

    error_type: str = "ValidationError"
    status_code: int = 400

    @staticmethod
    def bad_name(name: str, reason: str) -> "ValidationError":
        return ValidationError(f"Invalid file name '{name}': {reason}.")

    @staticmethod
    def too_large(name: str, size: int, limit: int) -> "ValidationError":
        return ValidationError(
            f"'{name}' is too large: {size / (1024 * 1024):.1f}MB "
            f"(limit {limit / (1024 * 1024):.0f}MB).",
            status_code=413,
        )

    @staticmethod
    def not_allowed(name: str, mime_type: Optional[str]) -> "ValidationError":
        kind = mime_type or "unknown type"
        return ValidationError(
            f"'{name}' ({kind}) is not a supported file type for this tool."
        )


class DependencyError(ValidationError):
    """A stage reads a file that no input or earlier stage provides."""

    error_type: str = "DependencyError"

    @staticmethod
    def missing_input(stage: str, name: str) -> "DependencyError":
        return DependencyError(
            f"Stage '{stage}' reads '{name}', which is neither an input "
            f"nor produced by an earlier stage.",
            stage=stage,
        )


class DownloadError(ValidationError):
    """A URL-sourced upload could not be fetched (invalid, blocked, expired, too large)."""

    error_type: str = "DownloadError"

    @staticmethod
    def invalid_url(url: str) -> "DownloadError":
        return DownloadError(f"Invalid URL: '{url}'")

    @staticmethod
    def blocked_url(url: str) -> "DownloadError":
        return DownloadError(f"URL is blocked for security reasons: '{url}'")

    @staticmethod
    def expired_or_forbidden(status_code: int) -> "DownloadError":
        return DownloadError(
            f"Download failed (HTTP {status_code}). The link may be expired or access-restricted.",
            status_code=403,
        )

    @staticmethod
    def not_found(url: str) -> "DownloadError":
        return DownloadError(f"Download failed (404). File not found or link expired: '{url}'", status_code=404)

    @staticmethod
    def too_large(mb: float, limit_mb: float) -> "DownloadError":
        return DownloadError(f"File too large: {mb:.1f}MB (limit {limit_mb:.0f}MB)", status_code=413)


class ResourceError(JobFailure):
    """Workspace, disk or memory limits were exhausted."""

    error_type: str = "ResourceError"
    status_code: int = 507


class ToolError(JobFailure):
    """An external tool or library call failed on the job's data."""

    error_type: str = "ToolError"
    status_code: int = 422

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        returncode: Optional[int] = None,
        output_tail: str = "",
        original_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(message, stage=stage, original_error=original_error)
        self.returncode = returncode
        self.output_tail = output_tail

    @staticmethod
    def nonzero_exit(stage: str, program: str, returncode: int, output_tail: str) -> "ToolError":
        return ToolError(
            f"{program} failed while processing the file (exit code {returncode}). "
            f"The file may be corrupted or in an unsupported format.",
            stage=stage,
            returncode=returncode,
            output_tail=output_tail,
        )

    @staticmethod
    def not_installed(stage: str, program: str) -> "ToolError":
        return ToolError(f"{program} is not installed on this server.", stage=stage)


class ToolTimeoutError(ToolError):
    """A stage ran longer than its time budget and was terminated."""

    error_type: str = "ToolTimeoutError"
    status_code: int = 504

    @staticmethod
    def after(stage: str, program: str, timeout: float, output_tail: str = "") -> "ToolTimeoutError":
        return ToolTimeoutError(
            f"{program} did not finish within {timeout:g} seconds. "
            f"Try a smaller file or lighter settings.",
            stage=stage,
            output_tail=output_tail,
        )


class MissingOutputError(ToolError):
    """A stage reported success but did not produce a declared output."""

    error_type: str = "MissingOutputError"

    @staticmethod
    def for_output(name: str, stage: Optional[str] = None) -> "MissingOutputError":
        where = f" by stage '{stage}'" if stage else ""
        return MissingOutputError(
            f"Expected output '{name}' was not produced{where}.",
            stage=stage,
        )


class JobCancelledError(JobFailure):
    """The caller withdrew the request while the job was running."""

    error_type: str = "JobCancelledError"
    status_code: int = 499

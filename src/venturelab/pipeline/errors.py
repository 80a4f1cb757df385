"""Error types raised by the pipeline and its collaborators."""

from typing import Any


class PipelineError(Exception):
    """Base error carrying a machine-readable code."""

    code = "PIPELINE_ERROR"

    def __init__(self, message: str, code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class RunNotFoundError(PipelineError):
    code = "RUN_NOT_FOUND"

    def __init__(self, run_id: int):
        super().__init__(f"Run {run_id} not found", details={"run_id": run_id})
        self.run_id = run_id


class MissingResourceError(PipelineError):
    code = "MISSING_RESOURCE"

    def __init__(self, resource_kind: str, resource_id: int | None = None):
        super().__init__(
            f"{resource_kind} resource not found",
            details={"kind": resource_kind, "resource_id": resource_id},
        )


class HypothesisNotFoundError(PipelineError):
    code = "HYPOTHESIS_NOT_FOUND"

    def __init__(self, hypothesis_uuid: str):
        super().__init__(
            f"Hypothesis {hypothesis_uuid} not found",
            details={"hypothesis_uuid": hypothesis_uuid},
        )


class DeepResearchError(PipelineError):
    """An asynchronous research task failed or could not be started."""

    code = "DEEP_RESEARCH_ERROR"


class ContentGenerationError(PipelineError):
    """A synchronous generation call failed or returned nothing usable."""

    code = "CONTENT_GENERATION_ERROR"


class RateLimitError(PipelineError):
    code = "RATE_LIMIT"

    def __init__(self, message: str = "Rate limited by upstream API", retry_after: float | None = None):
        super().__init__(message, details={"retry_after": retry_after} if retry_after else None)
        self.retry_after = retry_after


class ChainRequestError(PipelineError):
    """The request that re-invokes the executor for the next step failed."""

    code = "CHAIN_REQUEST_ERROR"


def get_error_message(error: BaseException | object) -> str:
    """Human-readable message for any raised value."""
    if isinstance(error, PipelineError):
        return error.message
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return "Unknown error"

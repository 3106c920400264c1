"""Custom exception hierarchy for the magazine pipeline.

Exception Hierarchy:
    MagazinePipelineError (base)
    ├── ConfigurationError
    ├── StoreError
    ├── NotFoundError
    ├── InvalidTransitionError
    │   ├── AlreadyTerminalError
    │   ├── NoTransitionError
    │   └── CannotRejectError
    ├── PreconditionError
    ├── PayloadValidationError
    ├── StageExhaustedError
    └── ExternalServiceError

Structural errors (not found, invalid transition, precondition and payload
validation) can never succeed on a second attempt, so the recovery layer
re-raises them immediately. Everything else raised by a stage handler is
treated as a transient handler failure.

Example Usage:
    >>> from magazine_pipeline.exceptions import NotFoundError
    >>> issue = store.get_issue(issue_id)
    >>> if issue is None:
    ...     raise NotFoundError(f"Issue {issue_id} not found", issue_id=issue_id)
"""


class MagazinePipelineError(Exception):
    """Base exception for all magazine pipeline errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(MagazinePipelineError):
    """Configuration file is missing, unreadable or invalid."""

    pass


class StoreError(MagazinePipelineError):
    """Storage-layer failure (I/O error, constraint violation).

    Always fatal to the caller. The store never retries internally.
    """

    pass


class NotFoundError(MagazinePipelineError):
    """Referenced issue or stage-data row does not exist.

    Attributes:
        issue_id: Issue that was looked up
        stage: Stage whose data was missing, if applicable
    """

    def __init__(self, message: str, issue_id: int | None = None, stage: str | None = None) -> None:
        self.issue_id = issue_id
        self.stage = stage
        super().__init__(message)


class InvalidTransitionError(MagazinePipelineError):
    """Requested stage change is not legal for the issue's current stage.

    Attributes:
        issue_id: Issue the transition was attempted on
        stage: Stage the issue was in when the transition was refused
    """

    def __init__(self, message: str, issue_id: int | None = None, stage: str | None = None) -> None:
        self.issue_id = issue_id
        self.stage = stage
        super().__init__(message)


class AlreadyTerminalError(InvalidTransitionError):
    """Issue is already COMPLETE."""

    pass


class NoTransitionError(InvalidTransitionError):
    """Current stage has no defined successor."""

    pass


class CannotRejectError(InvalidTransitionError):
    """Current stage cannot be re-run through a rejection."""

    pass


class PreconditionError(MagazinePipelineError):
    """A stage handler ran before the data it depends on was approved.

    Attributes:
        issue_id: Issue whose handler was invoked
        required_stage: Stage whose approved data is missing
    """

    def __init__(self, message: str, issue_id: int | None = None, required_stage: str | None = None) -> None:
        self.issue_id = issue_id
        self.required_stage = required_stage
        super().__init__(message)


class PayloadValidationError(MagazinePipelineError):
    """Stage payload does not match the schema its handler expects."""

    def __init__(self, message: str, stage: str | None = None) -> None:
        self.stage = stage
        full_message = f"{message} (stage: {stage})" if stage else message
        super().__init__(full_message)
        self.message = message


class StageExhaustedError(MagazinePipelineError):
    """A stage handler kept failing until its retry budget ran out.

    Attributes:
        stage: Stage whose handler failed
        max_retries: Number of attempts that were made
        last_error: Message of the final underlying failure
    """

    def __init__(self, stage: str, max_retries: int, last_error: str) -> None:
        self.stage = stage
        self.max_retries = max_retries
        self.last_error = last_error
        message = (
            f"{stage} failed after {max_retries} attempts: {last_error}\n"
            "Suggestion: run `magazine retry` once the cause is fixed, or investigate the error log."
        )
        super().__init__(message)


class ExternalServiceError(MagazinePipelineError):
    """External service communication errors (HTTP failures, bad responses).

    Attributes:
        status_code: HTTP status code (if applicable)
        response_text: Response body text (if applicable)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.response_text = response_text

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)
        self.message = message


STRUCTURAL_ERRORS: tuple[type[Exception], ...] = (
    NotFoundError,
    InvalidTransitionError,
    PreconditionError,
    PayloadValidationError,
)
"""Errors that retrying cannot fix."""

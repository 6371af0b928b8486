"""
harvester.errors

Exception hierarchy shared across the ingestion engine.

Errors are scoped: extraction failures stay inside one record or run,
persistence failures are logged and never abort a run, and scheduler
failures are caught at the job boundary.
"""

from __future__ import annotations


class HarvesterError(Exception):
    """Base class for all harvester errors."""


class ConfigError(HarvesterError):
    """A source document or settings value is invalid."""

    def __init__(self, message: str, *, source: str | None = None) -> None:
        super().__init__(message)
        self.source = source


class PluginNotFoundError(HarvesterError):
    def __init__(self, name: str) -> None:
        super().__init__(f"No plugin registered under '{name}'")
        self.name = name


class ExtractionError(HarvesterError):
    """Raised while driving a page through a workflow."""


class WorkflowError(ExtractionError):
    def __init__(self, action: str, message: str, *, selector: str | None = None) -> None:
        super().__init__(f"{action}: {message}")
        self.action = action
        self.selector = selector


class RequiredFieldMissing(ExtractionError):
    def __init__(self, field: str, selector: str | None = None) -> None:
        super().__init__(f"Required field '{field}' not found (selector={selector!r})")
        self.field = field
        self.selector = selector


class ValidationFailed(HarvesterError):
    """A batch did not satisfy the source's validation rules."""


class RateLimitError(HarvesterError):
    """Retries were exhausted while honouring a source's backoff."""

    def __init__(self, source: str, attempts: int, last_error: BaseException | None = None) -> None:
        super().__init__(f"{source}: gave up after {attempts} attempt(s): {last_error}")
        self.source = source
        self.attempts = attempts
        self.last_error = last_error


class PersistenceError(HarvesterError):
    pass


class SchedulerError(HarvesterError):
    pass

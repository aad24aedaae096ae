"""Pipeline error taxonomy.

Only FatalIOError is allowed to escape a stage. The other kinds are
raised and handled inside a stage's own retry/fallback policy and end up
as the session's last error text.
"""
from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline failures, tagged with the stage they happened in."""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class RecoverableBackendError(PipelineError):
    """Transient backend failure worth retrying with backoff."""


class DegradedQualityError(PipelineError):
    """A result was obtained, but below the expected fidelity."""


class UnrecoverableStageError(PipelineError):
    """The stage cannot succeed even through its fallbacks; a placeholder is substituted."""


class FatalIOError(PipelineError):
    """No artifact of any quality could be produced; the session is aborted."""

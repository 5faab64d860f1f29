"""Error taxonomy for relationship computation."""


class RelevanceError(Exception):
    """Base class for relevance engine errors."""


class InvalidInput(RelevanceError):
    """Missing or identical document ids; rejected before anything is enqueued."""


class AnalysisFailure(RelevanceError):
    """Text analysis collaborator was unreachable, timed out, or returned garbage."""


class PersistenceConflict(RelevanceError):
    """A row for the document pair already exists."""

    def __init__(self, message: str = "Relationship already exists", existing: dict | None = None):
        super().__init__(message)
        self.existing = existing


class TransientJobFailure(RelevanceError):
    """Job failed for a reason that may clear up on retry."""


class PermanentJobFailure(RelevanceError):
    """Job attempts are exhausted; the record is marked failed."""

class ContentEngineError(Exception):
    """Base class for content engine errors."""


class ValidationError(ContentEngineError, ValueError):
    """
    Raised by the admin write path when a row would violate a uniqueness or
    shape constraint. The resolution path never raises this.
    """


class NotFoundError(ContentEngineError, LookupError):
    """Raised by admin lookups for ids that do not exist."""


class DanglingReferenceError(ContentEngineError):
    """
    A linked content item, forced variant or override target that no longer
    exists or is inactive. Resolution logs it and falls through to the next
    layer; it is never raised to a visitor.
    """

    def __init__(self, kind: str, reference_id: str, reason: str):
        self.kind = kind
        self.reference_id = reference_id
        self.reason = reason
        super().__init__(f"{kind} {reference_id} {reason}")

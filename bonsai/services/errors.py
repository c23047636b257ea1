"""Service-layer exceptions."""


class DocumentError(Exception):
    """Raised when a document edit targets a line that does not exist."""


class EngineBusyError(Exception):
    """Raised when a session is asked to step while a previous step is still in flight."""


class GenerationError(Exception):
    """Raised when a remote matcher or generator call fails."""


class BranchParseError(GenerationError):
    """Raised when generator output is neither structured JSON nor marker text."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw

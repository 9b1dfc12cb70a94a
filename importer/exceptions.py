"""Exceptions raised by the importer."""


class ImporterError(Exception):
    """Base class for importer failures."""


class PreflightError(ImporterError):
    """The run may not start: another run holds the lock or storage is missing."""

    def __init__(self, message: str, busy: bool = False):
        super().__init__(message)
        self.busy = busy


class RequestValidationError(ImporterError):
    """A required request argument is missing or invalid."""


class FetchError(ImporterError):
    """The remote source returned an empty or malformed result."""


class RunCanceled(ImporterError):
    """The run observed a cancellation and checkpointed its progress."""

    def __init__(self, action: str):
        super().__init__(f"Action '{action}' was canceled")
        self.action = action

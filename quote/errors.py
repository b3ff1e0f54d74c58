"""
Error taxonomy for quote document population.
Fatal errors propagate to the service; recoverable ones are handled per field.
"""


class QuoteError(Exception):
    """Base class for all quote engine errors."""


class NotFoundError(QuoteError):
    """Template, opportunity document, sheet or equipment category is missing."""


class UnknownFieldError(QuoteError):
    """Logical field id is not in the registry."""


class DocumentError(QuoteError):
    """Failure reported by the document-editing shell."""


class LockedError(DocumentError):
    """Target cell is not currently editable."""

    def __init__(self, location):
        super().__init__(f"Cell {location} is locked")
        self.location = location


class WrongCredentialError(DocumentError):
    """Credential does not unlock the document."""


class ActionNotFoundError(DocumentError):
    """Named document action does not exist."""

    def __init__(self, action_name: str):
        super().__init__(f"Document action not found: {action_name}")
        self.action_name = action_name


class DocumentBusyError(DocumentError):
    """Another session already holds the document open."""


class ExportError(DocumentError):
    """Fixed-layout export failed."""


class SessionTimeoutError(QuoteError):
    """Population session exceeded its time budget and was torn down."""


class PopulationCancelled(QuoteError):
    """Population was aborted; the session is closed without saving."""

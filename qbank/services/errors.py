"""Exceptions shared by the extraction and paper assembly services."""


class PageExtractionError(Exception):
    """A single page could not be extracted; the session skips it and continues."""

    def __init__(self, page_number: int, detail: str):
        super().__init__(f"Page {page_number}: {detail}")
        self.page_number = page_number
        self.detail = detail


class SessionFatalError(Exception):
    """The session cannot continue (document unreadable, storage unavailable)."""

    def __init__(self, message: str, details: str = ""):
        super().__init__(message)
        self.message = message
        self.details = details


class DocumentError(SessionFatalError):
    pass


class InvalidRequestError(ValueError):
    """Rejected before any work begins."""


class SessionNotFound(LookupError):
    pass


class EntryNotFound(LookupError):
    pass


class PaperNotFound(LookupError):
    pass


class StreamBusyError(Exception):
    """The session's event stream already has a consumer."""


class StreamOverflowError(Exception):
    """The consumer fell behind the bounded event buffer and was dropped."""


class DuplicateSelectionConflict(Exception):
    """An entry id was offered to an exclusion set that already holds it."""

class EventValidationError(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class EventNotFound(Exception):
    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event {event_id} not found")


class EventConflict(Exception):
    def __init__(self, event_id: str | None, message: str = "Event was modified by another request"):
        self.event_id = event_id
        self.message = message
        super().__init__(message)


class GoogleAPIError(Exception):
    def __init__(self, status_code: int, message: str, retryable: bool = False):
        self.status_code = status_code
        self.message = message
        self.retryable = retryable
        super().__init__(f"Google API Error {status_code}: {message}")


class ExternalUnavailable(GoogleAPIError):
    """Network, auth, quota, timeout or server failure talking to Google."""


class ExternalNotFound(GoogleAPIError):
    """The external event id no longer exists."""


class ExternalRejected(GoogleAPIError):
    """Google refused the payload (malformed times, bad fields)."""

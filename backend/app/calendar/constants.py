from datetime import timedelta

import httpx


class GoogleCalendarConfig:
    TOKEN_REFRESH_BUFFER = timedelta(minutes=5)
    API_BASE_URL = "https://www.googleapis.com/calendar/v3"
    SCOPES = ("https://www.googleapis.com/auth/calendar",)
    MAX_RETRIES = 3
    BASE_DELAY_SECONDS = 0.5
    MAX_CONCURRENT_REQUESTS = 3
    PAGE_SIZE = 250
    REQUEST_TIMEOUT = httpx.Timeout(30.0, connect=10.0)
    QUOTA_ERROR_REASONS = frozenset({
        "userRateLimitExceeded",
        "rateLimitExceeded",
        "quotaExceeded",
    })
    WRITABLE_ACCESS_ROLES = frozenset({"owner", "writer"})


AUTO_CALENDAR_ID = "auto"
DEFAULT_EVENT_COLOR = "#8a1d35"
NO_TITLE = "(No title)"
STORE_PAGE_SIZE = 200

from __future__ import annotations


class EventSyncError(Exception):
    pass


class PlatformApiError(EventSyncError):
    def __init__(self, code: str, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status

    def __str__(self) -> str:
        if self.status is None:
            return f"{self.code}: {self.message}"
        return f"{self.code} (HTTP {self.status}): {self.message}"


class PlatformPayloadError(EventSyncError):
    pass


class CalendarNotFoundError(EventSyncError):
    def __init__(self, calendar_id: str) -> None:
        super().__init__(f"Calendar not found: {calendar_id}")
        self.calendar_id = calendar_id


class ConfigurationError(EventSyncError):
    pass

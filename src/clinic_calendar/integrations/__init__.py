"""Integration layer for Google OAuth and Google Calendar."""

from .google_calendar import (
    AuthorizationError,
    BusyPeriod,
    CalendarEvent,
    CalendarLookupFailed,
    CalendarSyncError,
    EventPayload,
    ExchangeFailed,
    GoogleCalendarClient,
    GoogleCalendarConfig,
    GoogleOAuthClient,
    NotConnected,
    PersistFailed,
    RemoteError,
    TokenRefreshFailed,
    Unauthorized,
    parse_datetime,
)
from .token_store import (
    Credential,
    CredentialNotFound,
    InMemoryTokenStore,
    JsonFileTokenStore,
    TokenStore,
    TokenStoreError,
)

__all__ = [
    "AuthorizationError",
    "BusyPeriod",
    "CalendarEvent",
    "CalendarLookupFailed",
    "CalendarSyncError",
    "Credential",
    "CredentialNotFound",
    "EventPayload",
    "ExchangeFailed",
    "GoogleCalendarClient",
    "GoogleCalendarConfig",
    "GoogleOAuthClient",
    "InMemoryTokenStore",
    "JsonFileTokenStore",
    "NotConnected",
    "PersistFailed",
    "RemoteError",
    "TokenRefreshFailed",
    "TokenStore",
    "TokenStoreError",
    "Unauthorized",
    "parse_datetime",
]

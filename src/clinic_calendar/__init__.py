"""Google Calendar connection and appointment sync for the clinic app."""

__version__ = "0.1.0"

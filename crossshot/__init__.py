"""CrossShot collector: screenshot ingestion and device sessions for the desktop app."""

__version__ = "0.3.0"

"""Location-triggered time clock service."""

__version__ = "0.1.0"

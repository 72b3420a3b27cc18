"""Architecture competition registration, payment, submission and jury service."""

__version__ = "0.1.0"

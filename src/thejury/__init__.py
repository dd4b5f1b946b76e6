"""TheJury rate limiting and webhook notifications."""

__version__ = "0.4.0"

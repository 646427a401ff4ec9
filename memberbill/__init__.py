"""memberbill: revenue routing and pause proration for membership billing."""

__version__ = "0.3.0"

"""SpendSync: personal finance tracking with an offline-capable client."""

__version__ = "0.1.0"

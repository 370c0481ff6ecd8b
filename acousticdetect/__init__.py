"""acousticdetect: acoustic event detection with durable per-file record sets."""

__version__ = "0.1.0"

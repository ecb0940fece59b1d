"""A single-file copy-on-write B+tree key-value store with snapshot transactions and tables."""

__version__ = "0.1.0"
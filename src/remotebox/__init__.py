"""remotebox: single-writer coordination for projects synced to a remote host over SSH."""

__version__ = "0.1.0"

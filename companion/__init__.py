"""Algorithm Companion - OAuth and X.com session capture for The Algorithm."""

__version__ = "1.0.0"

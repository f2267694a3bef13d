"""Disposable Playwright browser workers coordinated through Redis."""

__version__ = "0.1.0"

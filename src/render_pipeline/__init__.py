"""Asynchronous video render pipeline: admission, queue, workers, store."""

__version__ = "0.1.0"

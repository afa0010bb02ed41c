"""Offline-first sync core for the task/project manager."""

__version__ = "0.1.0"

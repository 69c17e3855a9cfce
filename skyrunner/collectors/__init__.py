"""Garbage collectors for image artifacts and build metadata."""

from skyrunner.collectors.cleaner import AmiCleaner, CleanerEvent, CleanupReport
from skyrunner.collectors.reaper import ImageReaper, ReaperEvent, ReapReport

__all__ = [
    "AmiCleaner",
    "CleanerEvent",
    "CleanupReport",
    "ImageReaper",
    "ReapReport",
    "ReaperEvent",
]

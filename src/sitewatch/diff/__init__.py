"""Diff classification between stored page versions."""

from .classifier import classify_changes, extract_features
from .generator import DiffGenerator, limit_changes
from .types import (
    ChangeClassification,
    DetailedDiff,
    DiffCacheEntry,
    DiffCacheStats,
    DiffChange,
    DiffComparison,
    DiffMetadata,
    DiffOptions,
    DiffSummary,
    UrlHistoryEntry,
)

__all__ = [
    "DiffChange",
    "ChangeClassification",
    "DiffSummary",
    "DiffMetadata",
    "DetailedDiff",
    "DiffOptions",
    "DiffCacheEntry",
    "DiffCacheStats",
    "DiffComparison",
    "UrlHistoryEntry",
    "classify_changes",
    "extract_features",
    "limit_changes",
    "DiffGenerator",
]

"""Configuration constants.

Values here are NOT user-configurable: report band boundaries and
normalizer limits are part of the output contract.

For configurable values, see models.py (RunnerConfig, ReportConfig).
"""

# =============================================================================
# Performance Bands
# =============================================================================
# Upper bounds (exclusive, seconds) for the elapsed-time band in the report.
# Anything at or above the last bound is "very slow".

FAST_BAND_MAX_SEC = 5.0
NORMAL_BAND_MAX_SEC = 15.0
SLOW_BAND_MAX_SEC = 60.0

# =============================================================================
# Normalizer
# =============================================================================

MAX_HELD_TAIL_CHARS = 4096
"""Longest partial escape held back between feeds before it is released."""

# =============================================================================
# Classifier
# =============================================================================

MAX_BODY_LINES = 40
"""Error body lines kept per extracted failure block."""

COLLAPSE_CONTEXT_LINES = 4
"""Lines after a collapse marker used as message when no block was found."""

LIBRARY_PATH_MARKERS = ("node_modules", "site-packages", "/usr/lib/", "internal/")
"""Stack frames containing these are skipped when picking a source location."""

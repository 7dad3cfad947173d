"""Signal classification, deduplication and alert dispatch.

Provides the classifier, the dedup cache, the alert dispatcher and the
Discord notification channel.
"""

from .classifier import (
    Classification,
    FilterLevel,
    PatternKind,
    SignalCategory,
    SignalClassifier,
    SignalPattern,
    is_error_line,
    severity_hint,
)
from .dedup import DedupCache, error_fingerprint, metric_fingerprint
from .discord import (
    COLOR_CRITICAL,
    COLOR_HIGH,
    COLOR_INFO,
    COLOR_WARNING,
    AlertChannel,
    AlertMessage,
    DiscordClient,
)
from .dispatcher import AlertDispatcher

__all__ = [
    # Classifier
    "SignalClassifier",
    "SignalPattern",
    "Classification",
    "SignalCategory",
    "PatternKind",
    "FilterLevel",
    "severity_hint",
    "is_error_line",
    # Dedup
    "DedupCache",
    "metric_fingerprint",
    "error_fingerprint",
    # Dispatch
    "AlertDispatcher",
    "AlertChannel",
    "AlertMessage",
    # Discord client
    "DiscordClient",
    "COLOR_CRITICAL",
    "COLOR_HIGH",
    "COLOR_WARNING",
    "COLOR_INFO",
]

"""Signal classifier for intercepted diagnostic text.

Text is checked against three ordered pattern lists:

1. environment noise (dev tooling chatter), cheapest rejection first
2. known infrastructure errors, each carrying a tag for trend analysis
3. framework internals, only consulted at ``FilterLevel.STRICT``

Anything left is a genuine signal. Classification has no hidden state, so the
same text and configuration always produce the same result.
"""

import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from apm_pipeline.models import ErrorSeverity


class FilterLevel(str, Enum):
    """How aggressively diagnostic text is filtered."""

    NONE = "none"  # Nothing filtered
    STANDARD = "standard"  # Noise and known infrastructure errors
    STRICT = "strict"  # Also framework internals


class PatternKind(Enum):
    NOISE = "noise"
    KNOWN_INFRA = "known_infra"
    STRICT = "strict"


class SignalCategory(str, Enum):
    GENUINE = "genuine"
    NOISE = "noise"
    KNOWN_INFRA = "known_infra"
    STRICT = "strict"


@dataclass(frozen=True)
class SignalPattern:
    """A compiled matcher tagged with the list it belongs to."""

    kind: PatternKind
    regex: re.Pattern
    tag: str

    def matches(self, text: str) -> bool:
        return self.regex.search(text) is not None


@dataclass(frozen=True)
class Classification:
    """Result of classifying a piece of diagnostic text."""

    category: SignalCategory
    pattern_tag: str | None = None  # Tag of the pattern that matched
    severity_hint: ErrorSeverity | None = None

    @property
    def is_dev_noise(self) -> bool:
        return self.category is SignalCategory.NOISE

    @property
    def known_infra(self) -> str | None:
        """Tag of the known infrastructure error, if that is what matched."""
        return self.pattern_tag if self.category is SignalCategory.KNOWN_INFRA else None

    @property
    def strict_match(self) -> bool:
        return self.category is SignalCategory.STRICT

    @property
    def is_filtered(self) -> bool:
        return self.category is not SignalCategory.GENUINE


def _patterns(kind: PatternKind, specs: Iterable[tuple[str, str]]) -> tuple[SignalPattern, ...]:
    return tuple(
        SignalPattern(kind=kind, regex=re.compile(regex, re.IGNORECASE), tag=tag)
        for tag, regex in specs
    )


# (tag, regex)
NOISE_PATTERNS = _patterns(
    PatternKind.NOISE,
    [
        ("vite_hmr", r"vite.*hmr|\[vite\]|@vite/client"),
        ("webpack_hmr", r"webpack.*hmr|\[HMR\]"),
        ("hot_reload", r"hot.*reload|live.*reload|fast.*refresh|react.*refresh"),
        ("dev_server", r"dev.*server|development.*mode|dev.*environment"),
        ("devtools", r"react.*devtools|__REACT_DEVTOOLS_GLOBAL_HOOK__"),
        ("lint", r"\bESLint\b"),
        ("autoreload", r"Detected change in .*, reloading|Watching for file changes"),
        ("socket_disconnect", r"socket.*disconnect"),
        ("blocked_by_client", r"ERR_BLOCKED_BY_CLIENT"),
        (
            "browser_extension",
            r"chrome-extension|moz-extension|safari-extension"
            r"|message port closed before a response was received",
        ),
        ("unused_preload", r"was preloaded.*but not used"),
    ],
)

KNOWN_INFRA_PATTERNS = _patterns(
    PatternKind.KNOWN_INFRA,
    [
        ("cache_storage_put", r"Failed to execute 'put' on 'Cache'"),
        ("partial_response", re.escape("Partial response (status code 206) is unsupported")),
        (
            "csp_violation",
            r"Refused to \w+ .*Content Security Policy"
            r"|violates the following Content Security Policy",
        ),
        ("loopback_socket", r"WebSocket connection to '?wss?://(?:localhost|127\.0\.0\.1)"),
        ("rate_limited", r"(?:status(?: code)?|HTTP|HttpError)\s*:?\s*429\b|Too Many Requests"),
    ],
)

STRICT_PATTERNS = _patterns(
    PatternKind.STRICT,
    [
        ("react", r"\breact\b"),
        ("component", r"component"),
        ("hook", r"\bhooks?\b"),
        ("render", r"\brender"),
        ("virtual_dom", r"virtual.?dom"),
        ("fiber", r"\bfiber\b"),
        ("reconciler", r"reconciler"),
    ],
)

# Severity hints for genuine signals, most severe first
_SEVERITY_INDICATORS: list[tuple[re.Pattern, ErrorSeverity]] = [
    (
        re.compile(r"FATAL|CRITICAL|MemoryError|Out of memory|Segmentation fault", re.IGNORECASE),
        ErrorSeverity.CRITICAL,
    ),
    (re.compile(r"Traceback|Exception|Uncaught|Unhandled|\bERROR\b"), ErrorSeverity.HIGH),
    (re.compile(r"\bWARN(?:ING)?\b|deprecated", re.IGNORECASE), ErrorSeverity.MEDIUM),
]


def severity_hint(text: str) -> ErrorSeverity | None:
    """Guess a severity for genuine text from well-known indicators."""
    for pattern, severity in _SEVERITY_INDICATORS:
        if pattern.search(text):
            return severity
    return None


class SignalClassifier:
    """Assigns a category and severity hint to diagnostic text."""

    def __init__(
        self,
        noise_patterns: Iterable[SignalPattern] = NOISE_PATTERNS,
        known_infra_patterns: Iterable[SignalPattern] = KNOWN_INFRA_PATTERNS,
        strict_patterns: Iterable[SignalPattern] = STRICT_PATTERNS,
        filter_level: FilterLevel = FilterLevel.STANDARD,
    ):
        self.noise_patterns = tuple(noise_patterns)
        self.known_infra_patterns = tuple(known_infra_patterns)
        self.strict_patterns = tuple(strict_patterns)
        self.filter_level = FilterLevel(filter_level)

    def classify(self, text: str) -> Classification:
        """Classify a piece of diagnostic text.

        Args:
            text: Message (and optionally stack) to inspect

        Returns:
            Classification; filtered categories always carry a LOW hint
        """
        if self.filter_level is not FilterLevel.NONE:
            for pattern in self.noise_patterns:
                if pattern.matches(text):
                    return Classification(SignalCategory.NOISE, pattern.tag, ErrorSeverity.LOW)

            for pattern in self.known_infra_patterns:
                if pattern.matches(text):
                    return Classification(
                        SignalCategory.KNOWN_INFRA, pattern.tag, ErrorSeverity.LOW
                    )

            if self.filter_level is FilterLevel.STRICT:
                for pattern in self.strict_patterns:
                    if pattern.matches(text):
                        return Classification(
                            SignalCategory.STRICT, pattern.tag, ErrorSeverity.LOW
                        )

        return Classification(SignalCategory.GENUINE, None, severity_hint(text))


_ERROR_INDICATORS = [
    "ERROR",
    "CRITICAL",
    "FATAL",
    "Exception",
    "Traceback",
    "Error:",
    "Failed",
    "error:",
    "failed:",
]


def is_error_line(log_line: str) -> bool:
    """Quick check if a log line looks like an error.

    Use this to pick the error channel when replaying raw log files.
    """
    return any(indicator in log_line for indicator in _ERROR_INDICATORS)

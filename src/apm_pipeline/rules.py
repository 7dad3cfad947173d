"""Threshold table and pattern lists loaded from configuration.

The built-in tables in the aggregator and classifier are defaults. A ``rules``
section can extend them or, with ``replace_defaults``, replace them:

    rules:
      thresholds:
        page_load_time: 2500
      known_infra:
        - tag: upstream_timeout
          pattern: "upstream request timeout"
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from apm_pipeline.aggregator import DEFAULT_THRESHOLDS
from apm_pipeline.alerter.classifier import (
    KNOWN_INFRA_PATTERNS,
    NOISE_PATTERNS,
    STRICT_PATTERNS,
    FilterLevel,
    PatternKind,
    SignalClassifier,
    SignalPattern,
)
from apm_pipeline.errors import ConfigError


class PatternRule(BaseModel):
    """A single tagged regex."""

    model_config = ConfigDict(extra="forbid")

    tag: str = Field(min_length=1)
    pattern: str
    ignore_case: bool = True

    @field_validator("pattern")
    @classmethod
    def pattern_compiles(cls, v: str) -> str:
        """Reject patterns that are not valid regular expressions."""
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid regex {v!r}: {e}") from e
        return v

    def compile(self, kind: PatternKind) -> SignalPattern:
        flags = re.IGNORECASE if self.ignore_case else 0
        return SignalPattern(kind=kind, regex=re.compile(self.pattern, flags), tag=self.tag)


class PipelineRules(BaseModel):
    """Thresholds and classifier patterns."""

    model_config = ConfigDict(extra="forbid")

    thresholds: dict[str, float] = Field(default_factory=dict)
    noise: list[PatternRule] = Field(default_factory=list)
    known_infra: list[PatternRule] = Field(default_factory=list)
    strict: list[PatternRule] = Field(default_factory=list)
    replace_defaults: bool = False

    @field_validator("thresholds")
    @classmethod
    def thresholds_positive(cls, v: dict[str, float]) -> dict[str, float]:
        """Thresholds must be positive numbers."""
        for name, value in v.items():
            if value <= 0:
                raise ValueError(f"threshold for {name!r} must be positive")
        return v

    @classmethod
    def from_mapping(cls, data: dict[str, Any] | None) -> PipelineRules:
        """Validate a ``rules`` mapping, raising ConfigError on bad input."""
        try:
            return cls.model_validate(data or {})
        except ValidationError as e:
            raise ConfigError(f"Invalid rules: {e}") from e

    def effective_thresholds(self) -> dict[str, float]:
        if self.replace_defaults:
            return dict(self.thresholds)
        return {**DEFAULT_THRESHOLDS, **self.thresholds}

    def _merge(
        self, kind: PatternKind, defaults: tuple[SignalPattern, ...], extra: list[PatternRule]
    ) -> list[SignalPattern]:
        compiled = [rule.compile(kind) for rule in extra]
        if self.replace_defaults:
            return compiled
        return [*defaults, *compiled]

    def build_classifier(self, filter_level: FilterLevel = FilterLevel.STANDARD) -> SignalClassifier:
        """Create a classifier using these rules."""
        return SignalClassifier(
            noise_patterns=self._merge(PatternKind.NOISE, NOISE_PATTERNS, self.noise),
            known_infra_patterns=self._merge(
                PatternKind.KNOWN_INFRA, KNOWN_INFRA_PATTERNS, self.known_infra
            ),
            strict_patterns=self._merge(PatternKind.STRICT, STRICT_PATTERNS, self.strict),
            filter_level=filter_level,
        )

"""Exception hierarchy for apm-pipeline.

Only configuration loading raises to the caller. Everything raised while the
pipeline is running is caught at the call site and logged.
"""


class PipelineError(Exception):
    """Base error for all apm-pipeline operations."""


class ConfigError(PipelineError):
    """Invalid configuration file or rules section."""


class StoreError(PipelineError):
    """A telemetry store could not complete an insert or update."""

"""mirror.core.exceptions

Errors are part of the interface.

The taxonomy decides what the scheduler does next: retry, abort the cycle,
or halt the chain.
"""

from __future__ import annotations


class MirrorError(Exception):
    """Base exception for the mirror."""


class ConfigError(MirrorError):
    """Configuration is missing, invalid, or inconsistent."""


class EventStoreError(MirrorError):
    """Event store failures: schema, IO, or invariants."""


class ProviderError(MirrorError):
    """Upstream chain API returned something unusable."""


class TransientProviderError(ProviderError):
    """Network, timeout, or rate limit. Retry with backoff."""


class MalformedEventError(ProviderError):
    """An otherwise healthy response carried an event we cannot parse.

    Fatal to the current cycle. Usually a provider or schema mismatch, not load.
    """


class ProjectionError(MirrorError):
    """The projector could not apply an ordered batch."""


class ReorgError(MirrorError):
    """Chain reorganization could not be reconciled."""


class ReorgTooDeepError(ReorgError):
    """No common ancestor within the configured depth. History assumed final was rewritten."""

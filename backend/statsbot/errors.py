"""
Stats bot error types
"""


class StatsBotError(Exception):
    """Base class for all stats bot errors"""


class ConfigurationError(StatsBotError):
    """Required settings are missing or invalid at startup"""


class InvalidEventError(StatsBotError):
    """An inbound event cannot be attributed to a user or channel"""

    def __init__(self, message: str, event=None):
        super().__init__(message)
        self.event = event


class DurableStoreError(StatsBotError):
    """The durable store was misconfigured or used incorrectly"""


class RehydrationError(StatsBotError):
    """
    The aggregate store could not be rebuilt from the durable store.

    Startup must not continue past this error: ingesting on top of an empty
    store would overwrite every user's lifetime totals on the next flush.
    """

"""Exception types raised by the monitoring pipeline."""


class MonitorError(Exception):
    """Base class for all pipeline errors."""


class InvalidInput(MonitorError):
    """Malformed or missing request data; rejected before any resources are allocated."""


class NavigationError(MonitorError):
    """No stream candidate could be loaded."""


class ChatNotFound(MonitorError):
    """None of the locator strategies found a chat container."""


class ClassificationError(MonitorError):
    """LLM classification failed (transport, empty reply or unparseable JSON)."""


class PersistenceError(MonitorError):
    """A durable write to the stream store failed."""

"""Error taxonomy shared by the engine and its collaborators."""


class TradingError(Exception):
    """Base class for errors raised by the trading bot."""


class ConfigurationError(TradingError):
    """Invalid or missing settings; fatal at startup."""


class CollaboratorError(TradingError):
    """Venue client or persistence failure during a tick."""


class PersistenceError(CollaboratorError):
    """Storage transport failure."""


class RecordNotFoundError(CollaboratorError):
    """A get-by-id or get-by-key lookup matched nothing."""

    def __init__(self, entity: str, key):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class LifecycleError(TradingError):
    """Illegal engine state transition, e.g. starting a running engine."""

"""Shared exception types for the keeper core."""

from typing import Optional


class KeeperError(RuntimeError):
    """Base class for all keeper errors."""


class TransientChainError(KeeperError):
    """Raised on timeouts, rate limits or an unavailable RPC endpoint.

    Retried on the next scheduler tick; never retried within the same tick.
    """

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class PreconditionError(KeeperError):
    """Entity cannot be acted on right now (paused, no position, unauthorized)."""

    def __init__(self, entity_id: str, reason: str):
        super().__init__(f"{entity_id}: {reason}")
        self.entity_id = entity_id
        self.reason = reason


class ActionFailure(KeeperError):
    """On-chain action reverted or was rejected."""

    def __init__(self, entity_id: str, reason: str, transaction_id: Optional[str] = None):
        super().__init__(f"{entity_id}: {reason}")
        self.entity_id = entity_id
        self.reason = reason
        self.transaction_id = transaction_id


class SnapshotValidationError(KeeperError):
    """Chain data failed strict decoding into a PositionSnapshot."""

    def __init__(self, entity_id: str, reason: str):
        super().__init__(f"{entity_id}: {reason}")
        self.entity_id = entity_id
        self.reason = reason


class ConfigurationError(KeeperError):
    """Fatal startup misconfiguration. The only error allowed to halt the process."""

"""Exceptions raised by the deposit pipeline."""


class CreditSyncError(Exception):
    """Base exception for the deposit pipeline."""

    pass


class ConfigurationError(CreditSyncError):
    """A required setting is missing or invalid."""

    pass


class RpcError(CreditSyncError):
    """The external ledger returned an error or could not be reached."""

    pass


class StreamClosedError(RpcError):
    """The streaming connection to the external ledger dropped."""

    pass


class PriceUnavailableError(CreditSyncError):
    """No fresh or cached price exists for an asset."""

    pass


class DepositNotFoundError(CreditSyncError):
    """A deposit record expected to exist is missing."""

    pass

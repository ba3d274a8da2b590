"""Indexer error taxonomy."""


class IndexerError(Exception):
    """Base class for indexer failures."""


class ConfigurationError(IndexerError):
    """Missing or malformed configuration. Fatal before any state mutation."""


class LedgerQueryError(IndexerError):
    """A ledger read failed after its retries were used up."""


class DiscoveryError(IndexerError):
    """The factory discovery pass failed; the run must not advance the cursor."""


class DecodeError(IndexerError):
    """A log did not match the candidate event schema."""

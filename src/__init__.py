"""
DScope backend.

Two services share this package: the ledger indexer (``src.indexer``), run
as a batch job, and the attestation HTTP service (``src.main``), built on
FastAPI.
"""

__all__ = [
]

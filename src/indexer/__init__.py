"""
Incremental ledger indexer.

Scans survey factory and survey contract logs in block batches, folds the
decoded events into an entity store, enriches it with off-chain metadata and
funding proofs, and publishes an atomic snapshot for the dashboard.
"""

"""
Attestation service: merges privacy-preserving proof submissions into
k-anonymized per-survey aggregates, signs eligibility tokens and streams
aggregate deltas to live dashboards.
"""

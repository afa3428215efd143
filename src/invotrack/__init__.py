"""
InvoTrack – inventory and invoice reconciliation core.

Scanned delivery notes and POS catalog pulls arrive as batches of product
lines; this package merges them into a per-user inventory store and keeps
the matching invoice history.
"""

__all__ = [
    "config",
    "logging",
    "paths",
]

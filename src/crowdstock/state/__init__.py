"""State layer.

This package is the single source of truth for how incoming reports are
decayed, reconciled and folded into a deterministic per-entity belief.
"""

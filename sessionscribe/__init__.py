"""
sessionscribe package.

Design intent:
- Capture therapy session recordings and turn them into saved notes.
- Reconcile stored notes against calendar sessions and client relationships.
"""

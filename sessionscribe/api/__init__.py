"""
API orchestration boundary for sessionscribe.

Design intent:
- Expose thin, typed endpoints for capture, session notes and relationships.
- Keep request validation explicit and error categories distinguishable.
"""

"""
Capture module boundary for sessionscribe.

Design intent:
- Own the live recording state machine and the uploaded-file pipeline.
- Keep device and recognizer specifics behind small contracts.
- Never drop a stopped recording, even when no transcript exists.
"""

"""
Persistence boundary: the backend HTTP client and the two-phase recording save.
"""

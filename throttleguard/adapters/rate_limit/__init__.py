"""Rate limiting adapters.

This package keeps the ``limits`` engine behind a small interface so the
throttle rules do not depend on a particular storage backend.
"""

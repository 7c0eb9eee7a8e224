"""Rate limiting adapters.

Storage for per-partition admission windows. The HTTP layer talks to the
abstract store so the in-memory implementation stays an implementation
detail of the process that owns it.
"""

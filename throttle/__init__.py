"""throttle/ -- Database-backed rate limiting for device-facing endpoints.

Layer rule: throttle/ imports only stdlib and third-party libraries.
"""

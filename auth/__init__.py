"""auth/ -- Authentication and authorization engine for StaffGate.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/; configuration values are injected.
api/ and main.py import from auth/, not the other way around.
"""

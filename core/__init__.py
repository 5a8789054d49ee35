"""core/ -- Kernel package for Gatehouse: settings, errors, config validators.

Layer rule: core/ imports only stdlib + third-party libraries.
db/ and auth/ import from core/, never the other way around.
"""

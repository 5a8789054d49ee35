"""db/ -- Resilient query execution over a remote or local relational store.

Layer rule: db/ imports from core/ and third-party libraries only.
auth/ imports from db/, never the other way around.
"""

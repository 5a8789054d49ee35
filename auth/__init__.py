"""auth/ -- Credential issuance and session lifecycle for Gatehouse.

Modules, bottom-up: tokens (random tokens, constant-time compare), hashing
(password hashers), models (dataclasses), schema (table definitions),
store (persistence), oauth (provider clients + exchange state machine),
workflows (register / login / verify / reset).

Layer rule: auth/ imports from core/, db/ and third-party libraries.
Nothing in core/ or db/ imports from auth/.
"""

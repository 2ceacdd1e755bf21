"""
identity/ -- Credential and identity-lifecycle engine.

Authenticates accounts, enforces brute-force lockout, issues and consumes
single-use confirmation / reset tokens, and links external identities to
local accounts.

Layer rule: identity/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ and main.py import from identity/.
"""

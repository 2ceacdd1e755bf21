"""
identity/errors.py -- Exception taxonomy for the credential engine.

Components (store, token issuer, hasher) raise these; AuthEngine catches them
and collapses them into a small set of caller-visible AuthResult outcomes so
that security-relevant branches do not leak which underlying cause fired.
"""

from __future__ import annotations


class IdentityError(Exception):
    """Base class for every error raised inside identity/."""


class ValidationFailure(IdentityError):
    """Caller-supplied data is malformed (weak password, empty email, ...)."""


class NotFound(IdentityError):
    """An account, role or token does not exist."""


class Conflict(IdentityError):
    """A uniqueness rule would be violated (email taken, role already assigned)."""


class TokenError(IdentityError):
    """A credential token cannot be consumed."""


class TokenNotFound(TokenError, NotFound):
    pass


class TokenAlreadyUsed(TokenError):
    pass


class TokenExpired(TokenError):
    pass


class TransientStoreFailure(IdentityError):
    """The credential store is unavailable. Never retried by the engine."""

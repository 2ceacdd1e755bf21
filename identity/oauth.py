"""
identity/oauth.py -- Authlib OAuth/OIDC provider configuration.

create_oauth() registers only the providers whose client ID and secret are
both configured; get_enabled_providers() reports the same set so the
/providers endpoint and the redirect routes agree on what is available.

Security notes:
  Email verification is mandatory. get_oauth_user_info() raises ValueError
  if the provider does not confirm the email is verified. AuthEngine trusts
  the email it receives and creates accounts pre-confirmed, so an unverified
  address here would let an attacker claim a victim's account.

  OAuth state (CSRF protection) is handled by authlib via Starlette
  SessionMiddleware. The session stores the state between the authorization
  redirect and the callback.

Supported providers:
  github -- Authorization code flow; static endpoints.
  google -- Authorization code flow; OIDC discovery.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from core.config import Settings, get_settings
from identity.models import ExternalIdentity

logger = logging.getLogger("identitycore.oauth")

_LABELS = {"github": "GitHub", "google": "Google"}


def create_oauth(settings: Settings | None = None) -> OAuth:
    """Build an authlib registry with every configured provider."""
    cfg = settings or get_settings()
    oauth = OAuth()

    # GitHub -- static endpoints (no OIDC discovery document)
    if cfg.github_client_id and cfg.github_client_secret:
        oauth.register(
            name="github",
            client_id=cfg.github_client_id,
            client_secret=cfg.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    # Google -- OIDC discovery
    if cfg.google_client_id and cfg.google_client_secret:
        oauth.register(
            name="google",
            client_id=cfg.google_client_id,
            client_secret=cfg.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    return oauth


def get_enabled_providers(settings: Settings | None = None) -> list[dict]:
    """Return [{"name", "label"}] for every provider with both credentials set."""
    cfg = settings or get_settings()
    providers: list[dict] = []
    if cfg.github_client_id and cfg.github_client_secret:
        providers.append({"name": "github", "label": _LABELS["github"]})
    if cfg.google_client_id and cfg.google_client_secret:
        providers.append({"name": "google", "label": _LABELS["google"]})
    return providers


# ---------------------------------------------------------------------------
# Identity extraction -- provider-specific normalization
# ---------------------------------------------------------------------------


async def get_oauth_user_info(client, provider: str, token: dict) -> ExternalIdentity:
    """Normalize a provider token response into an ExternalIdentity.

    Raises:
        ValueError: unknown provider, or a verified email cannot be confirmed.
    """
    if provider == "github":
        return await _get_github_user_info(client, token)
    elif provider == "google":
        return identity_from_userinfo(provider, token.get("userinfo"))
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_user_info(client, token: dict) -> ExternalIdentity:
    """GitHub needs two calls: GET /user for the stable id, GET /user/emails
    for the primary verified address. Only primary=true AND verified=true is
    accepted.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()
    email = primary_verified_email(emails_resp.json())
    if not email:
        raise ValueError(
            "GitHub OAuth: no primary verified email found. "
            "The user must verify their email address on GitHub before logging in."
        )

    first_name, last_name = _split_name(profile.get("name"))
    return ExternalIdentity(
        provider="github",
        provider_key=str(profile["id"]),
        email=email,
        first_name=first_name,
        last_name=last_name,
        provider_display_name=profile.get("login"),
    )


def primary_verified_email(entries: list[dict]) -> str | None:
    for entry in entries:
        if entry.get("primary") and entry.get("verified"):
            return entry.get("email")
    return None


def identity_from_userinfo(provider: str, userinfo: dict | None) -> ExternalIdentity:
    """Build an identity from OIDC id_token claims.

    A missing email_verified claim counts as unverified.
    """
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError(
            f"{provider} OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    email = userinfo.get("email")
    subject_id = userinfo.get("sub")
    if not email or not subject_id:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")

    return ExternalIdentity(
        provider=provider,
        provider_key=str(subject_id),
        email=email,
        first_name=userinfo.get("given_name"),
        last_name=userinfo.get("family_name"),
        provider_display_name=userinfo.get("name"),
    )


def _split_name(full_name: str | None) -> tuple[str | None, str | None]:
    if not full_name:
        return None, None
    first, _, last = full_name.strip().partition(" ")
    return first or None, last.strip() or None

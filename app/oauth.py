"""OAuth provider configuration and authorization URL helpers."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from urllib.parse import urlencode

from .config import Settings
from .security import ConfigurationError

AUTHORIZE_URLS: dict[str, str] = {
    "google": "https://accounts.google.com/o/oauth2/v2/auth",
    "github": "https://github.com/login/oauth/authorize",
}

SCOPES: dict[str, tuple[str, ...]] = {
    "google": ("openid", "email", "profile"),
    "github": ("user:email",),
}

PROVIDER_LABELS = {"google": "Google", "github": "GitHub"}


@dataclass(slots=True, frozen=True)
class OAuthConfig:
    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: tuple[str, ...]


def get_oauth_config(settings: Settings, provider: str) -> OAuthConfig:
    """Return the client configuration for ``provider``."""

    if provider == "google":
        client_id, client_secret = settings.google_client_id, settings.google_client_secret
    elif provider == "github":
        client_id, client_secret = settings.github_client_id, settings.github_client_secret
    else:
        raise ValueError(f"Unsupported OAuth provider: {provider}")

    if not (client_id and client_secret):
        raise ConfigurationError(
            f"{PROVIDER_LABELS[provider]} OAuth credentials are not configured"
        )
    return OAuthConfig(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=f"{settings.app_url}/api/auth/oauth/{provider}",
        scopes=SCOPES[provider],
    )


def generate_oauth_state() -> str:
    """Random 32-character hex token for CSRF protection."""

    return secrets.token_hex(16)


def build_oauth_url(settings: Settings, provider: str, state: str) -> str:
    config = get_oauth_config(settings, provider)
    params = {
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "response_type": "code",
        "scope": " ".join(config.scopes),
        "state": state,
    }
    if provider == "google":
        params["access_type"] = "offline"
        params["prompt"] = "consent"
    return f"{AUTHORIZE_URLS[provider]}?{urlencode(params)}"

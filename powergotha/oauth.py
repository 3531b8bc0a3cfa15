"""OAuth login strategies.

A strategy knows how to send the user to a provider and how to turn the
callback ``code`` into a profile. Strategies are collected in an
``AuthStrategyRegistry`` that the app factory receives, so tests can hand in
fakes instead of talking to Google or Facebook.
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

import httpx
import structlog

from . import config
from .errors import AuthenticationError, NotFoundError

logger = structlog.get_logger()


@dataclass(frozen=True)
class OAuthProfile:
    provider: str
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    avatar: Optional[str] = None


class OAuthStrategy:
    name = ""
    authorize_endpoint = ""
    scope = ""

    def __init__(self, client_id: str, client_secret: str, callback_url: str, timeout: float = 10.0):
        self.client_id = client_id
        self.client_secret = client_secret
        self.callback_url = callback_url
        self.timeout = timeout

    def authorization_url(self, state: Optional[str] = None) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.callback_url,
            "response_type": "code",
            "scope": self.scope,
        }
        if state:
            params["state"] = state
        return f"{self.authorize_endpoint}?{urlencode(params)}"

    def fetch_profile(self, code: str) -> OAuthProfile:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                token = self._exchange_code(client, code)
                return self._profile(client, token)
        except (httpx.HTTPError, KeyError) as e:
            logger.warning("oauth_failed", provider=self.name, error=str(e))
            raise AuthenticationError("Unauthorized")

    def _exchange_code(self, client: httpx.Client, code: str) -> str:
        raise NotImplementedError

    def _profile(self, client: httpx.Client, access_token: str) -> OAuthProfile:
        raise NotImplementedError


class GoogleStrategy(OAuthStrategy):
    name = "google"
    authorize_endpoint = "https://accounts.google.com/o/oauth2/v2/auth"
    token_endpoint = "https://oauth2.googleapis.com/token"
    userinfo_endpoint = "https://www.googleapis.com/oauth2/v3/userinfo"
    scope = "openid profile email"

    def _exchange_code(self, client, code):
        r = client.post(self.token_endpoint, data={
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.callback_url,
            "grant_type": "authorization_code",
        })
        r.raise_for_status()
        return r.json()["access_token"]

    def _profile(self, client, access_token):
        r = client.get(self.userinfo_endpoint, headers={"Authorization": f"Bearer {access_token}"})
        r.raise_for_status()
        data = r.json()
        return OAuthProfile(
            provider=self.name,
            id=str(data["sub"]),
            name=data.get("name"),
            email=data.get("email"),
            avatar=data.get("picture"),
        )


class FacebookStrategy(OAuthStrategy):
    name = "facebook"
    authorize_endpoint = "https://www.facebook.com/v19.0/dialog/oauth"
    token_endpoint = "https://graph.facebook.com/v19.0/oauth/access_token"
    userinfo_endpoint = "https://graph.facebook.com/me"
    scope = "email"

    def _exchange_code(self, client, code):
        r = client.get(self.token_endpoint, params={
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.callback_url,
        })
        r.raise_for_status()
        return r.json()["access_token"]

    def _profile(self, client, access_token):
        r = client.get(self.userinfo_endpoint, params={
            "fields": "id,name,email,picture",
            "access_token": access_token,
        })
        r.raise_for_status()
        data = r.json()
        return OAuthProfile(
            provider=self.name,
            id=str(data["id"]),
            name=data.get("name"),
            email=data.get("email"),
            avatar=((data.get("picture") or {}).get("data") or {}).get("url"),
        )


class AuthStrategyRegistry:
    def __init__(self, strategies=()):
        self._strategies = {}
        for strategy in strategies:
            self.register(strategy)

    def register(self, strategy) -> None:
        self._strategies[strategy.name] = strategy

    def get(self, name: str):
        try:
            return self._strategies[name]
        except KeyError:
            raise NotFoundError(f"Unsupported login provider: {name}")

    def __contains__(self, name: str) -> bool:
        return name in self._strategies

    @property
    def names(self) -> list[str]:
        return sorted(self._strategies)


def default_registry() -> AuthStrategyRegistry:
    """Strategies for every provider that has credentials in the environment."""
    registry = AuthStrategyRegistry()
    if config.GOOGLE_CLIENT_ID and config.GOOGLE_CLIENT_SECRET:
        registry.register(GoogleStrategy(config.GOOGLE_CLIENT_ID, config.GOOGLE_CLIENT_SECRET, config.GOOGLE_CALLBACK_URL))
    if config.FACEBOOK_APP_ID and config.FACEBOOK_APP_SECRET:
        registry.register(FacebookStrategy(config.FACEBOOK_APP_ID, config.FACEBOOK_APP_SECRET, config.FACEBOOK_CALLBACK_URL))
    return registry

"""Outbound authentication strategies for payment gateways.

Each strategy is a requests AuthBase, so a provider picks one at
construction time and every call just passes `auth=...`.

- ApiKeyAuth: static key in a header (Bearer or raw, e.g. V-PUBLIC-KEY)
- OAuth2ClientCredentialsAuth: client-credentials token, cached in
  process until shortly before `expires_in`
"""

import logging
import threading
import time

import requests
from requests.auth import AuthBase, HTTPBasicAuth

from marketpay.errors import ProviderError

logger = logging.getLogger(__name__)

# Refresh tokens this many seconds before the provider says they expire.
TOKEN_EXPIRY_MARGIN_SECONDS = 60

_token_cache = {}  # cache_key -> (access_token, expires_at_epoch)
_token_lock = threading.Lock()


def _get_cached_token(cache_key):
    entry = _token_cache.get(cache_key)
    if not entry:
        return None
    token, expires_at = entry
    if time.time() >= expires_at:
        _token_cache.pop(cache_key, None)
        return None
    return token


def _set_cached_token(cache_key, token, expires_in):
    ttl = max(int(expires_in) - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
    _token_cache[cache_key] = (token, time.time() + ttl)


def clear_token_cache():
    """Drop every cached token (used by tests and after credential rotation)."""
    with _token_lock:
        _token_cache.clear()


class ApiKeyAuth(AuthBase):
    """Put a static API key in a request header.

    ApiKeyAuth(key)                                  -> Authorization: Bearer <key>
    ApiKeyAuth(key, header="V-PUBLIC-KEY", scheme=None) -> V-PUBLIC-KEY: <key>
    """

    def __init__(self, api_key, header="Authorization", scheme="Bearer"):
        self.api_key = api_key
        self.header = header
        self.scheme = scheme

    def __call__(self, r):
        if self.scheme:
            r.headers[self.header] = f"{self.scheme} {self.api_key}"
        else:
            r.headers[self.header] = self.api_key
        return r


class OAuth2ClientCredentialsAuth(AuthBase):
    """OAuth2 client-credentials bearer token with an in-process cache."""

    def __init__(self, token_url, client_id, client_secret, scope=None, timeout=15):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self.timeout = timeout

    @property
    def cache_key(self):
        return f"{self.token_url}|{self.client_id}|{self.scope or ''}"

    def get_token(self):
        """Return a valid access token, fetching a new one when needed.

        Raises ProviderError if the token endpoint rejects the credentials.
        Transport errors (timeouts) propagate as requests exceptions.
        """
        with _token_lock:
            token = _get_cached_token(self.cache_key)
            if token:
                return token

            data = {"grant_type": "client_credentials"}
            if self.scope:
                data["scope"] = self.scope

            response = requests.post(
                self.token_url,
                data=data,
                auth=HTTPBasicAuth(self.client_id, self.client_secret),
                timeout=self.timeout,
            )
            if not response.ok:
                logger.error(
                    f"OAuth token request to {self.token_url} failed: "
                    f"{response.status_code} {response.text}"
                )
                raise ProviderError(
                    "Failed to authenticate with payment provider",
                    status_code=response.status_code,
                    raw_body=response.text,
                )

            payload = response.json()
            token = payload.get("access_token")
            if not token:
                raise ProviderError(
                    "Token response did not include an access_token",
                    status_code=response.status_code,
                    raw_body=response.text,
                )
            _set_cached_token(self.cache_key, token, payload.get("expires_in", 3600))
            return token

    def __call__(self, r):
        r.headers["Authorization"] = f"Bearer {self.get_token()}"
        return r

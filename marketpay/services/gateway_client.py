"""Thin HTTP layer for payment gateway calls.

Every outbound call returns a GatewayResult instead of raising, so each
service decides what a non-2xx answer or a timeout means for its own
state machine. Only requests exceptions are absorbed here; anything the
auth strategy raises (ProviderError) propagates.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import requests

logger = logging.getLogger(__name__)


@dataclass
class GatewayResult:
    ok: bool
    status_code: Optional[int] = None
    data: dict = field(default_factory=dict)
    raw_body: str = ""
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def outcome_unknown(self):
        """True when the request may or may not have reached the provider."""
        return not self.ok and self.status_code is None


def _to_result(response):
    try:
        data = response.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {"data": data}
    return GatewayResult(
        ok=response.ok,
        status_code=response.status_code,
        data=data,
        raw_body=response.text,
    )


def _send(method, url, timeout, **kwargs):
    try:
        response = requests.request(method, url, timeout=timeout, **kwargs)
    except requests.Timeout as e:
        logger.warning(f"{method} {url} timed out after {timeout}s")
        return GatewayResult(ok=False, timed_out=True, error=str(e))
    except requests.RequestException as e:
        logger.warning(f"{method} {url} failed: {e}")
        return GatewayResult(ok=False, error=str(e))

    result = _to_result(response)
    if not result.ok:
        logger.warning(f"{method} {url} returned {result.status_code}: {result.raw_body[:500]}")
    return result


def post_json(url, payload, timeout, auth=None, headers=None):
    """POST a JSON body. Returns a GatewayResult."""
    return _send("POST", url, timeout, json=payload, auth=auth, headers=headers)


def get_json(url, timeout, params=None, auth=None, headers=None):
    """GET with query params. Returns a GatewayResult."""
    return _send("GET", url, timeout, params=params, auth=auth, headers=headers)

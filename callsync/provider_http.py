"""Shared HTTP plumbing for provider list APIs.

Maps transport and status failures onto the error taxonomy so poll code
never has to look at a requests exception.
"""

import logging

import requests

from .errors import AuthError, TransientProviderError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30


def _check(resp, url):
    if resp.status_code in (401, 403):
        raise AuthError(
            f"{url} rejected credentials ({resp.status_code})", status_code=resp.status_code
        )
    if resp.status_code == 429 or resp.status_code >= 500:
        raise TransientProviderError(
            f"{url} returned {resp.status_code}", status_code=resp.status_code
        )
    if resp.status_code >= 400:
        raise TransientProviderError(
            f"{url} returned {resp.status_code}: {resp.text[:200]}",
            status_code=resp.status_code,
        )


def provider_request(method, url, **kwargs):
    """Send a request and return the decoded JSON body."""
    kwargs.setdefault("timeout", REQUEST_TIMEOUT)
    try:
        resp = requests.request(method, url, **kwargs)
    except requests.RequestException as e:
        raise TransientProviderError(f"{method} {url} failed: {e}") from e

    _check(resp, url)
    try:
        return resp.json()
    except ValueError as e:
        raise TransientProviderError(f"{url} returned a non-JSON body") from e


def provider_get(url, **kwargs):
    return provider_request("GET", url, **kwargs)


def provider_post(url, **kwargs):
    return provider_request("POST", url, **kwargs)

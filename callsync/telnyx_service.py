"""Telnyx v2 API list helpers for the poll reconciler."""

import logging

from .provider_http import provider_get

logger = logging.getLogger(__name__)

TELNYX_API_BASE = "https://api.telnyx.com/v2"

# Sorted by created_at, oldest first.
RESOURCES = {"calls": True}
CURSOR_FIELDS = {"calls": "created_at"}


def _headers(credentials):
    return {
        "Authorization": f"Bearer {credentials['api_key']}",
        "Content-Type": "application/json",
    }


def iter_pages(credentials, resource, since, page_size=100):
    """Yield pages of call records created on or after ``since``."""
    url = f"{TELNYX_API_BASE}/{resource}"
    params = {"page[size]": page_size, "sort": "created_at"}
    if since is not None:
        params["filter[created_at][gte]"] = since.strftime("%Y-%m-%dT%H:%M:%SZ")

    page_token = None
    while True:
        if page_token:
            params["page[token]"] = page_token
        data = provider_get(url, params=params, headers=_headers(credentials))
        records = data.get("data") or []
        yield records

        page_token = (data.get("meta") or {}).get("next_page_token")
        if not page_token or not records:
            break

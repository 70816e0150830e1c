"""Vapi API list helpers for the poll reconciler."""

import logging

from .provider_http import provider_get
from .timeutils import parse_timestamp

logger = logging.getLogger(__name__)

VAPI_API_BASE = "https://api.vapi.ai"

# Vapi returns the newest calls first.
RESOURCES = {"calls": False}
CURSOR_FIELDS = {"calls": "createdAt"}


def iter_pages(credentials, resource, since, page_size=100):
    """Yield pages of calls created on or after ``since``, newest first.

    Vapi has no page token; each request asks for calls created at or before
    the oldest one already seen. The overlap is absorbed by the upsert and
    keeps calls that share a millisecond across a page break.
    """
    url = f"{VAPI_API_BASE}/call"
    headers = {"Authorization": f"Bearer {credentials['api_key']}"}
    params = {"limit": page_size}
    boundary = None
    if since is not None:
        params["createdAtGe"] = since.strftime("%Y-%m-%dT%H:%M:%S.000Z")

    while True:
        records = provider_get(url, params=params, headers=headers)
        if isinstance(records, dict):
            records = records.get("results") or []
        yield records

        if len(records) < page_size:
            break
        oldest = min(
            (parse_timestamp(r.get("createdAt")) for r in records if r.get("createdAt")),
            default=None,
        )
        if oldest is None:
            break
        stamp = oldest.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        if stamp == boundary:
            # A whole page shares this millisecond; step past it.
            logger.warning("Vapi: more than %d calls created at %s", page_size, stamp)
            params.pop("createdAtLe", None)
            params["createdAtLt"] = stamp
        else:
            params.pop("createdAtLt", None)
            params["createdAtLe"] = stamp
        boundary = stamp

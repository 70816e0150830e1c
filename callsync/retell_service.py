"""Retell AI list helpers for the poll reconciler."""

import logging

from .provider_http import provider_post

logger = logging.getLogger(__name__)

RETELL_API_BASE = "https://api.retellai.com"

# Requested in ascending start order.
RESOURCES = {"calls": True}
CURSOR_FIELDS = {"calls": "start_timestamp"}


def iter_pages(credentials, resource, since, page_size=100):
    """Yield pages of calls started on or after ``since``, oldest first."""
    url = f"{RETELL_API_BASE}/v2/list-calls"
    headers = {"Authorization": f"Bearer {credentials['api_key']}"}
    body = {"sort_order": "ascending", "limit": page_size}
    if since is not None:
        body["filter_criteria"] = {
            "start_timestamp": {"lower_threshold": int(since.timestamp() * 1000)}
        }

    while True:
        records = provider_post(url, json=body, headers=headers)
        if isinstance(records, dict):
            records = records.get("calls") or []
        yield records

        if len(records) < page_size:
            break
        body["pagination_key"] = records[-1].get("call_id")
        if not body["pagination_key"]:
            break

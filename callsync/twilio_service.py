"""Twilio REST API list helpers for the poll reconciler."""

import logging

from requests.auth import HTTPBasicAuth

from .provider_http import provider_get

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
TWILIO_HOST = "https://api.twilio.com"

# resource -> True when listed oldest-first. Twilio lists newest-first.
RESOURCES = {"calls": False, "messages": False}

# Record field the date filter applies to; the checkpoint tracks it.
CURSOR_FIELDS = {"calls": "start_time", "messages": "date_sent"}

_LIST_KEYS = {"calls": "calls", "messages": "messages"}


def get_auth(account_sid, auth_token):
    return HTTPBasicAuth(account_sid, auth_token)


def _first_url(account_sid, resource):
    name = "Calls" if resource == "calls" else "Messages"
    return f"{TWILIO_API_BASE}/Accounts/{account_sid}/{name}.json"


def iter_pages(credentials, resource, since, page_size=100):
    """Yield pages of Call or Message records created on or after ``since``.

    Twilio only filters by date, so the first page may repeat records from
    the checkpoint day; the upsert absorbs them.
    """
    account_sid = credentials["account_sid"]
    auth = get_auth(account_sid, credentials["auth_token"])

    url = _first_url(account_sid, resource)
    params = {"PageSize": page_size}
    if since is not None:
        date_filter = "StartTime>=" if resource == "calls" else "DateSent>="
        params[date_filter] = since.strftime("%Y-%m-%d")

    while url:
        data = provider_get(url, params=params, auth=auth)
        records = data.get(_LIST_KEYS[resource], [])
        logger.debug("Twilio %s page: %d records", resource, len(records))
        yield records

        # Pagination
        next_page = data.get("next_page_uri")
        if next_page:
            url = f"{TWILIO_HOST}{next_page}"
            params = {}  # next_page_uri includes params
        else:
            url = None

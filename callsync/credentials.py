"""Decrypt-on-demand boundary for provider credentials.

Encryption at rest is owned elsewhere. Deployments plug their capability in
through the CREDENTIAL_DECRYPTOR / CREDENTIAL_ENCRYPTOR config callables;
without them the column holds plain JSON.
"""

import json
import logging

from flask import current_app

from .errors import CredentialsUnavailable

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = {
    "twilio": ("account_sid", "auth_token"),
    "telnyx": ("api_key",),
    "vapi": ("api_key",),
    "retell": ("api_key",),
}


def validate_credentials(provider, credentials):
    """Return the list of missing required fields for ``provider``."""
    required = REQUIRED_FIELDS.get(provider, ())
    return [name for name in required if not (credentials or {}).get(name)]


def encrypt_credentials(credentials):
    encryptor = current_app.config.get("CREDENTIAL_ENCRYPTOR")
    try:
        if encryptor is not None:
            return encryptor(credentials)
        return json.dumps(credentials)
    except Exception as e:
        raise CredentialsUnavailable(f"Credential encryption failed: {e}") from e


def decrypt_credentials(integration):
    """Return the integration's credentials as a dict, just in time."""
    if not integration.encrypted_credentials:
        raise CredentialsUnavailable(f"Integration {integration.id} has no credentials")

    decryptor = current_app.config.get("CREDENTIAL_DECRYPTOR")
    try:
        if decryptor is not None:
            credentials = decryptor(integration.encrypted_credentials)
        else:
            credentials = json.loads(integration.encrypted_credentials)
    except Exception as e:
        raise CredentialsUnavailable(
            f"Could not decrypt credentials for integration {integration.id}: {e}"
        ) from e

    if not isinstance(credentials, dict):
        raise CredentialsUnavailable(
            f"Credentials for integration {integration.id} are not a mapping"
        )
    return credentials

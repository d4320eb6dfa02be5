"""
Shared constants.
"""

import re

SUPPORTED_PROVIDERS = ("gmail", "outlook")

# Tenant ids end up in workflow names and engine expressions; keep them plain.
TENANT_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,64}")

# Real-estate portals whose lead notifications the provisioned workflows pick up.
DEFAULT_EMAIL_FILTERS = (
    "leboncoin.fr",
    "seloger.com",
    "pap.fr",
    "logic-immo.com",
    "bienici.com",
    "figaroimmo.fr",
    "avendrealouer.fr",
    "paruvendu.fr",
    "ouestfrance-immo.com",
)

# Provisioning status values stored on the tenant row.
STATUS_NOT_STARTED = "NOT_STARTED"
STATUS_TOKENS_SAVED = "TOKENS_SAVED"
STATUS_CREDENTIAL_CREATED = "CREDENTIAL_CREATED"
STATUS_CREDENTIAL_SKIPPED = "CREDENTIAL_SKIPPED"
STATUS_WORKFLOW_CREATED = "WORKFLOW_CREATED"
STATUS_COMPLETE = "COMPLETE"

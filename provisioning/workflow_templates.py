"""
Per-provider "Email Parser" workflow templates and engine credential payloads.

Templates are plain node graphs with ``{{TENANT_ID}}``-style placeholders
that ``render_template`` substitutes recursively.  Each builder takes an
optional engine credential id: with one, the mailbox is read through the
engine's native node bound to that credential; without one, the workflow
pulls a fresh access token from this backend's token endpoint and calls
the mailbox API over plain HTTP.  Both shapes are valid workflows.
"""

from __future__ import annotations

import copy
import json
import re
from datetime import timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from config.constants import TENANT_ID_PATTERN
from utils.exceptions import InvalidTenantId
from utils.schemas import TokenBundle

PLACEHOLDER_TENANT_ID = "{{TENANT_ID}}"
PLACEHOLDER_TENANT_ID_JSON = "{{TENANT_ID_JSON}}"
PLACEHOLDER_BACKEND_URL = "{{BACKEND_URL}}"
PLACEHOLDER_SENDER_DOMAINS = "{{SENDER_DOMAINS}}"
PLACEHOLDER_GMAIL_QUERY = "{{GMAIL_QUERY}}"

_PLACEHOLDER = re.compile(r"\{\{[A-Z_]+\}\}")

_SETTINGS = {"executionOrder": "v1", "saveDataErrorExecution": "all", "saveDataSuccessExecution": "none"}

_SCHEDULE_NODE = {
    "name": "Schedule",
    "type": "n8n-nodes-base.scheduleTrigger",
    "typeVersion": 1,
    "position": [250, 300],
    "parameters": {"rule": {"interval": [{"field": "minutes", "minutesInterval": 1}]}},
}

_TOKEN_NODE = {
    "name": "Get Access Token",
    "type": "n8n-nodes-base.httpRequest",
    "typeVersion": 4,
    "position": [450, 300],
    "parameters": {
        "url": PLACEHOLDER_BACKEND_URL + "/api/token/{provider}/" + PLACEHOLDER_TENANT_ID,
        "method": "GET",
        "sendHeaders": True,
        "headerParameters": {
            "parameters": [{"name": "X-Internal-Key", "value": "={{ $env.INTERNAL_API_KEY }}"}]
        },
        "options": {},
    },
}

_FILTER_NODE = {
    "name": "Filter Portals",
    "type": "n8n-nodes-base.code",
    "typeVersion": 2,
    "position": [850, 300],
    "parameters": {
        "mode": "runOnceForAllItems",
        "jsCode": (
            "const domains = " + PLACEHOLDER_SENDER_DOMAINS + ";\n"
            "return $input.all().filter(item => {\n"
            "  const from = JSON.stringify(item.json.from || item.json.From || '').toLowerCase();\n"
            "  return domains.some(d => from.includes(d));\n"
            "});\n"
        ),
    },
}

_FORWARD_NODE = {
    "name": "Send To Backend",
    "type": "n8n-nodes-base.httpRequest",
    "typeVersion": 4,
    "position": [1050, 300],
    "parameters": {
        "url": PLACEHOLDER_BACKEND_URL + "/api/leads/email",
        "method": "POST",
        "sendBody": True,
        "specifyBody": "json",
        "jsonBody": (
            '={{ JSON.stringify({ tenantId: ' + PLACEHOLDER_TENANT_ID_JSON + ', email: $json }) }}'
        ),
        "options": {},
    },
}


def _chain(*names: str) -> Dict[str, Any]:
    return {
        src: {"main": [[{"node": dst, "type": "main", "index": 0}]]}
        for src, dst in zip(names, names[1:])
    }


def render_template(template: Any, substitutions: Dict[str, str]) -> Any:
    """
    Deep-copy ``template`` replacing every placeholder in every string.

    Each string is scanned once, so substituted values are never expanded
    again.  Unknown ``{{NAME}}`` tokens are left as they are.
    """
    if isinstance(template, str):
        return _PLACEHOLDER.sub(lambda m: substitutions.get(m.group(0), m.group(0)), template)
    if isinstance(template, dict):
        return {k: render_template(v, substitutions) for k, v in template.items()}
    if isinstance(template, list):
        return [render_template(v, substitutions) for v in template]
    return copy.deepcopy(template)


def _token_node(provider: str) -> Dict[str, Any]:
    node = copy.deepcopy(_TOKEN_NODE)
    node["parameters"]["url"] = node["parameters"]["url"].replace("{provider}", provider)
    return node


def _bearer(url: str, name: str, position: List[int]) -> Dict[str, Any]:
    return {
        "name": name,
        "type": "n8n-nodes-base.httpRequest",
        "typeVersion": 4,
        "position": position,
        "parameters": {
            "url": url,
            "method": "GET",
            "authentication": "none",
            "sendHeaders": True,
            "headerParameters": {
                "parameters": [
                    {
                        "name": "Authorization",
                        "value": '=Bearer {{ $node["Get Access Token"].json.access_token }}',
                    }
                ]
            },
            "options": {},
        },
    }


# ── Gmail ──────────────────────────────────────────────────────────────────


def gmail_template(credential_id: Optional[str]) -> Dict[str, Any]:
    if credential_id:
        fetch = [
            {
                "name": "Get Messages",
                "type": "n8n-nodes-base.gmail",
                "typeVersion": 2,
                "position": [650, 300],
                "parameters": {
                    "operation": "getAll",
                    "limit": 10,
                    "simple": False,
                    "filters": {"q": PLACEHOLDER_GMAIL_QUERY, "readStatus": "unread"},
                },
                "credentials": {
                    "gmailOAuth2": {"id": credential_id, "name": "Gmail - " + PLACEHOLDER_TENANT_ID}
                },
            }
        ]
    else:
        fetch = [
            _token_node("gmail"),
            _bearer(
                "=https://gmail.googleapis.com/gmail/v1/users/me/messages?maxResults=10&q="
                + PLACEHOLDER_GMAIL_QUERY,
                "Get Messages",
                [650, 300],
            ),
        ]
    names = ["Schedule"] + [n["name"] for n in fetch] + ["Filter Portals", "Send To Backend"]
    return {
        "name": "Email Parser - Gmail - " + PLACEHOLDER_TENANT_ID,
        "nodes": [_SCHEDULE_NODE, *fetch, _FILTER_NODE, _FORWARD_NODE],
        "connections": _chain(*names),
        "settings": _SETTINGS,
    }


# ── Outlook ────────────────────────────────────────────────────────────────


def outlook_template(credential_id: Optional[str]) -> Dict[str, Any]:
    if credential_id:
        fetch = [
            {
                "name": "Get Messages",
                "type": "n8n-nodes-base.microsoftOutlook",
                "typeVersion": 2,
                "position": [650, 300],
                "parameters": {
                    "resource": "message",
                    "operation": "getAll",
                    "limit": 10,
                    "filtersUI": {"values": {"filterBy": "filters", "filters": {"readStatus": "unread"}}},
                },
                "credentials": {
                    "microsoftOutlookOAuth2Api": {
                        "id": credential_id,
                        "name": "Outlook - " + PLACEHOLDER_TENANT_ID,
                    }
                },
            }
        ]
    else:
        fetch = [
            _token_node("outlook"),
            _bearer(
                "=https://graph.microsoft.com/v1.0/me/mailFolders/inbox/messages"
                "?$top=10&$filter=isRead eq false",
                "Get Messages",
                [650, 300],
            ),
        ]
    names = ["Schedule"] + [n["name"] for n in fetch] + ["Filter Portals", "Send To Backend"]
    return {
        "name": "Email Parser - Outlook - " + PLACEHOLDER_TENANT_ID,
        "nodes": [_SCHEDULE_NODE, *fetch, _FILTER_NODE, _FORWARD_NODE],
        "connections": _chain(*names),
        "settings": _SETTINGS,
    }


WORKFLOW_TEMPLATES: Dict[str, Callable[[Optional[str]], Dict[str, Any]]] = {
    "gmail": gmail_template,
    "outlook": outlook_template,
}


def build_workflow(
    provider: str,
    tenant_id: str,
    credential_id: Optional[str],
    email_filters: Sequence[str],
    backend_url: str,
) -> Dict[str, Any]:
    """Render the provider's template for one tenant."""
    template = WORKFLOW_TEMPLATES[provider](credential_id)
    if not TENANT_ID_PATTERN.fullmatch(tenant_id):
        raise InvalidTenantId()
    domains = [d.lower() for d in email_filters]
    gmail_query = "from:(" + " OR ".join(domains) + ")" if domains else ""
    return render_template(
        template,
        {
            PLACEHOLDER_TENANT_ID: tenant_id,
            PLACEHOLDER_TENANT_ID_JSON: json.dumps(tenant_id),
            PLACEHOLDER_BACKEND_URL: backend_url.rstrip("/"),
            PLACEHOLDER_SENDER_DOMAINS: json.dumps(domains),
            PLACEHOLDER_GMAIL_QUERY: gmail_query,
        },
    )


# ── Engine credentials ─────────────────────────────────────────────────────


def credential_payload(
    provider: str,
    tenant_id: str,
    bundle: TokenBundle,
    client_id: str,
    client_secret: str,
) -> Tuple[str, str, Dict[str, Any]]:
    """Return ``(credential_type, name, data)`` for the engine's ``POST /credentials``."""
    token_data = {
        "access_token": bundle.access_token,
        "refresh_token": bundle.refresh_token,
        "token_type": bundle.token_type,
        "scope": bundle.scope,
        "expiry_date": int(bundle.expires_at.astimezone(timezone.utc).timestamp() * 1000),
    }
    if provider == "gmail":
        return (
            "gmailOAuth2",
            f"Gmail - {tenant_id}",
            {
                "serverUrl": "",
                "clientId": client_id,
                "clientSecret": client_secret,
                "sendAdditionalBodyProperties": False,
                "additionalBodyProperties": {},
                "oauthTokenData": token_data,
            },
        )
    if provider == "outlook":
        return (
            "microsoftOutlookOAuth2Api",
            f"Outlook - {tenant_id}",
            {
                "clientId": client_id,
                "clientSecret": client_secret,
                "userPrincipalName": "",
                "oauthTokenData": token_data,
            },
        )
    raise ValueError(f"Unsupported provider: {provider}")

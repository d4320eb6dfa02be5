"""HTTP client for the n8n public REST API."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from utils.exceptions import WorkflowEngineError

logger = logging.getLogger(__name__)

_ALLOWED_WORKFLOW_PROPS = ("name", "nodes", "connections", "settings")
_ALLOWED_NODE_PROPS = ("name", "type", "position", "parameters", "typeVersion", "credentials")
_ALLOWED_SETTINGS_PROPS = (
    "executionOrder",
    "saveDataErrorExecution",
    "saveDataSuccessExecution",
    "saveManualExecutions",
    "callerPolicy",
    "errorWorkflow",
)


def sanitize_workflow(workflow: Dict[str, Any]) -> Dict[str, Any]:
    """Strip everything the create-workflow endpoint rejects as read-only."""
    clean = {k: workflow[k] for k in _ALLOWED_WORKFLOW_PROPS if k in workflow}
    clean["nodes"] = [
        {k: node[k] for k in _ALLOWED_NODE_PROPS if k in node}
        for node in clean.get("nodes", [])
    ]
    clean["connections"] = clean.get("connections") or {}
    settings = clean.get("settings") or {}
    clean["settings"] = {k: settings[k] for k in _ALLOWED_SETTINGS_PROPS if k in settings}
    return clean


class N8nClient:
    """Calls n8n's ``/credentials``, ``/workflows`` and ``/projects`` endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                resp = await client.request(
                    method,
                    url,
                    json=json,
                    headers={"X-N8N-API-KEY": self.api_key, "Accept": "application/json"},
                )
                resp.raise_for_status()
                if not resp.content:
                    return {}
                try:
                    return resp.json()
                except ValueError as exc:
                    logger.warning("n8n %s %s → HTTP %s with non-JSON body", method, path, resp.status_code)
                    raise WorkflowEngineError(
                        "n8n returned non-JSON body", status_code=resp.status_code
                    ) from exc
        except httpx.HTTPStatusError as exc:
            message = _error_message(exc.response)
            logger.warning("n8n %s %s → HTTP %s: %s", method, path, exc.response.status_code, message)
            raise WorkflowEngineError(message, status_code=exc.response.status_code) from exc
        except httpx.HTTPError as exc:
            logger.warning("n8n %s %s unreachable: %s", method, path, type(exc).__name__)
            raise WorkflowEngineError(f"n8n unreachable: {type(exc).__name__}") from exc

    # ── credentials ─────────────────────────────────────────────────────

    async def create_credential(self, credential_type: str, name: str, data: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("Creating n8n credential %r (%s)", name, credential_type)
        result = _created(
            await self._request(
                "POST", "/credentials", json={"name": name, "type": credential_type, "data": data}
            ),
            "credential",
        )
        logger.info("n8n credential created: %s", result["id"])
        return result

    # ── workflows ───────────────────────────────────────────────────────

    async def create_workflow(self, workflow: Dict[str, Any]) -> Dict[str, Any]:
        clean = sanitize_workflow(workflow)
        logger.info("Creating n8n workflow %r (%d nodes)", clean.get("name"), len(clean["nodes"]))
        result = _created(await self._request("POST", "/workflows", json=clean), "workflow")
        logger.info("n8n workflow created: %s", result["id"])
        return result

    async def update_workflow(self, workflow_id: str, workflow: Dict[str, Any]) -> None:
        clean = sanitize_workflow(workflow)
        await self._request("PUT", f"/workflows/{workflow_id}", json=clean)
        logger.info("n8n workflow updated: %s", workflow_id)

    async def activate_workflow(self, workflow_id: str) -> Dict[str, Any]:
        result = await self._request("POST", f"/workflows/{workflow_id}/activate")
        logger.info("n8n workflow activated: %s", workflow_id)
        return result

    async def transfer_workflow(self, workflow_id: str, project_id: str) -> None:
        await self._request(
            "PUT", f"/workflows/{workflow_id}/transfer", json={"destinationProjectId": project_id}
        )

    # ── projects ────────────────────────────────────────────────────────

    async def list_projects(self) -> List[Dict[str, Any]]:
        result = await self._request("GET", "/projects")
        projects = result.get("data", []) if isinstance(result, dict) else result
        if not isinstance(projects, list):
            raise WorkflowEngineError("n8n returned a malformed project list")
        return [p for p in projects if isinstance(p, dict)]

    async def create_project(self, name: str) -> Dict[str, Any]:
        result = _created(await self._request("POST", "/projects", json={"name": name}), "project")
        logger.info("n8n project created: %s (%s)", result["id"], name)
        return result


def _created(result: Any, what: str) -> Dict[str, Any]:
    """Return the created resource, which must be an object carrying an id."""
    if not isinstance(result, dict) or result.get("id") is None:
        raise WorkflowEngineError(f"n8n returned no {what} id")
    return result


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)

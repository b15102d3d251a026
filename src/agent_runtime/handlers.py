# handlers.py
# Built-in capability handlers.
#
# Chain-facing handlers (balances, transfers, contract calls) are supplied by
# the caller. The ones here need nothing but the action itself, or plain
# HTTP for off-chain queries.

import re
from typing import Any

import httpx

from agent_runtime.errors import ActionExecutionError
from agent_runtime.executor import HandlerRegistry
from agent_runtime.models import Action, ActionType

_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _address_of(action: Action) -> str:
    return (action.target or action.params.get("address") or "").strip()


def validate_address(action: Action) -> dict[str, Any]:
    address = _address_of(action)
    if not address:
        raise ActionExecutionError("No address provided.", retryable=False)
    return {"address": address, "valid": bool(_ADDRESS.match(address))}


def no_action(action: Action) -> dict[str, Any]:
    return {"skipped": True, "reason": action.reason}


async def query_data(action: Action, client: httpx.AsyncClient | None = None) -> Any:
    """
    GET a JSON document from `params.url` (or `target`).

    4xx responses are permanent failures; network errors and 5xx are left
    retryable for the executor.
    """
    url = (action.params.get("url") or action.target or "").strip()
    if not url:
        raise ActionExecutionError("No URL provided.", retryable=False)

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=10)
    try:
        response = await client.get(url, params=action.params.get("query") or None)
    finally:
        if owns_client:
            await client.aclose()

    if 400 <= response.status_code < 500:
        raise ActionExecutionError(f"GET {url} → {response.status_code}", retryable=False)
    if response.status_code >= 500:
        raise ActionExecutionError(f"GET {url} → {response.status_code}")

    try:
        return response.json()
    except ValueError:
        return response.text


DEFAULT_HANDLERS: dict[ActionType, Any] = {
    ActionType.VALIDATE_ADDRESS: validate_address,
    ActionType.NO_ACTION:        no_action,
    ActionType.QUERY_DATA:       query_data,
}


def default_registry(**overrides: Any) -> HandlerRegistry:
    """Registry with the built-ins, plus caller handlers keyed by action type value."""
    registry = HandlerRegistry(DEFAULT_HANDLERS)
    for action_type, handler in overrides.items():
        registry.register(action_type, handler)
    return registry

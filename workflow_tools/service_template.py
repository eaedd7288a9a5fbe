"""Runtime support imported by generated service modules.

A generated module is a list of thin coroutines that forward to
`make_request`; connection details come from the environment:

    <SERVICE>_BASE_URL   defaults to https://api.<service>.com
    <SERVICE>_API_KEY    sent as a bearer token when set
"""

import asyncio
import logging
import os
from typing import Any, Dict, Optional

import requests

from workflow_tools.registry import to_snake_case

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30

_METHOD_PREFIXES = [
    (("get", "list", "fetch", "find", "search", "read"), "GET"),
    (("create", "add", "post", "send", "submit"), "POST"),
    (("update", "patch", "set"), "PATCH"),
    (("replace", "put"), "PUT"),
    (("delete", "remove"), "DELETE"),
]


def guess_http_method(function_name: str) -> str:
    """HTTP method implied by a function name's leading verb (POST when unknown)."""
    verb = to_snake_case(function_name).split("_", 1)[0]
    for prefixes, method in _METHOD_PREFIXES:
        if verb in prefixes:
            return method
    return "POST"


def resource_path(function_name: str) -> str:
    """`get_invoices` or `getInvoices` -> `/invoices`; names without a verb map to themselves."""
    function_name = to_snake_case(function_name)
    verb, _, rest = function_name.partition("_")
    known_verbs = {prefix for prefixes, _ in _METHOD_PREFIXES for prefix in prefixes}
    if rest and verb.lower() in known_verbs:
        return "/" + rest.replace("_", "/")
    return "/" + function_name.replace("_", "/")


def get_service_config(service_name: str) -> Dict[str, Any]:
    prefix = service_name.upper().replace("-", "_")
    return {
        "service": service_name,
        "base_url": os.environ.get(f"{prefix}_BASE_URL", f"https://api.{service_name}.com").rstrip("/"),
        "api_key": os.environ.get(f"{prefix}_API_KEY"),
        "timeout": float(os.environ.get(f"{prefix}_TIMEOUT", DEFAULT_TIMEOUT)),
    }


def build_headers(config: Dict[str, Any], context=None) -> Dict[str, str]:
    headers = {"Accept": "application/json", "Content-Type": "application/json"}
    if config.get("api_key"):
        headers["Authorization"] = f"Bearer {config['api_key']}"
    if context is not None and getattr(context, "execution_id", None):
        headers["X-Execution-Id"] = context.execution_id
    return headers


async def make_request(
    service_name: str,
    function_name: str,
    args: Any,
    context=None,
    method: Optional[str] = None,
) -> Dict[str, Any]:
    """Call the service endpoint for `function_name`.

    `args` may carry `path` (endpoint override) and `params`/`body`; any other
    mapping is sent as query parameters for GET/DELETE and as JSON otherwise.

    Raises:
        requests.RequestException: On transport errors or non-2xx responses
    """
    config = get_service_config(service_name)
    method = (method or guess_http_method(function_name)).upper()
    payload = dict(args) if isinstance(args, dict) else ({"value": args} if args is not None else {})
    path = payload.pop("path", None) or resource_path(function_name)
    params = payload.pop("params", None)
    body = payload.pop("body", None)

    if method in ("GET", "DELETE"):
        params = {**payload, **(params or {})}
    elif body is None:
        body = payload

    url = f"{config['base_url']}{path}"
    logger.info(f"{service_name}.{function_name}: {method} {url}")

    response = await asyncio.to_thread(
        requests.request,
        method,
        url,
        headers=build_headers(config, context),
        params=params or None,
        json=body,
        timeout=config["timeout"],
    )
    response.raise_for_status()

    try:
        data = response.json()
    except ValueError:
        data = response.text
    return {"status": response.status_code, "data": data, "service": service_name}

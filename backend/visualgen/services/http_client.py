from typing import Any, Dict, Optional

import httpx

# Per-attempt deadlines are enforced by the invoker; this only bounds sockets.
DEFAULT_TIMEOUT = httpx.Timeout(60.0, connect=10.0)


def create_client(**kwargs: Any) -> httpx.AsyncClient:
    kwargs.setdefault("timeout", DEFAULT_TIMEOUT)
    return httpx.AsyncClient(**kwargs)


def json_headers(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    headers = {
        "Accept": "application/json",
        "Content-Type": "application/json",
    }
    if extra:
        headers.update(extra)
    return headers


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
    json_body: Optional[Dict[str, Any]] = None,
    **kwargs: Any,
) -> Any:
    """Send one request and decode the JSON body.

    Error statuses raise ``httpx.HTTPStatusError`` so the invoker can decide
    whether they are worth retrying; an undecodable body raises ``ValueError``.
    """
    response = await client.request(
        method,
        url,
        headers=headers,
        params=params,
        json=json_body,
        **kwargs,
    )
    response.raise_for_status()
    if not response.content:
        return None
    return response.json()

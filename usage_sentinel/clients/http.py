"""
Shared HTTP plumbing for backend clients.

Every backend request carries an explicit timeout so a slow store cannot
stall a worker tick.
"""

from typing import Any, Dict

import httpx

from usage_sentinel.errors import BackendError


async def get_json(
    client: httpx.AsyncClient,
    url: str,
    params: Dict[str, str],
    timeout: float,
    backend: str,
    expr: str
) -> Any:
    """GET ``url`` and decode the JSON body.

    Raises:
        BackendError: On transport errors, timeouts, non-2xx statuses or
            undecodable bodies
    """
    try:
        response = await client.get(url, params=params, timeout=timeout)
    except httpx.TimeoutException as e:
        raise BackendError(f"{backend} query timed out after {timeout}s", backend, expr) from e
    except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError) as e:
        raise BackendError(f"{backend} request failed: {e}", backend, expr) from e

    if response.status_code >= 400:
        raise BackendError(f"{backend} query failed: {response.status_code}", backend, expr)

    try:
        return response.json()
    except ValueError as e:
        raise BackendError(f"{backend} returned invalid JSON", backend, expr) from e

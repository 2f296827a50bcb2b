"""Shared async HTTP helper for REST-backed adapters."""

import logging
from typing import Any, Dict, Optional

import httpx

from ..errors import UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


async def make_api_request(
    service: str,
    method: str,
    url: str,
    headers: Dict[str, str],
    json_data: Optional[Dict] = None,
    params: Optional[Dict] = None,
    timeout: float = DEFAULT_TIMEOUT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Any:
    """Generic async HTTP request with upstream failures raised as UpstreamError."""
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        try:
            response = await client.request(
                method=method,
                url=url,
                headers=headers,
                json=json_data,
                params=params,
            )
        except httpx.TimeoutException:
            raise UpstreamError(service, None, "Request timed out") from None
        except httpx.HTTPError as e:
            raise UpstreamError(service, None, str(e) or e.__class__.__name__) from None

    if response.is_error:
        logger.warning(f"{service} {method} {url} -> HTTP {response.status_code}")
        raise UpstreamError(service, response.status_code, response.text[:500])
    if response.status_code == 204 or not response.content:
        return {}
    return response.json()

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from src.onboarding.domain.errors import ProviderRejected, ProviderUnavailable

logger = logging.getLogger("providers")


def bearer_headers(api_key: Optional[str], *, json_body: bool = False) -> Dict[str, str]:
    headers = {"Accept": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    if json_body:
        headers["Content-Type"] = "application/json"
    return headers


def post(
    client: httpx.Client,
    provider: str,
    url: str,
    *,
    api_key: Optional[str],
    timeout: float,
    json: Optional[Dict[str, Any]] = None,
    data: Optional[Dict[str, Any]] = None,
    files: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """POST to a provider and return the decoded JSON body.

    Connection problems and timeouts become ProviderUnavailable; non-2xx
    answers and undecodable bodies become ProviderRejected.
    """

    try:
        response = client.post(
            url,
            headers=bearer_headers(api_key, json_body=json is not None),
            json=json,
            data=data,
            files=files,
            timeout=timeout,
        )
    except httpx.TimeoutException as exc:
        logger.error("%s request timed out after %ss: %s", provider, timeout, exc)
        raise ProviderUnavailable(f"{provider} did not respond within {timeout:g}s", provider) from exc
    except httpx.TransportError as exc:
        logger.error("%s connection error: %s", provider, exc)
        raise ProviderUnavailable(f"Could not connect to {provider}", provider) from exc
    except httpx.RequestError as exc:
        # Undecodable bodies, redirect loops.
        logger.error("%s request failed: %s", provider, exc)
        raise ProviderUnavailable(f"Request to {provider} failed", provider) from exc
    except httpx.HTTPError as exc:
        logger.error("%s HTTP error: %s", provider, exc)
        raise ProviderRejected(f"{provider} returned an unusable response", provider) from exc

    if not response.is_success:
        logger.error("%s API error: status=%s body=%s", provider, response.status_code, response.text[:500])
        raise ProviderRejected(f"{provider} API error: {response.status_code}", provider, response.status_code)

    try:
        body = response.json()
    except ValueError as exc:
        logger.error("%s returned a non-JSON response", provider)
        raise ProviderRejected(f"{provider} returned a malformed response", provider, response.status_code) from exc

    if not isinstance(body, dict):
        raise ProviderRejected(f"{provider} returned a malformed response", provider, response.status_code)
    return body

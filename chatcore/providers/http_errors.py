from typing import Any

import httpx

from chatcore.providers.base import ProviderError


def transport_error(exc: httpx.HTTPError) -> ProviderError:
    if isinstance(exc, httpx.TimeoutException):
        return ProviderError(
            status_code=503,
            code="provider_timeout",
            message=f"Provider request timed out: {exc}",
        )
    if isinstance(exc, httpx.ConnectError):
        return ProviderError(
            status_code=502,
            code="provider_connection_error",
            message=f"Cannot connect to provider: {exc}",
        )
    return ProviderError(
        status_code=502,
        code="provider_transport_error",
        message=f"Provider transport error: {exc}",
    )


def raise_for_status(resp: httpx.Response) -> None:
    if resp.status_code == 429:
        raise ProviderError(
            status_code=429,
            code="provider_rate_limited",
            message="Provider rate limit exceeded",
            error_type="rate_limit",
        )
    if resp.status_code in {502, 503}:
        raise ProviderError(
            status_code=resp.status_code,
            code="provider_upstream_error",
            message=f"Provider returned {resp.status_code}",
        )
    if resp.status_code >= 400:
        raise ProviderError(
            status_code=resp.status_code,
            code="provider_error",
            message=f"Provider returned {resp.status_code}",
        )


def json_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError as exc:
        raise ProviderError(
            status_code=502,
            code="provider_invalid_response",
            message=f"Provider returned a non-JSON body (HTTP {resp.status_code})",
        ) from exc

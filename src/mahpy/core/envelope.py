"""HTTP request helper that maps transport failures and the `code`/`msg`
envelope onto the mahpy error taxonomy."""

from __future__ import annotations

from typing import Any, Mapping, Optional

import httpx

from .exceptions import CODE_OK, ProtocolError, RemoteError, TransportError


def check_envelope(payload: Any) -> Any:
    """Raise `RemoteError` when the payload carries a non-zero `code`."""

    if not isinstance(payload, Mapping) or "code" not in payload:
        return payload
    code = payload.get("code")
    if isinstance(code, bool) or not isinstance(code, int):
        raise ProtocolError(f"envelope code must be an integer, got {code!r}")
    if code != CODE_OK:
        message = payload.get("msg")
        raise RemoteError(code, "" if message is None else str(message))
    return payload


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    path: str,
    *,
    json: Optional[Any] = None,
    params: Optional[Mapping[str, Any]] = None,
    headers: Optional[Mapping[str, str]] = None,
    data: Optional[Mapping[str, Any]] = None,
    files: Optional[Mapping[str, Any]] = None,
) -> Any:
    try:
        response = await client.request(
            method,
            path,
            json=json,
            params=params,
            headers=headers,
            data=data,
            files=files,
        )
    except httpx.HTTPError as exc:
        raise TransportError(
            f"network error for {method} {path}: {type(exc).__name__}: {exc}"
        ) from exc

    status_code = response.status_code
    if 500 <= status_code < 600:
        raise TransportError(
            f"server error for {method} {path}: status={status_code}",
            status_code=status_code,
        )

    try:
        payload = response.json()
    except ValueError as exc:
        body_preview = (response.text or "").strip().replace("\n", " ")[:200]
        if not 200 <= status_code < 300:
            raise ProtocolError(
                f"request failed for {method} {path}: "
                f"status={status_code} body={body_preview!r}"
            ) from exc
        raise ProtocolError(
            f"non-JSON response for {method} {path}: body={body_preview!r}"
        ) from exc

    # Error envelopes may arrive with a 4xx status; the envelope wins.
    check_envelope(payload)
    if not 200 <= status_code < 300:
        raise ProtocolError(
            f"request failed for {method} {path}: status={status_code}"
        )
    return payload

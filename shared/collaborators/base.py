"""
Error contract and HTTP helper shared by the external collaborator clients
(invoice generator, shipment gateway, notification sender).

  - network failure, timeout, 429 or 5xx  -> CollaboratorUnavailableError (retry)
  - any other 4xx or an unreadable body   -> CollaboratorRejectedError (do not retry)
"""

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class CollaboratorError(Exception):
    """Base class for collaborator failures."""


class CollaboratorUnavailableError(CollaboratorError):
    """Collaborator could not be reached or failed on its side. Transient, safe to retry."""


class CollaboratorRejectedError(CollaboratorError):
    """Collaborator refused the request; retrying the same call will not help."""


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)


async def send_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    collaborator: str,
    **kwargs: Any,
) -> httpx.Response:
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise CollaboratorUnavailableError(f"{collaborator} timed out") from exc
    except httpx.TransportError as exc:
        raise CollaboratorUnavailableError(f"{collaborator} unreachable: {exc}") from exc

    if response.status_code == 429 or response.status_code >= 500:
        raise CollaboratorUnavailableError(
            f"{collaborator} returned {response.status_code}: {_error_message(response)}"
        )
    if response.status_code >= 400:
        raise CollaboratorRejectedError(
            f"{collaborator} returned {response.status_code}: {_error_message(response)}"
        )
    return response


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    collaborator: str,
    allow_empty: bool = False,
    **kwargs: Any,
) -> dict:
    response = await send_request(client, method, url, collaborator=collaborator, **kwargs)

    if not response.content:
        if allow_empty:
            return {}
        raise CollaboratorRejectedError(f"{collaborator} returned an empty body")
    try:
        body = response.json()
    except ValueError as exc:
        raise CollaboratorRejectedError(f"{collaborator} returned malformed JSON") from exc
    if not isinstance(body, dict):
        raise CollaboratorRejectedError(f"{collaborator} returned unexpected payload")
    return body

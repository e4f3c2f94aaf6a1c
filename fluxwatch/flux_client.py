from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from fluxwatch.models import (
    Node,
    RemovalOutcome,
    RemovalSoftFail,
    RemovalSuccess,
    RemovalTransportFail,
    Workload,
)
from fluxwatch.session_log import SessionLog
from fluxwatch.state import Credential

LIST_RUNNING_APPS_PATH = "/apps/listrunningapps"
REMOVE_APP_PATH = "/apps/appremove"
AUTH_HEADER = "zelidauth"
AUTH_STATUS_CODES = {401, 403}
REQUEST_ERRORS = (httpx.HTTPError, httpx.InvalidURL)
BAD_CREDENTIAL_MESSAGE = "Token cannot be sent as a request header."
PROBE_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def split_json_segments(text: str) -> list[str]:
    """Split a body of back-to-back JSON objects into one string per object.

    Depth is tracked on ``{``/``}`` outside of string literals; anything between
    top-level objects is dropped. An unterminated trailing object is returned as
    is so the caller can report it.
    """
    segments: list[str] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and depth > 0:
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                segments.append(text[start : index + 1])
                start = -1
    if depth > 0 and start >= 0:
        segments.append(text[start:])
    return segments


def parse_concatenated_json(text: str) -> tuple[list[Any], list[str]]:
    objects: list[Any] = []
    errors: list[str] = []
    for segment in split_json_segments(text):
        try:
            objects.append(json.loads(segment))
        except json.JSONDecodeError as exc:
            errors.append(f"{exc.msg} at char {exc.pos}: {segment[:120]}")
    return objects, errors


def _is_auth_error_code(code: Any) -> bool:
    try:
        return int(code) in AUTH_STATUS_CODES
    except (TypeError, ValueError):
        return False


def classify_remove_payload(raw: str, objects: list[Any]) -> RemovalOutcome:
    terminal = next((item for item in reversed(objects) if isinstance(item, dict)), None)
    if terminal is None or terminal.get("status") != "error":
        steps = tuple(item for item in objects if isinstance(item, dict))
        return RemovalSuccess(raw=raw, steps=steps)

    error_data = terminal.get("data")
    if isinstance(error_data, dict):
        code = error_data.get("code")
        message = error_data.get("message") or json.dumps(error_data)
    else:
        code = None
        message = str(error_data) if error_data else "unknown_error"
    message = str(message)
    is_auth = _is_auth_error_code(code) or "unauthorized" in message.lower()
    return RemovalSoftFail(message=message, is_auth_error=is_auth)


def _credential_value(credential: Credential | None) -> str:
    """Return the token as a header value; raises ``UnicodeError`` if it cannot be one."""
    if isinstance(credential, bytes):
        credential = credential.decode("utf-8")
    token = (credential or "").strip()
    # httpx encodes header values as ASCII.
    token.encode("ascii")
    return token


class FluxApiClient:
    """Typed calls against one or more nodes' management API.

    One ``httpx.AsyncClient`` is shared by every node; each call takes the node's
    base API URL so per-node state stays with the caller.
    """

    def __init__(
        self,
        session_log: SessionLog,
        timeout: float = 10,
        logger: logging.Logger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._session = session_log
        self._timeout = timeout
        self._logger = logger or logging.getLogger("fluxwatch.flux_client")
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    def _auth_headers(self, credential: Credential | None) -> dict[str, str] | None:
        token = _credential_value(credential)
        if not token:
            return None
        return {AUTH_HEADER: token}

    def _format_error(self, exc: Exception) -> str:
        if isinstance(exc, httpx.TimeoutException):
            return "Request timeout"
        if isinstance(exc, (httpx.RequestError, httpx.InvalidURL)):
            return f"{exc.__class__.__name__}: {exc}"
        return str(exc)

    async def probe_exists(self, api_url: str) -> bool:
        url = f"{api_url.rstrip('/')}{LIST_RUNNING_APPS_PATH}"
        try:
            await self._client.get(url, headers={"User-Agent": PROBE_USER_AGENT})
        except REQUEST_ERRORS as exc:
            self._session.record_debug("DISCOVERY-Check", f"Node check failed for {api_url}: {self._format_error(exc)}")
            return False
        return True

    async def list_running_apps(self, node: Node, credential: Credential | None = None) -> list[Workload] | None:
        """Return the node's running workloads, or ``None`` when the listing failed.

        Failures are recorded on the session log under ``API-<node>-Error``.
        """
        prefix = f"API-{node.id}"
        try:
            headers = self._auth_headers(credential)
        except UnicodeError:
            self._session.record(f"{prefix}-Error", f"Error listing running apps: {BAD_CREDENTIAL_MESSAGE}")
            return None

        try:
            response = await self._client.get(
                f"{node.api_url}{LIST_RUNNING_APPS_PATH}",
                headers=headers,
            )
        except REQUEST_ERRORS as exc:
            self._logger.warning("list_running_apps_failed", extra={"node_id": node.id, "error": str(exc)})
            self._session.record(f"{prefix}-Error", "Error listing running apps:", self._format_error(exc))
            return None

        if not response.is_success:
            self._session.record(f"{prefix}-Error", f"Error listing running apps: HTTP status {response.status_code}")
            return None

        try:
            payload = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            self._session.record(f"{prefix}-Error", "Error listing running apps:", f"invalid JSON ({exc})")
            return None

        self._session.record_debug(prefix, "Running Apps:", payload)

        if isinstance(payload, dict) and payload.get("status") == "success" and isinstance(payload.get("data"), list):
            workloads = [Workload.from_payload(item) for item in payload["data"]]
            return [item for item in workloads if item is not None]

        self._session.record(
            f"{prefix}-Error", "API call to list apps did not return a success status or valid data."
        )
        return None

    async def remove_app(self, node: Node, credential: Credential | None, app_name: str) -> RemovalOutcome:
        prefix = f"API-{node.id}"
        try:
            headers = self._auth_headers(credential)
        except UnicodeError:
            self._session.record(f"{prefix}-Error", f"Error: {BAD_CREDENTIAL_MESSAGE}")
            return RemovalSoftFail(message=BAD_CREDENTIAL_MESSAGE, is_auth_error=True)
        if headers is None:
            message = "Not logged in. Token is missing."
            self._session.record(prefix, f"Error: {message}")
            return RemovalSoftFail(message=message, is_auth_error=True)

        try:
            response = await self._client.get(
                f"{node.api_url}{REMOVE_APP_PATH}",
                params={"appname": app_name},
                headers=headers,
            )
        except REQUEST_ERRORS as exc:
            message = self._format_error(exc)
            self._logger.warning("remove_app_failed", extra={"node_id": node.id, "app": app_name, "error": message})
            self._session.record(f"{prefix}-Error", f"Error stopping application {app_name}:", message)
            return RemovalTransportFail(message=message)

        if not response.is_success:
            message = f"HTTP error! Status: {response.status_code}"
            self._session.record(f"{prefix}-Error", message)
            return RemovalSoftFail(message=message, is_auth_error=response.status_code in AUTH_STATUS_CODES)

        raw = response.text
        self._session.record_debug(prefix, f"Removal request for {app_name} answered. Server response: {raw}")

        objects, errors = parse_concatenated_json(raw)
        for error in errors:
            self._session.record_debug(prefix, f"Skipped unparseable response segment: {error}")

        outcome = classify_remove_payload(raw, objects)
        if isinstance(outcome, RemovalSoftFail) and outcome.is_auth_error:
            self._session.record(
                f"{prefix}-Error", "Soft-fail: API returned 200 OK but body contains Unauthorized error."
            )
        return outcome

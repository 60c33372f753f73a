"""
client/device.py -- Device-login client for the infst CLI side of the flow.

The unattended half of device authorization, spoken over HTTP with requests:

    grant = request_device_code(endpoint)          # POST /auth/device/code
    # show grant["verification_url"] and grant["user_code"] to the human
    token = poll_for_token(endpoint, grant["device_code"], grant["interval"], grant["expires_in"])
    save_credentials(Credentials(endpoint, token))

Polling honors the server's interval, treats 428 as "keep waiting", backs
off on 429, and stops on expired_token / invalid_device_code or once
expires_in has passed. Transient network errors are logged and retried on
the next tick.

Credentials are a small JSON file {"endpoint", "token"} created with mode
0600 under ~/.config/infst/.
"""

import json
import logging
import os
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

import requests

logger = logging.getLogger("infst.client")

DEFAULT_CREDENTIALS_PATH = Path.home() / ".config" / "infst" / "credentials.json"

_TIMEOUT = 10
# Added to the poll interval each time the server answers 429.
_SLOW_DOWN_SECONDS = 5

# Module-level session shared across calls for connection pooling.
_session = requests.Session()
_session.max_redirects = 3


class DeviceLoginError(Exception):
    """The device login could not complete. The message is fit for the terminal."""


@dataclass(frozen=True)
class Credentials:
    endpoint: str
    token: str


def _url(endpoint: str, path: str) -> str:
    return f"{endpoint.rstrip('/')}{path}"


def _json(resp: requests.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError as exc:
        raise DeviceLoginError(f"Unexpected non-JSON response (HTTP {resp.status_code})") from exc
    if not isinstance(data, dict):
        raise DeviceLoginError(f"Unexpected response body (HTTP {resp.status_code})")
    return data


# ---------------------------------------------------------------------------
# Device flow
# ---------------------------------------------------------------------------


def request_device_code(endpoint: str, session: Optional[requests.Session] = None) -> dict[str, Any]:
    """Ask the server for a device code. Returns the decoded grant."""
    session = session or _session
    try:
        resp = session.post(_url(endpoint, "/auth/device/code"), timeout=_TIMEOUT)
    except requests.RequestException as exc:
        raise DeviceLoginError(f"Could not reach {endpoint}: {exc}") from exc
    if resp.status_code == 429:
        raise DeviceLoginError("Too many login attempts. Wait a minute and try again.")
    if resp.status_code != 200:
        raise DeviceLoginError(f"Device code request failed (HTTP {resp.status_code})")
    grant = _json(resp)
    missing = {"device_code", "user_code", "verification_url", "expires_in", "interval"} - grant.keys()
    if missing:
        raise DeviceLoginError(f"Device code response is missing {', '.join(sorted(missing))}")
    return grant


def poll_for_token(
    endpoint: str,
    device_code: str,
    interval: int,
    expires_in: int,
    session: Optional[requests.Session] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> str:
    """Poll /auth/device/token until the code is approved, refused or out of time."""
    session = session or _session
    url = _url(endpoint, "/auth/device/token")
    interval = max(1, int(interval))
    deadline = clock() + expires_in

    while clock() < deadline:
        sleep(interval)
        try:
            resp = session.post(url, json={"device_code": device_code}, timeout=_TIMEOUT)
        except requests.RequestException as exc:
            logger.warning("Token poll failed, retrying: %s", exc)
            continue

        if resp.status_code == 428:
            continue
        if resp.status_code == 429:
            interval += _SLOW_DOWN_SECONDS
            continue

        body = _json(resp)
        if resp.status_code == 200 and body.get("status") == "approved":
            token = body.get("token")
            if not token:
                raise DeviceLoginError("Server approved the device but sent no token")
            return token
        error = body.get("error", f"http_{resp.status_code}")
        if error == "expired_token":
            raise DeviceLoginError("The code expired before it was confirmed. Run login again.")
        if error == "invalid_device_code":
            raise DeviceLoginError("The server no longer recognizes this device code. Run login again.")
        raise DeviceLoginError(f"Unexpected poll response: {error}")

    raise DeviceLoginError("Authorization timed out. Please try again.")


def login(
    endpoint: str,
    on_code: Callable[[dict[str, Any]], None],
    session: Optional[requests.Session] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Credentials:
    """Run the whole flow. `on_code` receives the grant so the caller can show it."""
    endpoint = endpoint.rstrip("/")
    grant = request_device_code(endpoint, session=session)
    on_code(grant)
    token = poll_for_token(
        endpoint,
        grant["device_code"],
        grant["interval"],
        grant["expires_in"],
        session=session,
        sleep=sleep,
        clock=clock,
    )
    return Credentials(endpoint=endpoint, token=token)


def fetch_me(credentials: Credentials, session: Optional[requests.Session] = None) -> dict[str, Any]:
    """GET /api/users/me with the saved bearer token."""
    session = session or _session
    try:
        resp = session.get(
            _url(credentials.endpoint, "/api/users/me"),
            headers={"Authorization": f"Bearer {credentials.token}"},
            timeout=_TIMEOUT,
        )
    except requests.RequestException as exc:
        raise DeviceLoginError(f"Could not reach {credentials.endpoint}: {exc}") from exc
    body = _json(resp)
    if resp.status_code == 401:
        raise DeviceLoginError(f"Token rejected ({body.get('error', 'unauthorized')}). Run login again.")
    if resp.status_code != 200:
        raise DeviceLoginError(f"Request failed (HTTP {resp.status_code})")
    return body


# ---------------------------------------------------------------------------
# Credentials file
# ---------------------------------------------------------------------------


def save_credentials(credentials: Credentials, path: Optional[Path] = None) -> Path:
    """Write the credentials file, readable by the owner only."""
    path = path or DEFAULT_CREDENTIALS_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(asdict(credentials), f, indent=2)
    # O_CREAT's mode does not apply to a file that already existed.
    os.chmod(path, 0o600)
    return path


def load_credentials(path: Optional[Path] = None) -> Optional[Credentials]:
    """Read saved credentials. None when the file does not exist."""
    path = path or DEFAULT_CREDENTIALS_PATH
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except ValueError as exc:
        raise DeviceLoginError(f"Credentials file {path} is corrupt. Run login again.") from exc
    if not isinstance(data, dict) or not data.get("endpoint") or not data.get("token"):
        raise DeviceLoginError(f"Credentials file {path} is incomplete. Run login again.")
    return Credentials(endpoint=data["endpoint"], token=data["token"])

"""Remote operations against the UpCloud API used by the build steps."""

import logging
import time
from dataclasses import dataclass
from typing import Protocol

import requests

from _common import UPCLOUD_API, CloneNotReady, DriverError, StorageStateTimeout

log = logging.getLogger("upcloud-image.driver")

STORAGE_STATE_ONLINE = "online"
SERVER_STATE_STOPPED = "stopped"
POLL_INTERVAL = 5  # seconds


@dataclass
class StorageVolume:
    uuid: str
    title: str
    zone: str = ""


@dataclass
class Template:
    uuid: str
    title: str
    zone: str = ""


class Driver(Protocol):
    """What the build steps need from the cloud.

    Every method either returns its result or raises DriverError.
    """

    def stop_server(self, server_uuid: str) -> None: ...

    def get_server_storage(self, server_uuid: str) -> StorageVolume: ...

    def clone_storage(self, storage_uuid: str, zone: str, title: str) -> StorageVolume: ...

    def create_template(self, storage_uuid: str, title: str) -> Template: ...

    def delete_template(self, storage_uuid: str) -> None: ...


class UpCloudDriver:
    """Driver backed by the UpCloud JSON API.

    Calls block until the affected storage (or server) settles, for at most
    ``timeout`` seconds.
    """

    def __init__(self, username: str, password: str, timeout: int = 300,
                 base_url: str = UPCLOUD_API, session: requests.Session | None = None):
        self.timeout = timeout
        self.base_url = base_url
        self.session = session or requests.Session()
        self.session.auth = (username, password)
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
        })

    # -- HTTP ----------------------------------------------------------------
    def _request(self, method: str, path: str, **kwargs) -> dict:
        log.debug("%s %s", method, path)
        try:
            resp = self.session.request(method, f"{self.base_url}{path}", timeout=30, **kwargs)
        except requests.RequestException as e:
            raise DriverError(f"UpCloud API request failed: {method} {path}: {e}") from e

        # DELETE and some actions answer 204 with no body.
        if resp.status_code == 204:
            return {}
        try:
            data = resp.json()
        except (ValueError, requests.exceptions.JSONDecodeError):
            raise DriverError(
                f"UpCloud returned non-JSON response (HTTP {resp.status_code}) for {method} {path}"
            )
        if resp.status_code >= 400:
            err = data.get("error", {}) if isinstance(data, dict) else {}
            raise DriverError(
                f"UpCloud API error ({resp.status_code}) "
                f"{err.get('error_code', 'UNKNOWN')}: {err.get('error_message', resp.text)}"
            )
        return data

    def _get_storage(self, storage_uuid: str) -> dict:
        return self._request("GET", f"/storage/{storage_uuid}")["storage"]

    def _get_server(self, server_uuid: str) -> dict:
        return self._request("GET", f"/server/{server_uuid}")["server"]

    # -- Polling -------------------------------------------------------------
    def wait_for_storage_state(self, storage_uuid: str, state: str) -> dict:
        """Poll until the storage reports ``state``."""
        deadline = time.time() + self.timeout
        while True:
            storage = self._get_storage(storage_uuid)
            if storage.get("state") == state:
                return storage
            remaining = deadline - time.time()
            if remaining <= 0:
                raise StorageStateTimeout(
                    f"storage {storage_uuid!r} did not reach state {state!r} "
                    f"within {self.timeout}s (last state {storage.get('state')!r})"
                )
            log.debug("storage %s is %s, waiting for %s", storage_uuid, storage.get("state"), state)
            time.sleep(min(POLL_INTERVAL, remaining))

    def wait_for_server_state(self, server_uuid: str, state: str) -> dict:
        """Poll until the server reports ``state``."""
        deadline = time.time() + self.timeout
        while True:
            server = self._get_server(server_uuid)
            if server.get("state") == state:
                return server
            remaining = deadline - time.time()
            if remaining <= 0:
                raise StorageStateTimeout(
                    f"server {server_uuid!r} did not reach state {state!r} within {self.timeout}s"
                )
            time.sleep(min(POLL_INTERVAL, remaining))

    # -- Operations ----------------------------------------------------------
    def stop_server(self, server_uuid: str) -> None:
        server = self._get_server(server_uuid)
        if server.get("state") == SERVER_STATE_STOPPED:
            return
        try:
            self._request("POST", f"/server/{server_uuid}/stop", json={
                "stop_server": {"stop_type": "soft", "timeout": "60"},
            })
            self.wait_for_server_state(server_uuid, SERVER_STATE_STOPPED)
        except DriverError as e:
            raise DriverError(f"Error stopping server {server_uuid!r}: {e}") from e

    def get_server_storage(self, server_uuid: str) -> StorageVolume:
        try:
            server = self._get_server(server_uuid)
        except DriverError as e:
            raise DriverError(f"Error retrieving server {server_uuid!r}: {e}") from e

        devices = server.get("storage_devices", {}).get("storage_device", [])
        for device in devices:
            if device.get("type") == "disk":
                return StorageVolume(
                    uuid=device["storage"],
                    title=device.get("storage_title", ""),
                    zone=server.get("zone", ""),
                )
        raise DriverError(f"Storage under server {server_uuid!r} not found")

    def clone_storage(self, storage_uuid: str, zone: str, title: str) -> StorageVolume:
        try:
            self.wait_for_storage_state(storage_uuid, STORAGE_STATE_ONLINE)
            data = self._request("POST", f"/storage/{storage_uuid}/clone", json={
                "storage": {"zone": zone, "title": title},
            })
        except DriverError as e:
            raise DriverError(f"Error cloning storage {storage_uuid!r} to zone {zone!r}: {e}") from e

        # From here on the clone exists remotely, so failures must name it.
        clone = data["storage"]
        try:
            self.wait_for_storage_state(clone["uuid"], STORAGE_STATE_ONLINE)
        except DriverError as e:
            raise CloneNotReady(
                f"Error cloning storage {storage_uuid!r} to zone {zone!r}: {e}", clone["uuid"],
            ) from e
        log.info("cloned storage %s to %s in %s", storage_uuid, clone["uuid"], zone)
        return StorageVolume(uuid=clone["uuid"], title=clone.get("title", title), zone=clone.get("zone", zone))

    def create_template(self, storage_uuid: str, title: str) -> Template:
        try:
            self.wait_for_storage_state(storage_uuid, STORAGE_STATE_ONLINE)
            data = self._request("POST", f"/storage/{storage_uuid}/templatize", json={
                "storage": {"title": title},
            })
            template = data["storage"]
            self.wait_for_storage_state(template["uuid"], STORAGE_STATE_ONLINE)
        except DriverError as e:
            raise DriverError(f"Error creating template from storage {storage_uuid!r}: {e}") from e
        log.info("created template %s (%s) from storage %s", template["uuid"], title, storage_uuid)
        return Template(uuid=template["uuid"], title=template.get("title", title), zone=template.get("zone", ""))

    def delete_template(self, storage_uuid: str) -> None:
        try:
            self._request("DELETE", f"/storage/{storage_uuid}")
        except DriverError as e:
            raise DriverError(f"Error deleting storage {storage_uuid!r}: {e}") from e
        log.info("deleted storage %s", storage_uuid)

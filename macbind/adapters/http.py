# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
HTTP control plane client.

Talks to the REST endpoint published on the firewall:

    GET    /zones                          -> {"zones": [{"zone", "zoneid"}]}
    GET    /zones/{zone}/passthrumac       -> {"entries": [...]}
    POST   /zones/{zone}/passthrumac       body: entry
    DELETE /zones/{zone}/passthrumac/{mac}
    POST   /zones/{zone}/disconnect        body: {"mac"}  (404/501: unsupported)
    POST   /zones/{zone}/flush             body: {"mac"}
    POST   /zones/{zone}/reload
    GET    /backup/passthrumac             -> snapshot
"""

from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from macbind.adapters.base import ControlPlane, PassthruEntry
from macbind.core.exceptions import (
    CapabilityUnavailableError,
    ControlPlaneError,
    ControlPlaneUnavailableError,
)

UNSUPPORTED_STATUSES = (404, 501)


class HttpControlPlane(ControlPlane):
    """ControlPlane backed by the firewall's REST endpoint"""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
        verify_tls: bool = True,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        super().__init__("http")
        headers = {"Accept": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key

        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout_seconds,
            verify=verify_tls,
            transport=transport,
        )

    @classmethod
    def from_config(cls, settings) -> "HttpControlPlane":
        """Build from a ControlPlaneConfig"""
        return cls(
            base_url=settings.base_url,
            api_key=settings.api_key,
            timeout_seconds=settings.timeout_seconds,
            verify_tls=settings.verify_tls,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "HttpControlPlane":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # =========================================================================
    # ControlPlane
    # =========================================================================

    def list_zones(self) -> List[str]:
        data = self._request("GET", "/zones", operation="list_zones")
        zones = data.get("zones", []) if isinstance(data, dict) else []
        return [str(z["zone"]).lower() for z in zones if isinstance(z, dict) and z.get("zone")]

    def list_entries(self, zone: str) -> List[PassthruEntry]:
        data = self._request(
            "GET", f"/zones/{quote(zone)}/passthrumac", zone=zone, operation="list_entries"
        )
        entries = data.get("entries", []) if isinstance(data, dict) else []
        return [PassthruEntry.from_dict(e) for e in entries if isinstance(e, dict)]

    def add_entry(self, zone: str, entry: PassthruEntry) -> None:
        self._request(
            "POST",
            f"/zones/{quote(zone)}/passthrumac",
            zone=zone,
            operation="add_entry",
            json=entry.to_dict(),
        )

    def remove_entry(self, zone: str, entry: PassthruEntry) -> None:
        self._request(
            "DELETE",
            f"/zones/{quote(zone)}/passthrumac/{quote(entry.mac, safe=':')}",
            zone=zone,
            operation="remove_entry",
        )

    def disconnect(self, zone: str, entry: PassthruEntry) -> None:
        try:
            self._request(
                "POST",
                f"/zones/{quote(zone)}/disconnect",
                zone=zone,
                operation="disconnect",
                json={"mac": entry.mac},
            )
        except ControlPlaneUnavailableError:
            raise
        except ControlPlaneError as e:
            if e.status_code in UNSUPPORTED_STATUSES:
                raise CapabilityUnavailableError(
                    "Session disconnect not supported by control plane",
                    zone=zone,
                    operation="disconnect",
                    status_code=e.status_code,
                    cause=e,
                )
            raise

    def flush(self, zone: str, entry: PassthruEntry) -> None:
        self._request(
            "POST",
            f"/zones/{quote(zone)}/flush",
            zone=zone,
            operation="flush",
            json={"mac": entry.mac},
        )

    def reload(self, zone: str) -> None:
        self._request("POST", f"/zones/{quote(zone)}/reload", zone=zone, operation="reload")

    def backup_snapshot(self) -> Dict[str, Any]:
        data = self._request("GET", "/backup/passthrumac", operation="backup_snapshot")
        return data if isinstance(data, dict) else {"raw": data}

    # =========================================================================
    # Internals
    # =========================================================================

    def _request(
        self,
        method: str,
        path: str,
        operation: str,
        zone: Optional[str] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        self.log_call(operation, zone, f"{method} {path}")
        try:
            response = self.client.request(method, path, json=json)
        except httpx.TransportError as e:
            raise ControlPlaneUnavailableError(
                f"Control plane unreachable at {self.base_url}: {e}",
                zone=zone,
                operation=operation,
                cause=e,
            )

        if response.is_error:
            raise ControlPlaneError(
                f"{operation} failed with HTTP {response.status_code}",
                zone=zone,
                operation=operation,
                status_code=response.status_code,
                details={"body": response.text[:200]},
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

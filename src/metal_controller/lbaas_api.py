"""REST client for the provider's managed load balancer service.

The service does not accept the project API key directly: the key is
exchanged for a short-lived bearer token, which is cached until shortly
before it expires.
"""

from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Any, Dict, List, Optional

import requests

from metal_bgp.errors import APIError

from .metal_api import USER_AGENT, error_message

LOG = logging.getLogger(__name__)

DEFAULT_LBAAS_URL = "https://lb.metalctrl.io/v1/"
TOKEN_EXCHANGE_URL = "https://iam.metalctrl.io/api-keys/exchange"

# refresh a token this many seconds before it expires
TOKEN_EXPIRY_MARGIN = 30


class LBaaSClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_LBAAS_URL,
        token_url: str = TOKEN_EXCHANGE_URL,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url if base_url.endswith("/") else base_url + "/"
        self._token_url = token_url
        self._timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json", "User-Agent": USER_AGENT})
        self._token = ""
        self._expires_at = 0.0
        self._token_lock = Lock()

    def _bearer(self) -> str:
        with self._token_lock:
            if self._token and time.monotonic() < self._expires_at:
                return self._token
            try:
                r = self.session.post(
                    self._token_url,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    timeout=self._timeout,
                )
            except requests.RequestException as exc:
                raise APIError(f"token exchange failed: {exc}") from exc
            if r.status_code != 200:
                raise APIError(
                    f"token exchange failed: {r.status_code} {error_message(r)}", r.status_code
                )
            body = r.json()
            self._token = body["access_token"]
            expires_in = int(body.get("expires_in") or 0)
            self._expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
            return self._token

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = self._base_url + path
        LOG.debug("%s %s", method, url)
        headers = {"Authorization": f"Bearer {self._bearer()}"}
        try:
            r = self.session.request(method, url, headers=headers, timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            raise APIError(f"{method} {path} failed: {exc}") from exc
        if not r.ok:
            raise APIError(f"{method} {path}: {r.status_code} {error_message(r)}", r.status_code)
        if r.status_code == 204 or not r.content:
            return None
        return r.json()

    # load balancers
    def list_load_balancers(self, project_id: str) -> List[Dict[str, Any]]:
        data = self._request("GET", f"projects/{project_id}/loadbalancers") or {}
        return list(data.get("loadbalancers") or [])

    def get_load_balancer(self, lb_id: str) -> Dict[str, Any]:
        return self._request("GET", f"loadbalancers/{lb_id}")

    def create_load_balancer(
        self, project_id: str, name: str, location_id: str, provider_id: str
    ) -> str:
        data = self._request(
            "POST",
            f"projects/{project_id}/loadbalancers",
            json={"name": name, "location_id": location_id, "provider_id": provider_id},
        )
        return data["id"]

    def delete_load_balancer(self, lb_id: str) -> None:
        self._request("DELETE", f"loadbalancers/{lb_id}")

    # pools and origins
    def create_pool(self, project_id: str, name: str) -> str:
        data = self._request(
            "POST",
            f"projects/{project_id}/loadbalancers/pools",
            json={"name": name, "protocol": "tcp"},
        )
        return data["id"]

    def delete_pool(self, pool_id: str) -> None:
        self._request("DELETE", f"loadbalancers/pools/{pool_id}")

    def list_pool_origins(self, pool_id: str) -> List[Dict[str, Any]]:
        data = self._request("GET", f"loadbalancers/pools/{pool_id}/origins") or {}
        return list(data.get("origins") or [])

    def create_pool_origin(self, pool_id: str, name: str, target: str, port: int) -> str:
        data = self._request(
            "POST",
            f"loadbalancers/pools/{pool_id}/origins",
            json={
                "name": name,
                "target": target,
                "port_number": port,
                "active": True,
                "pool_id": pool_id,
            },
        )
        return data["id"]

    def delete_origin(self, origin_id: str) -> None:
        self._request("DELETE", f"loadbalancers/origins/{origin_id}")

    # ports
    def create_port(self, lb_id: str, name: str, number: int, pool_ids: List[str]) -> str:
        data = self._request(
            "POST",
            f"loadbalancers/{lb_id}/ports",
            json={"name": name, "number": number, "pool_ids": list(pool_ids)},
        )
        return data["id"]

    def delete_port(self, port_id: str) -> None:
        self._request("DELETE", f"loadbalancers/ports/{port_id}")

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any

import httpx

from fhir_adapter.core.config import get_settings
from fhir_adapter.core.errors import RegistryError
from fhir_adapter.services.bundles import failed_entries

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"


class RegistryClient:
    """FHIR client for the OpenHIM channel in front of the client registry."""

    def __init__(
        self,
        base_url: str,
        *,
        username: str,
        password: str,
        client_id: str,
        channel_path: str = "/fhir",
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.channel_path = "/" + channel_path.strip("/") if channel_path.strip("/") else ""
        self.timeout_seconds = timeout_seconds
        self.auth = httpx.BasicAuth(username, password)
        self.headers = {
            "Content-Type": FHIR_JSON,
            "Accept": FHIR_JSON,
            "X-OpenHIM-ClientID": client_id,
        }
        self._client = client

    async def search_patients(self, params: dict[str, str]) -> dict[str, Any]:
        response = await self._request("GET", f"{self.channel_path}/Patient", params=params)
        return response.json()

    async def query_patient(self, system: str, value: str) -> dict[str, Any] | None:
        bundle = await self.search_patients({"identifier": f"{system}|{value}"})
        for entry in bundle.get("entry") or []:
            resource = entry.get("resource") if isinstance(entry, dict) else None
            if isinstance(resource, dict):
                return resource
        return None

    async def send_bundle(self, bundle: dict[str, Any]) -> dict[str, Any]:
        response = await self._request(
            "POST",
            self.channel_path or "/",
            json=bundle,
            headers={"X-Forwarded-For": "fhir-cdc-adapter"},
        )
        payload = response.json()
        if payload.get("type") == "transaction-response":
            if not payload.get("entry"):
                raise RegistryError("empty transaction response", response.status_code)
            failed = failed_entries(payload)
            if failed:
                logger.error("registry rejected %s bundle entries", len(failed))
        return payload

    async def test_connection(self) -> bool:
        try:
            response = await self._send("GET", "/heartbeat")
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._send(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise RegistryError(f"no response from registry: {exc}", 503) from exc

        if response.is_success:
            return response
        if _is_successful_transaction(response):
            logger.info("transaction succeeded despite HTTP %s", response.status_code)
            return response

        raise RegistryError(
            f"registry request failed: {method} {path} -> {response.status_code}",
            response.status_code,
            {"status": response.status_code, "body": response.text[:500]},
        )

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {**self.headers, **kwargs.pop("headers", {})}
        url = f"{self.base_url}{path}"
        if self._client is not None:
            return await self._client.request(method, url, headers=headers, auth=self.auth, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.request(method, url, headers=headers, auth=self.auth, **kwargs)


def _is_successful_transaction(response: httpx.Response) -> bool:
    try:
        payload = response.json()
    except ValueError:
        return False
    if not isinstance(payload, dict) or payload.get("type") != "transaction-response":
        return False
    return bool(payload.get("entry")) and not failed_entries(payload)


@lru_cache
def get_registry_client() -> RegistryClient:
    settings = get_settings()
    return RegistryClient(
        settings.openhim_base_url,
        username=settings.openhim_username,
        password=settings.openhim_password,
        client_id=settings.registry_client_id,
        channel_path=settings.openhim_channel_path,
        timeout_seconds=settings.openhim_timeout_seconds,
    )

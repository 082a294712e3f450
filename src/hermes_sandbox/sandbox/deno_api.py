"""Thin async client for the Deno Deploy sandbox API."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .errors import CloudApiError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.deno.com/v1"


class _ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class DenoSandbox(_ApiModel):
    id: str
    region: str = ""
    status: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    created_at: str = Field(default="", alias="createdAt")


class DenoVolume(_ApiModel):
    id: str
    slug: str
    region: str = ""
    capacity: str = ""
    created_at: str = Field(default="", alias="createdAt")


class DenoSnapshot(_ApiModel):
    id: str
    slug: str
    region: str = ""
    created_at: str = Field(default="", alias="createdAt")


class ExecResult(_ApiModel):
    exit_code: int = Field(default=0, alias="exitCode")
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class SshEndpoint(_ApiModel):
    hostname: str
    username: str


class DenoApiClient:
    """Bearer-token client for sandboxes, volumes and snapshots."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str = DEFAULT_API_URL,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 60.0,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            transport=transport,
            timeout=timeout,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Mapping[str, str] | None = None,
    ) -> Any:
        logger.debug("Deno API request", extra={"method": method, "path": path})
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as exc:
            raise CloudApiError(
                f"Network error connecting to Deno Deploy API: {exc}", status_code=0
            ) from exc
        if response.is_error:
            raise CloudApiError(
                f"Deno API error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # Sandboxes

    async def create_sandbox(
        self,
        *,
        region: str,
        root: str | None = None,
        timeout: str | None = None,
        memory: str | None = None,
        volumes: Mapping[str, str] | None = None,
        labels: Mapping[str, str] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> DenoSandbox:
        body: dict[str, Any] = {"region": region}
        optional = {
            "root": root,
            "timeout": timeout,
            "memory": memory,
            "volumes": dict(volumes) if volumes else None,
            "labels": dict(labels) if labels else None,
            "env": dict(env) if env else None,
        }
        body.update({key: value for key, value in optional.items() if value is not None})
        return DenoSandbox.model_validate(await self._request("POST", "/sandboxes", json=body))

    async def list_sandboxes(self, labels: Mapping[str, str] | None = None) -> list[DenoSandbox]:
        params = {f"label.{key}": value for key, value in (labels or {}).items()}
        payload = await self._request("GET", "/sandboxes", params=params or None)
        return [DenoSandbox.model_validate(item) for item in payload or []]

    async def kill_sandbox(self, sandbox_id: str) -> None:
        await self._request("DELETE", f"/sandboxes/{sandbox_id}")

    async def exec(
        self,
        sandbox_id: str,
        command: list[str],
        *,
        user: str | None = None,
        work_dir: str | None = None,
    ) -> ExecResult:
        body: dict[str, Any] = {"command": command}
        if user:
            body["user"] = user
        if work_dir:
            body["workDir"] = work_dir
        return ExecResult.model_validate(
            await self._request("POST", f"/sandboxes/{sandbox_id}/exec", json=body)
        )

    async def write_file(
        self,
        sandbox_id: str,
        path: str,
        content: str,
        *,
        mode: int | None = None,
        user: str | None = None,
    ) -> None:
        body: dict[str, Any] = {"path": path, "content": content}
        if mode is not None:
            body["mode"] = mode
        if user:
            body["user"] = user
        await self._request("POST", f"/sandboxes/{sandbox_id}/fs/write", json=body)

    async def read_file(self, sandbox_id: str, path: str) -> str:
        payload = await self._request("POST", f"/sandboxes/{sandbox_id}/fs/read", json={"path": path})
        return (payload or {}).get("content", "")

    async def expose_ssh(self, sandbox_id: str) -> SshEndpoint:
        return SshEndpoint.model_validate(
            await self._request("POST", f"/sandboxes/{sandbox_id}/ssh/expose")
        )

    # Volumes

    async def create_volume(
        self,
        *,
        slug: str,
        region: str,
        capacity: str | None = None,
        source: str | None = None,
    ) -> DenoVolume:
        body: dict[str, Any] = {"slug": slug, "region": region}
        if capacity:
            body["capacity"] = capacity
        if source:
            body["from"] = source
        return DenoVolume.model_validate(await self._request("POST", "/volumes", json=body))

    async def delete_volume(self, volume_id: str) -> None:
        await self._request("DELETE", f"/volumes/{volume_id}")

    async def snapshot_volume(self, volume_id: str, slug: str) -> DenoSnapshot:
        return DenoSnapshot.model_validate(
            await self._request("POST", f"/volumes/{volume_id}/snapshot", json={"slug": slug})
        )

    # Snapshots

    async def list_snapshots(self) -> list[DenoSnapshot]:
        return [DenoSnapshot.model_validate(item) for item in await self._request("GET", "/snapshots") or []]

    async def delete_snapshot(self, snapshot_id: str) -> None:
        await self._request("DELETE", f"/snapshots/{snapshot_id}")


__all__ = [
    "DEFAULT_API_URL",
    "DenoApiClient",
    "DenoSandbox",
    "DenoSnapshot",
    "DenoVolume",
    "ExecResult",
    "SshEndpoint",
]

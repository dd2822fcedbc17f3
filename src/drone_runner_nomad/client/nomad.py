"""Minimal Nomad HTTP API client for job registration."""

from __future__ import annotations

import httpx

from drone_runner_nomad.config import NomadSettings
from drone_runner_nomad.models import Job

DEFAULT_TIMEOUT_SECONDS = 30.0


class NomadClientError(RuntimeError):
    """Nomad API call failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NomadClient:
    """Registers batch jobs through the Nomad ``/v1/jobs`` endpoint."""

    def __init__(
        self,
        settings: NomadSettings,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        addr = settings.addr.strip().rstrip("/")
        if not addr.startswith(("http://", "https://")):
            raise NomadClientError(f"Invalid NOMAD_ADDR: {settings.addr!r}")

        headers = {}
        if settings.token:
            headers["X-Nomad-Token"] = settings.token
        verify: bool | str = True
        if settings.skip_verify:
            verify = False
        elif settings.ca_cert:
            verify = settings.ca_cert

        self.addr = addr
        self._namespace = settings.namespace
        self._region = settings.region
        self._client = httpx.Client(
            base_url=addr,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            verify=verify,
            transport=transport,
        )

    def register_job(self, job: Job) -> str:
        params = {}
        if self._namespace and job.namespace is None:
            params["namespace"] = self._namespace
        if self._region and job.region is None:
            params["region"] = self._region

        try:
            response = self._client.put("/v1/jobs", params=params, json={"Job": job.to_api()})
        except httpx.HTTPError as error:
            raise NomadClientError(f"Nomad job registration failed: {error}") from error

        if response.is_error:
            raise NomadClientError(
                f"Nomad job registration returned HTTP {response.status_code}: "
                f"{response.text.strip()[:200]}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as error:
            raise NomadClientError("Nomad returned malformed registration JSON") from error
        if not isinstance(payload, dict):
            raise NomadClientError("Nomad returned malformed registration JSON")
        return str(payload.get("EvalID", ""))

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> NomadClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

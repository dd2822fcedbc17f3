"""HTTP client for the Drone server runner RPC endpoints."""

from __future__ import annotations

import logging

import httpx

from drone_runner_nomad.logging_setup import TRACE
from drone_runner_nomad.models import Filter, Stage

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 60.0
DEFAULT_USER_AGENT = "drone-runner-nomad"
_DUMP_BODY_LIMIT = 4096


class DroneClientError(RuntimeError):
    """Drone RPC failure other than a lock conflict."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class OptimisticLockError(DroneClientError):
    """The stage was claimed by another runner first."""


class DroneClient:
    """Requests and accepts pending stages on behalf of this runner."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        addr: str,
        secret: str,
        skip_verify: bool = False,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        dump: bool = False,
        dump_body: bool = False,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.addr = addr.rstrip("/")
        self._dump_body = dump_body
        # Stage requests are long polls held open for up to the read timeout.
        timeout = httpx.Timeout(request_timeout_seconds, connect=10.0)
        event_hooks = (
            {"request": [self._dump_request], "response": [self._dump_response]} if dump else {}
        )
        self._client = httpx.Client(
            base_url=self.addr,
            timeout=timeout,
            headers={
                "X-Drone-Token": secret,
                "User-Agent": DEFAULT_USER_AGENT,
            },
            verify=not skip_verify,
            transport=transport,
            event_hooks=event_hooks,
        )

    def request(self, stage_filter: Filter) -> Stage | None:
        try:
            response = self._send(
                "POST",
                "/rpc/v2/stage",
                json=stage_filter.to_payload(),
                long_poll=True,
            )
        except httpx.ReadTimeout:
            logger.log(TRACE, "Long poll expired without a stage")
            return None
        if response.status_code == httpx.codes.NO_CONTENT or not response.content:
            return None
        stage = _parse_stage(response)
        if stage.id == 0:
            return None
        return stage

    def accept(self, stage: Stage) -> Stage:
        response = self._send(
            "POST",
            f"/rpc/v2/stage/{stage.id}",
            params={"machine": stage.machine},
        )
        if not response.content:
            return stage
        return _parse_stage(response)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> DroneClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _send(
        self,
        method: str,
        path: str,
        *,
        long_poll: bool = False,
        **kwargs: object,
    ) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)  # type: ignore[arg-type]
        except httpx.ReadTimeout:
            if long_poll:
                raise
            raise DroneClientError(f"Drone RPC {method} {path} timed out") from None
        except httpx.HTTPError as error:
            raise DroneClientError(f"Drone RPC {method} {path} failed: {error}") from error

        if response.status_code == httpx.codes.CONFLICT:
            raise OptimisticLockError(
                "Optimistic Lock Error",
                status_code=response.status_code,
            )
        if response.is_error:
            raise DroneClientError(
                f"Drone RPC {method} {path} returned HTTP {response.status_code}: "
                f"{response.text.strip()[:200]}",
                status_code=response.status_code,
            )
        return response

    def _dump_request(self, request: httpx.Request) -> None:
        logger.debug("%s %s", request.method, request.url)
        if self._dump_body and request.content:
            logger.debug("%s", request.content[:_DUMP_BODY_LIMIT].decode("utf-8", "replace"))

    def _dump_response(self, response: httpx.Response) -> None:
        logger.debug(
            "HTTP %s for %s %s",
            response.status_code,
            response.request.method,
            response.request.url,
        )
        if self._dump_body:
            body = response.read()
            logger.debug("%s", body[:_DUMP_BODY_LIMIT].decode("utf-8", "replace"))


def _parse_stage(response: httpx.Response) -> Stage:
    try:
        payload = response.json()
    except ValueError as error:
        raise DroneClientError(
            "Drone RPC returned malformed stage JSON",
            status_code=response.status_code,
        ) from error
    try:
        return Stage.from_payload(payload)
    except (TypeError, ValueError) as error:
        raise DroneClientError(
            f"Drone RPC returned an invalid stage: {error}",
            status_code=response.status_code,
        ) from error

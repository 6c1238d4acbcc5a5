"""HTTP client for the time-series backend's line-protocol write API.

:class:`BackendClient` owns one ``httpx.AsyncClient``.  It is opened and
closed by whoever constructs it (the service lifespan or the replay command)
and injected into :class:`~waypoint.writer.BatchingWriter`; each flush borrows
a pooled connection for the duration of its request only.

Request shape::

    POST <url>/write?bucket=<bucket>&org=<org>&precision=<precision>
    Authorization: Token <token>
    Content-Type: text/plain; charset=utf-8

    <line>\\n<line>\\n...

Classification of the response (success, transient, permanent) is the
writer's job; this module only performs the call.
"""

from __future__ import annotations

import httpx

from waypoint.config import BackendSettings


class BackendClient:
    """Async line-protocol writer for one backend endpoint.

    Args:
        settings:  Resolved :class:`~waypoint.config.BackendSettings`.
        transport: Optional httpx transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        settings: BackendSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    # -- Lifecycle -----------------------------------------------------------

    async def open(self) -> None:
        """Create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self._headers(),
                timeout=httpx.Timeout(self._settings.timeout),
                transport=self._transport,
            )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> BackendClient:
        await self.open()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    @property
    def is_open(self) -> bool:
        return self._client is not None

    # -- Writes --------------------------------------------------------------

    async def write(self, body: bytes) -> httpx.Response:
        """POST *body* to the write endpoint and return the raw response.

        Raises:
            RuntimeError:        The client has not been opened.
            httpx.TransportError: Timeouts and connection failures.
        """
        if self._client is None:
            raise RuntimeError("Backend client not opened. Use 'async with' or call open().")
        return await self._client.post(
            self._settings.write_url,
            params=self.write_params(),
            content=body,
        )

    def write_params(self) -> dict[str, str]:
        params = {"precision": self._settings.precision}
        if self._settings.bucket:
            params["bucket"] = self._settings.bucket
        if self._settings.org:
            params["org"] = self._settings.org
        return params

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "text/plain; charset=utf-8",
            "Accept": "application/json",
        }
        token = self._settings.token.get_secret_value()
        if token:
            headers["Authorization"] = f"Token {token}"
        return headers


def ping_url(url: str) -> str:
    """Return the ``/ping`` URL on the origin of backend *url*."""
    parsed = httpx.URL(url)
    return f"{parsed.scheme}://{parsed.netloc.decode('ascii')}/ping"

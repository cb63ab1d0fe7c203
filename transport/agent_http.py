"""
Transport - Endpoint Agent over HTTP.

============================================================
PURPOSE
============================================================
DeviceTransport speaking JSON to the endpoint agent's listener.

- SECURE:     https://<target>:<secure_port>
- PLAIN:      http://<target>:<plain_port>  (allow-listed target)
- INTEGRATED: http://<target>:<plain_port>  with Negotiate header

Endpoints:
- GET  /fleet/v1/ping      liveness, used on connect
- POST /fleet/v1/execute   {"action_type", "payload"} -> JSON output

401/403 raise AuthenticationDeniedError. Other HTTP errors surface
as aiohttp exceptions and are classified centrally (5xx/429 ->
Transient).

============================================================
"""

import logging
from typing import Any, Callable, Dict, Optional

import aiohttp

from core.config import SessionConfig
from core.exceptions import AuthenticationDeniedError
from transport.device_transport import CancellationToken, Channel, DeviceTransport, run_bounded
from transport.types import Credential, TransportKind


logger = logging.getLogger(__name__)


def _raise_for_status(response: aiohttp.ClientResponse, target: str) -> None:
    if response.status in (401, 403):
        raise AuthenticationDeniedError(
            f"{target} rejected the credential (HTTP {response.status})",
            context={"target": target, "status": response.status},
        )
    response.raise_for_status()


class AgentHttpChannel(Channel):
    """
    One aiohttp session bound to one device.

    A connection-level failure marks the channel broken so the
    pool never hands it out again.
    """

    def __init__(
        self,
        target: str,
        kind: TransportKind,
        base_url: str,
        session: aiohttp.ClientSession,
    ):
        super().__init__(target, kind)
        self._base_url = base_url
        self._session = session
        self._broken = False

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def is_open(self) -> bool:
        return not self._broken and not self._session.closed

    async def ping(self, timeout: float) -> None:
        """Verify the agent answers."""
        async with self._session.get(
            f"{self._base_url}/fleet/v1/ping",
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as response:
            _raise_for_status(response, self.target)

    async def execute(
        self,
        action_type: str,
        payload: Dict[str, Any],
        timeout: float,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        body = {"action_type": action_type, "payload": payload}
        try:
            return await run_bounded(
                self._post_execute(body, timeout),
                timeout=timeout,
                operation=f"{action_type} on {self.target}",
                cancel_token=cancel_token,
            )
        except aiohttp.ClientConnectionError:
            self._broken = True
            raise

    async def _post_execute(self, body: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        async with self._session.post(
            f"{self._base_url}/fleet/v1/execute",
            json=body,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as response:
            _raise_for_status(response, self.target)
            data = await response.json(content_type=None)
        if not isinstance(data, dict):
            return {"output": data}
        return data

    async def close(self) -> None:
        self._broken = True
        if not self._session.closed:
            await self._session.close()


class AgentHttpTransport(DeviceTransport):
    """
    Opens AgentHttpChannels.

    Usage:
        transport = AgentHttpTransport(config_provider=lambda: config.session)
        channel = await transport.connect("web-01", TransportKind.SECURE, cred, 15)
    """

    def __init__(
        self,
        config_provider: Optional[Callable[[], SessionConfig]] = None,
        session_factory: Optional[Callable[..., aiohttp.ClientSession]] = None,
    ):
        self._config_provider = config_provider or SessionConfig
        self._session_factory = session_factory or aiohttp.ClientSession

    def _base_url(self, target: str, kind: TransportKind) -> str:
        config = self._config_provider()
        if kind is TransportKind.SECURE:
            return f"https://{target}:{config.secure_port}"
        return f"http://{target}:{config.plain_port}"

    @staticmethod
    def _auth_kwargs(kind: TransportKind, credential: Optional[Credential]) -> Dict[str, Any]:
        if kind is TransportKind.INTEGRATED:
            # Ticket acquisition belongs to the agent side; we only announce the scheme
            return {"headers": {"Authorization": "Negotiate"}}
        if credential is None:
            return {}
        return {"auth": aiohttp.BasicAuth(credential.username, credential.secret)}

    async def connect(
        self,
        target: str,
        kind: TransportKind,
        credential: Optional[Credential],
        timeout: float,
    ) -> Channel:
        session = self._session_factory(**self._auth_kwargs(kind, credential))
        channel = AgentHttpChannel(target, kind, self._base_url(target, kind), session)
        try:
            await run_bounded(channel.ping(timeout), timeout, f"connect {target}")
        except BaseException:
            await channel.close()
            raise
        logger.debug(f"Connected to {target} via {kind.value}")
        return channel

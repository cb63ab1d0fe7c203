"""
Transport - Mock Device Transport.

============================================================
PURPOSE
============================================================
Scriptable transport for testing the engine and the pool.

FEATURES:
- Per-target scripted outcomes (result dict, exception, or callable)
- Connect failure injection
- Configurable latency
- Full call recording (connects, executions with start/end times)

============================================================
"""

import asyncio
import itertools
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from transport.device_transport import CancellationToken, Channel, DeviceTransport, run_bounded
from transport.types import Credential, TransportKind, normalize_target


logger = logging.getLogger(__name__)


Outcome = Union[Dict[str, Any], BaseException, Callable[[str, Dict[str, Any]], Any]]


@dataclass
class ExecutionRecord:
    """One recorded execute() call."""

    target: str
    action_type: str
    payload: Dict[str, Any]
    channel_id: int
    started: float
    finished: Optional[float] = None
    outcome: str = "running"


@dataclass
class MockTransportConfig:
    """Behavior of the mock transport."""

    latency_seconds: float = 0.0
    """Simulated duration of every execute()."""

    connect_latency_seconds: float = 0.0
    """Simulated duration of every connect()."""

    default_result: Dict[str, Any] = field(default_factory=lambda: {"output": "ok"})
    """Returned when a target has no scripted outcome left."""


class MockChannel(Channel):
    """Channel returned by MockDeviceTransport."""

    def __init__(self, transport: "MockDeviceTransport", target: str, kind: TransportKind, channel_id: int):
        super().__init__(target, kind)
        self._transport = transport
        self.channel_id = channel_id
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    def break_channel(self) -> None:
        """Simulate a dropped connection."""
        self._open = False

    async def execute(
        self,
        action_type: str,
        payload: Dict[str, Any],
        timeout: float,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        return await run_bounded(
            self._transport._run(self, action_type, payload),
            timeout=timeout,
            operation=f"{action_type} on {self.target}",
            cancel_token=cancel_token,
        )

    async def close(self) -> None:
        if self._open:
            self._open = False
            self._transport.closed_channels.append(self.channel_id)


class MockDeviceTransport(DeviceTransport):
    """
    Mock transport for testing.

    Usage:
        transport = MockDeviceTransport()
        transport.script("web-01", TimeoutError("blip"), {"output": "done"})
        transport.fail_connect("db-01", ConnectionRefusedError())
    """

    def __init__(self, config: Optional[MockTransportConfig] = None):
        self._config = config or MockTransportConfig()
        self._scripts: Dict[str, Deque[Outcome]] = defaultdict(deque)
        self._connect_failures: Dict[str, Deque[BaseException]] = defaultdict(deque)
        self._ids = itertools.count(1)

        self.connects: List[Dict[str, Any]] = []
        self.executions: List[ExecutionRecord] = []
        self.closed_channels: List[int] = []
        self.channels: List[MockChannel] = []

    # --------------------------------------------------------
    # SCRIPTING
    # --------------------------------------------------------

    def script(self, target: str, *outcomes: Outcome) -> None:
        """Queue outcomes for successive executions on a target."""
        self._scripts[normalize_target(target)].extend(outcomes)

    def fail_connect(self, target: str, *errors: BaseException) -> None:
        """Queue errors for successive connects to a target."""
        self._connect_failures[normalize_target(target)].extend(errors)

    def set_latency(self, seconds: float) -> None:
        self._config.latency_seconds = seconds

    def executions_for(self, target: str) -> List[ExecutionRecord]:
        key = normalize_target(target)
        return [r for r in self.executions if r.target == key]

    def reset(self) -> None:
        """Forget scripts and recordings."""
        self._scripts.clear()
        self._connect_failures.clear()
        self.connects.clear()
        self.executions.clear()
        self.closed_channels.clear()
        self.channels.clear()

    # --------------------------------------------------------
    # TRANSPORT
    # --------------------------------------------------------

    async def connect(
        self,
        target: str,
        kind: TransportKind,
        credential: Optional[Credential],
        timeout: float,
    ) -> Channel:
        key = normalize_target(target)
        self.connects.append({"target": key, "kind": kind, "credential": credential})
        if self._config.connect_latency_seconds:
            await asyncio.sleep(self._config.connect_latency_seconds)
        failures = self._connect_failures.get(key)
        if failures:
            raise failures.popleft()
        channel = MockChannel(self, key, kind, next(self._ids))
        self.channels.append(channel)
        return channel

    async def _run(self, channel: MockChannel, action_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        record = ExecutionRecord(
            target=channel.target,
            action_type=action_type,
            payload=dict(payload or {}),
            channel_id=channel.channel_id,
            started=loop.time(),
        )
        self.executions.append(record)
        try:
            if self._config.latency_seconds:
                await asyncio.sleep(self._config.latency_seconds)
            result = self._next_outcome(channel.target, action_type, payload)
            record.outcome = "ok"
            return result
        except asyncio.CancelledError:
            record.outcome = "cancelled"
            raise
        except Exception as e:
            record.outcome = type(e).__name__
            raise
        finally:
            record.finished = loop.time()

    def _next_outcome(self, target: str, action_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        queue = self._scripts.get(target)
        if not queue:
            return dict(self._config.default_result)
        outcome = queue.popleft()
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(action_type, payload)
        return dict(outcome)

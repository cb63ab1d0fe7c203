"""
Transport - Device Transport Interface.

============================================================
PURPOSE
============================================================
Abstract interface the engine uses to reach a device.

- DeviceTransport.connect() opens a Channel
- Channel.execute() runs one payload under a timeout and
  observes a CancellationToken
- run_bounded() is the single place that applies timeouts and
  cancellation to a transport coroutine

Implementations:
- AgentHttpTransport: endpoint agent over aiohttp
- MockDeviceTransport: scriptable, for testing

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Dict, Optional, TypeVar

from core.exceptions import OperationCancelledError, OperationTimeoutError
from transport.types import Credential, TransportKind


logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================================
# CANCELLATION
# ============================================================

class CancellationToken:
    """
    Cooperative cancellation signal.

    Set by shutdown or by an explicit cancel request; transports
    observe it at their suspension points.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Signal cancellation. The first reason wins."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    async def wait(self) -> None:
        """Wait until cancelled."""
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        """
        Raises:
            OperationCancelledError: If cancellation was signalled
        """
        if self._event.is_set():
            raise OperationCancelledError(self._reason or "cancelled")


async def run_bounded(
    awaitable: Awaitable[T],
    timeout: float,
    operation: str,
    cancel_token: Optional[CancellationToken] = None,
) -> T:
    """
    Await with a timeout, aborting early when the token fires.

    Raises:
        OperationTimeoutError: If the timeout elapses first
        OperationCancelledError: If the token fires first
    """
    task = asyncio.ensure_future(awaitable)
    waiters = {task}
    cancel_waiter = None
    if cancel_token is not None:
        if cancel_token.is_cancelled:
            task.cancel()
            cancel_token.raise_if_cancelled()
        cancel_waiter = asyncio.ensure_future(cancel_token.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if cancel_waiter is not None and not cancel_waiter.done():
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        logger.debug(f"{operation} aborted")
    except Exception as e:
        logger.debug(f"{operation} raised while aborting: {e}")

    if cancel_waiter is not None and cancel_waiter in done:
        raise OperationCancelledError(
            f"{operation} interrupted: {cancel_token.reason or 'cancelled'}",
            context={"operation": operation},
        )
    raise OperationTimeoutError(operation, timeout)


# ============================================================
# CHANNEL / TRANSPORT
# ============================================================

class Channel(ABC):
    """
    An open connection to one device.

    A channel that reports is_open == False is never reused.
    """

    def __init__(self, target: str, kind: TransportKind):
        self.target = target
        self.kind = kind

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the channel can still carry work."""

    @abstractmethod
    async def execute(
        self,
        action_type: str,
        payload: Dict[str, Any],
        timeout: float,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """
        Run one action on the device.

        Returns:
            Device-reported output (JSON-serializable)

        Raises:
            Any exception; callers classify via classify_error()
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Idempotent."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.target} {self.kind.value} open={self.is_open}>"


class DeviceTransport(ABC):
    """Opens channels to devices."""

    @abstractmethod
    async def connect(
        self,
        target: str,
        kind: TransportKind,
        credential: Optional[Credential],
        timeout: float,
    ) -> Channel:
        """
        Open a channel.

        Raises:
            Any exception; callers classify via classify_error()
        """

    async def close(self) -> None:
        """Release transport-wide resources."""

"""
Transport - Port Prober.

TCP connect probes used by the negotiator. A secure probe also
completes the TLS handshake so an untrusted certificate is told
apart from a closed port.
"""

import asyncio
import logging
import ssl
from typing import Optional

from transport.types import ProbeOutcome


logger = logging.getLogger(__name__)


class PortProber:
    """
    Probes a single host:port.

    Never raises for network conditions; every outcome is a
    ProbeOutcome value.
    """

    def __init__(self, ssl_context: Optional[ssl.SSLContext] = None):
        self._ssl_context = ssl_context or ssl.create_default_context()

    async def probe(
        self,
        host: str,
        port: int,
        timeout: float,
        secure: bool = False,
    ) -> ProbeOutcome:
        """
        Probe a listener.

        Args:
            host: Target host
            port: TCP port
            timeout: Connect (and handshake) timeout in seconds
            secure: Complete a TLS handshake with certificate verification
        """
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(
                    host,
                    port,
                    ssl=self._ssl_context if secure else None,
                    server_hostname=host if secure else None,
                ),
                timeout=timeout,
            )
        except ssl.SSLCertVerificationError as e:
            logger.debug(f"Probe {host}:{port} untrusted certificate: {e}")
            return ProbeOutcome.UNTRUSTED_CERTIFICATE
        except asyncio.TimeoutError:
            logger.debug(f"Probe {host}:{port} timed out after {timeout}s")
            return ProbeOutcome.TIMEOUT
        except PermissionError as e:
            logger.debug(f"Probe {host}:{port} denied: {e}")
            return ProbeOutcome.DENIED
        except OSError as e:
            logger.debug(f"Probe {host}:{port} closed: {e}")
            return ProbeOutcome.CLOSED

        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Probe {host}:{port} close error ignored: {e}")
        return ProbeOutcome.OPEN

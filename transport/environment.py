"""
Transport - Host Environment.

Facts about the local node the negotiator depends on.
"""

import logging
import os
from abc import ABC, abstractmethod


logger = logging.getLogger(__name__)


class HostEnvironment(ABC):
    """Local node facts."""

    @abstractmethod
    def is_domain_joined(self) -> bool:
        """Whether the local node belongs to a directory domain."""


class StaticHostEnvironment(HostEnvironment):
    """Fixed answers, for tests and explicit configuration."""

    def __init__(self, domain_joined: bool = False):
        self._domain_joined = domain_joined

    def is_domain_joined(self) -> bool:
        return self._domain_joined


class SystemHostEnvironment(HostEnvironment):
    """
    Reads domain membership from the process environment.

    FLEET_DOMAIN_JOINED ("true"/"false") wins when set; otherwise a
    non-empty USERDNSDOMAIN means the node is joined.
    """

    def is_domain_joined(self) -> bool:
        override = os.getenv("FLEET_DOMAIN_JOINED")
        if override is not None:
            return override.strip().lower() in ("1", "true", "yes")
        return bool(os.getenv("USERDNSDOMAIN"))

"""
Orchestrator Package - System Coordination Layer.

============================================================
PACKAGE OVERVIEW
============================================================
Wires the fleet components into one runtime and exposes
them to consoles.

============================================================
CORE PRINCIPLES
============================================================
1. The orchestrator has NO business logic
2. Every console mutation passes the access gate
3. One active orchestrator per deployment

============================================================
ARCHITECTURE
============================================================

    +-----------------------------------------------------+
    |                 FleetOrchestrator                   |
    |-----------------------------------------------------|
    |  Store          |  devices, actions, alerts, audit  |
    |  Transport      |  negotiator + session pool        |
    |  Cache          |  TTL cache, device read-through   |
    |  Execution      |  action queue, dispatch loop      |
    |  Scoring        |  health scoring loop              |
    |  Alerts         |  lifecycle manager, webhook       |
    |  Access         |  roles, audit, gate               |
    +-----------------------------------------------------+
              ^                        ^
         FleetConsole                 CLI

============================================================
"""

from .console import FleetConsole
from .core import FleetOrchestrator, JsonLogFormatter, create_orchestrator, setup_logging


__all__ = [
    "FleetConsole",
    "FleetOrchestrator",
    "JsonLogFormatter",
    "create_orchestrator",
    "setup_logging",
]

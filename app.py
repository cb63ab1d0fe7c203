#!/usr/bin/env python3
"""
Fleet Orchestrator - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
This is the ONE executable entry point for the engine.

- Compatible with PM2 / systemd process management
- Can be started, stopped, and restarted safely
- Handles all signals gracefully

============================================================
USAGE
============================================================
Direct execution:
    python app.py run --config fleet.yaml

With PM2:
    pm2 start app.py --interpreter python --name fleet -- run

Environment-based configuration:
    FLEET_CONFIG_FILE=fleet.yaml FLEET_LOG_LEVEL=DEBUG python app.py run

============================================================
"""

import sys

from orchestrator.cli import main


if __name__ == "__main__":
    sys.exit(main())

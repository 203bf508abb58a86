"""
StudioB watchdog - service supervision and deployment rollback

Runs as its own process (studiob-watchdog). Shares only the filesystem
layout and the core's HTTP surface with the engine.
"""

from .services import CommandResult, ServiceManager, run_command
from .deployment import DeploymentPointer, LastKnownGood, LastKnownGoodStore
from .supervisor import (
    CycleReport,
    HttpProber,
    Supervisor,
    SupervisorPolicy,
    start_watchdog,
    watchdog_status,
)

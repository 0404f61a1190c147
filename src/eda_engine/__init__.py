"""Containerized EDA job engine.

Projects live in a host directory that is also mounted into a long-lived tool
container. The engine records projects and runs in SQLite, stages design files
into the shared tree and drives simulation, synthesis and RTL-to-GDS flows
inside the container.
"""

from .config import Settings
from .services import Services, build_services

__all__ = ["Services", "Settings", "build_services"]

__version__ = "0.1.0"

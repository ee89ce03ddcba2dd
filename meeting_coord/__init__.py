"""
meeting_coord - coordination layer for multi-agent meeting analysis.

Shared memory, meeting state and an agent message bus, running in one
asyncio event loop.
"""

__version__ = "0.1.0"

from meeting_coord.services import CoordinationServices, build_services

__all__ = ["CoordinationServices", "build_services", "__version__"]

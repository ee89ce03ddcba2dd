"""
Service container.

Builds the shared memory, state repository and communication services from
one AppConfig and hands them out through a single explicit handle:

    async with build_services(load_config()) as services:
        await services.memory.write("agenda", ["intro", "budget"])
        await services.communication.register_agent("summarizer", on_message)
"""

from dataclasses import dataclass
from typing import Optional

from meeting_coord.communication import CommunicationService
from meeting_coord.config import AppConfig
from meeting_coord.logging_config import get_logger
from meeting_coord.memory import SharedMemoryService
from meeting_coord.state import StateRepositoryService

logger = get_logger("meeting_coord.services")


@dataclass
class CoordinationServices:
    config: AppConfig
    memory: SharedMemoryService
    state: StateRepositoryService
    communication: CommunicationService

    async def start(self) -> None:
        await self.memory.initialize()
        await self.state.initialize()
        await self.communication.initialize()
        logger.info("Coordination services started", environment=self.config.environment)

    async def shutdown(self) -> None:
        # Reverse start order
        await self.communication.cleanup()
        await self.state.cleanup()
        await self.memory.cleanup()
        logger.info("Coordination services stopped")

    async def __aenter__(self) -> "CoordinationServices":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()


def build_services(config: Optional[AppConfig] = None) -> CoordinationServices:
    """Create (but do not start) all services from ``config``."""
    config = config or AppConfig()
    return CoordinationServices(
        config=config,
        memory=SharedMemoryService(config.memory),
        state=StateRepositoryService(config.state),
        communication=CommunicationService(config.communication),
    )

import logging
from typing import List, Protocol

logger = logging.getLogger("n7-threat.service-manager")


class Service(Protocol):
    async def start(self):
        ...

    async def stop(self):
        ...

    @property
    def name(self) -> str:
        ...


class ServiceManager:
    """
    Manages the lifecycle of threat engine services.
    Services start in registration order and stop in reverse.
    """
    def __init__(self):
        self.services: List[Service] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def register(self, service: Service):
        self.services.append(service)
        logger.info(f"Registered service: {service.name}")

    async def start_all(self):
        logger.info("Starting all services...")
        self._running = True
        for service in self.services:
            try:
                logger.info(f"Starting {service.name}...")
                await service.start()
                logger.info(f"Started {service.name}")
            except Exception as e:
                logger.error(f"Failed to start {service.name}: {e}")
                raise

    async def stop_all(self):
        logger.info("Stopping all services...")
        self._running = False
        for service in reversed(self.services):
            try:
                logger.info(f"Stopping {service.name}...")
                await service.stop()
                logger.info(f"Stopped {service.name}")
            except Exception as e:
                # Keep stopping the remaining services
                logger.error(f"Failed to stop {service.name}: {e}")

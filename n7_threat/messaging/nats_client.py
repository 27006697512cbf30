import logging
from typing import Optional

from nats.aio.client import Client as NATS

from ..config import Settings, settings as default_settings

logger = logging.getLogger("n7-threat.messaging")


class NATSClient:
    """
    NATS Client wrapper with auto-reconnect.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.nc = NATS()

    @property
    def is_connected(self) -> bool:
        return bool(self.nc and self.nc.is_connected)

    async def connect(self):
        """
        Connects to NATS with resilience settings.
        """
        try:
            await self.nc.connect(
                servers=[self.settings.NATS_URL],
                name=self.settings.NATS_CLIENT_ID,
                reconnect_time_wait=2,
                max_reconnect_attempts=-1,  # Infinite reconnects
                error_cb=self._error_cb,
                disconnected_cb=self._disconnected_cb,
                reconnected_cb=self._reconnected_cb,
            )
            logger.info(f"Connected to NATS at {self.settings.NATS_URL}")
        except Exception as e:
            logger.error(f"Failed to connect to NATS: {e}")
            raise

    async def publish(self, subject: str, payload: bytes):
        await self.nc.publish(subject, payload)

    async def close(self):
        """
        Gracefully closes the NATS connection.
        """
        if self.nc.is_connected:
            await self.nc.drain()
            logger.info("NATS connection closed.")

    async def _error_cb(self, e):
        logger.error(f"NATS Error: {e}")

    async def _disconnected_cb(self):
        logger.warning("Disconnected from NATS...")

    async def _reconnected_cb(self):
        logger.info("Reconnected to NATS!")


nats_client = NATSClient()

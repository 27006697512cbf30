import asyncio
import logging
import signal

from .config import settings
from .database.session import async_session_factory, engine, init_db
from .detection_pipeline.service import DetectionPipelineService
from .logger import setup_logging
from .messaging.nats_client import nats_client
from .notifier.service import NatsEscalationPublisher
from .rule_engine.service import RuleEngineService
from .service_manager.service_manager import ServiceManager
from .store.sql import SQLAlchemyAlertStore
from .threat_correlator.service import AlertCorrelationService

logger = logging.getLogger("n7-threat")


async def main():
    """
    Main entry point for the N7 threat engine.
    Wires the store, rule engine, correlator, escalation publisher and
    detection pipeline together and runs until SIGINT/SIGTERM.
    """
    setup_logging(settings)
    logger.info(f"Starting N7 threat engine ({settings.ENVIRONMENT})...")

    await init_db(engine)

    try:
        await nats_client.connect()
    except Exception as e:
        logger.error(f"Failed to connect to NATS during startup: {e}")
        # Proceeding; escalations are dropped and events only arrive through direct calls

    store = SQLAlchemyAlertStore(async_session_factory)
    rule_engine = RuleEngineService()
    correlator = AlertCorrelationService(store)
    publisher = NatsEscalationPublisher(nats_client)
    pipeline = DetectionPipelineService(rule_engine, store, correlator, sink=publisher, client=nats_client)

    # Dependencies first; they stop last
    service_manager = ServiceManager()
    service_manager.register(rule_engine)
    service_manager.register(correlator)
    service_manager.register(publisher)
    service_manager.register(pipeline)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    await service_manager.start_all()
    try:
        await stop_event.wait()
    finally:
        logger.info("N7 threat engine shutting down...")
        await service_manager.stop_all()
        await nats_client.close()
        await engine.dispose()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("N7 threat engine stopped by user.")


if __name__ == "__main__":
    run()

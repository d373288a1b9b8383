import logging

from waitress import serve

from .app import create_app
from .config import load_settings
from .counter import CounterService, InitializationError
from .store import StoreConnectionError, build_store

logger = logging.getLogger("visit_counter")


def start(settings):
    """Connect, then initialize, then build the app. Neither failure is fatal."""
    store = build_store(settings)
    try:
        store.connect()
        logger.info("connected to %s store", store.name)
    except StoreConnectionError as e:
        logger.error("%s connection error: %s", store.name, e)

    service = CounterService(
        store,
        key=settings.counter_key,
        atomic=settings.atomic_increment,
        reset_on_start=settings.reset_on_start,
    )
    try:
        service.initialize()
    except InitializationError as e:
        logger.error("Error initializing %s: %s", store.name, e)

    return store, create_app(service, settings.response_format)


def main():
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store, app = start(settings)
    logger.info("Server is running on port %d", settings.port)
    try:
        serve(app, host=settings.host, port=settings.port, threads=settings.threads)
    finally:
        store.close()


if __name__ == "__main__":
    main()

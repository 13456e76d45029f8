import logging

from doubt_solver.config import LOG_LEVEL


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # pymongo heartbeat chatter drowns out request logs at DEBUG
    logging.getLogger("pymongo").setLevel(logging.WARNING)

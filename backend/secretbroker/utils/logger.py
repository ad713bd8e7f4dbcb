# secretbroker/utils/logger.py

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logger(level: str = "INFO") -> None:
    """Configure root logging once; later calls only adjust the level."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    if any(getattr(h, "_secretbroker", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._secretbroker = True
    root.addHandler(handler)
    # Connection chatter from the client libraries is not useful at INFO
    logging.getLogger("nats").setLevel(logging.WARNING)

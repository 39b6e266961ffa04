# logging setup shared by the api and the worker
# call configure_logging() once at startup, then use logging.getLogger(__name__)

import logging

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

def configure_logging(level: str = "INFO") -> None:
    """
    configure root logging (stdout, uniform format)

    args:
        level: "DEBUG", "INFO", "WARNING", "ERROR" or "CRITICAL"
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT
    )
    logging.getLogger(__name__).info("logging initialized with level %s", level.upper())

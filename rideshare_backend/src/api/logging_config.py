import logging

from src.api.config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


# PUBLIC_INTERFACE
def configure_logging(level: str = LOG_LEVEL) -> None:
    """Configure root logging once for the API process."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # SQL echo is controlled separately; keep the engine quiet by default.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

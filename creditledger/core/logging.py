import logging

from creditledger.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once per process (API server or Temporal worker)."""
    logging.basicConfig(level=(level or settings.log_level).upper(), format=LOG_FORMAT)
    # SQLAlchemy engine logging stays governed by `echo`, not the app level.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

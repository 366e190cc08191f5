import logging
from typing import Optional

from .config import settings


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging for applications embedding the client."""
    logging.basicConfig(
        level=getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

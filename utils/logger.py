from typing import Optional

import structlog
from structlog.stdlib import BoundLogger


def get_logger(name: str) -> BoundLogger:
    """
    Get a configured logger instance.

    Example:
        >>> log = get_logger(__name__)
        >>> log.info("booking_created", booking_id=12, car_id=3)
    """
    return structlog.get_logger(name)


def token_prefix(token: Optional[str]) -> Optional[str]:
    """Short, loggable prefix of a secret token."""
    if not isinstance(token, str) or not token:
        return None
    return token[:8] + "..."

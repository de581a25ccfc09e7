"""
Logging setup for the Lambda workers.

The Lambda runtime installs its own handler on the root logger before our code runs, so
``setup_logging`` reuses existing handlers and only falls back to a stdout handler for
local runs. Every handler gets a filter masking bearer credentials, since the services
handle issued tokens and guest passwords.
"""

import logging
import re
import sys
from typing import Optional

from .config import AppConfig

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Three base64url segments starting with a JSON header, i.e. a JWT
JWT_PATTERN = re.compile(r'eyJ[\w-]*\.[\w-]+\.[\w-]+')
BEARER_PATTERN = re.compile(r'(Bearer\s+)\S+', re.IGNORECASE)
REDACTED = '[REDACTED]'


class CredentialRedactingFilter(logging.Filter):
    """Replace bearer credentials and JWTs in log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = BEARER_PATTERN.sub(rf'\1{REDACTED}', JWT_PATTERN.sub(REDACTED, message))
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def _level(config: AppConfig) -> int:
    return getattr(logging, config.log_level.upper(), logging.INFO)


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """
    Configure the root logger once per worker.

    Args:
        config: AppConfig instance, uses default if None
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(_level(config))

    for handler in root.handlers:
        if not any(isinstance(f, CredentialRedactingFilter) for f in handler.filters):
            handler.addFilter(CredentialRedactingFilter())

    # botocore is chatty at DEBUG and would log request signatures
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Get a module logger at the configured level.

    Args:
        name: Logger name (usually __name__)
        config: AppConfig instance, uses default if None
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    logger = logging.getLogger(name)
    logger.setLevel(_level(config))
    return logger

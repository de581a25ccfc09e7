"""
Lambda entry points, one per API Gateway integration.

Services are built once per worker at import time and reused across invocations.
``reload()`` rebuilds them from the current environment.
"""
from typing import Any, Dict

from .api import ApiHandlers, build_services, event_summary
from .utils.config import config, reload_config
from .utils.logging_config import get_logger

logger = get_logger(__name__)

api = ApiHandlers(build_services(config))


def reload() -> ApiHandlers:
    """Re-read configuration and rebuild the services used by every entry point."""
    global api
    api = ApiHandlers(build_services(reload_config()))
    logger.info(f'Reloaded configuration for environment {api.services.config.environment}')
    return api


def guest_signup_handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    """Provision (or re-authenticate) the guest account for a device."""
    logger.debug(f'Guest signup request: {event_summary(event)}')
    return api.guest_signup(event)


def post_confirmation_handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    """Cognito post-confirmation trigger for registered accounts."""
    logger.debug(f'Post confirmation trigger: {event.get("triggerSource")}')
    return api.post_confirmation(event)


def subscription_handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    """Token balance, decrement, purchase and test top-up routes."""
    logger.debug(f'Subscription request: {event_summary(event)}')
    return api.subscription(event)


def scan_history_handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    logger.debug(f'Scan history request: {event_summary(event)}')
    return api.scan_history(event)


def analyze_handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    logger.debug(f'Analyze request: {event_summary(event)}')
    return api.analyze(event)


def health_handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    return api.health(event)

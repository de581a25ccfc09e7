"""
Health check utilities for the application.
"""

from typing import Any, Dict

from .cognito_client import CognitoClient
from .config import AppConfig
from .logging_config import get_logger
from .store import Store

logger = get_logger(__name__)


def get_health_status(store: Store, identity_provider: CognitoClient, config: AppConfig) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Returns:
        Dictionary with health status of each component
    """
    health_status = {}

    # Check the durable store
    try:
        health_status['store'] = {
            'healthy': store.ping(),
            'service': 'Amazon DynamoDB' if config.store_backend == 'dynamodb' else 'In-process store',
            'table': config.dynamodb.tokens_table
        }
    except Exception as e:
        health_status['store'] = {'healthy': False, 'service': 'Amazon DynamoDB', 'error': str(e)}

    # Check Cognito
    try:
        health_status['cognito'] = {
            'healthy': identity_provider.health_check(),
            'service': 'Amazon Cognito',
            'user_pool_id': config.cognito.user_pool_id
        }
    except Exception as e:
        health_status['cognito'] = {'healthy': False, 'service': 'Amazon Cognito', 'error': str(e)}

    return health_status


def check_health(store: Store, identity_provider: CognitoClient, config: AppConfig) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    health_status = get_health_status(store, identity_provider, config)
    all_healthy = all(status.get('healthy', False) for status in health_status.values())

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        logger.warning('Some system components are unhealthy')

    return all_healthy


def get_system_info(store: Store, identity_provider: CognitoClient, config: AppConfig) -> Dict[str, Any]:
    """Get system information and configuration."""
    return {
        'service_name': config.service_name,
        'version': config.version,
        'environment': config.environment,
        'configuration': {
            'store_backend': config.store_backend,
            'free_scan_limit': config.quota.free_scan_limit,
            'initial_free_tokens': config.quota.initial_free_tokens,
            'token_packs': sorted(config.purchases.token_packs),
            'aws_region': config.dynamodb.region
        },
        'health_status': get_health_status(store, identity_provider, config)
    }

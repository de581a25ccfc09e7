"""
Configuration management for AWS services and application settings.

The configuration is read from the environment once at process start and kept for the
life of the worker. Nothing refreshes it implicitly; ``scangate.handlers.reload()`` rebuilds
it together with the services built from it.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()


class ConfigError(Exception):
    """Raised when an environment value cannot be parsed."""
    pass


@dataclass
class DynamoDBConfig:
    """Configuration for the Amazon DynamoDB tables."""
    region: str
    tokens_table: str
    purchases_table: str
    purchases_user_index: str
    device_scans_table: str
    scan_history_table: str
    scan_history_timestamp_index: str
    connect_timeout: float
    read_timeout: float
    retry_attempts: int
    retry_delay: float
    endpoint_url: Optional[str] = None


@dataclass
class CognitoConfig:
    """Configuration for the Amazon Cognito user pool."""
    region: str
    user_pool_id: Optional[str]
    client_id: Optional[str]
    guest_handle_domain: str
    verify_tokens: bool
    connect_timeout: float
    read_timeout: float

    @property
    def issuer(self) -> Optional[str]:
        if not self.user_pool_id:
            return None
        return f'https://cognito-idp.{self.region}.amazonaws.com/{self.user_pool_id}'

    @property
    def jwks_url(self) -> Optional[str]:
        if not self.issuer:
            return None
        return f'{self.issuer}/.well-known/jwks.json'


@dataclass
class S3Config:
    """Configuration for the image bucket."""
    region: str
    bucket: Optional[str]
    image_prefix: str


@dataclass
class QuotaConfig:
    """Free tier limits."""
    free_scan_limit: int
    initial_free_tokens: int


@dataclass
class TokenPack:
    """A purchasable bundle of tokens."""
    pack_id: str
    tokens: int
    price: float


@dataclass
class PurchaseConfig:
    """Configuration for token pack purchases."""
    token_packs: Dict[str, TokenPack]
    enforce_idempotency: bool


@dataclass
class ScanHistoryConfig:
    """Configuration for scan history records."""
    retention_days: int
    default_page_size: int
    max_page_size: int


@dataclass
class DetectionConfig:
    """Detection service endpoint and score thresholds, expressed as fractions of 1."""
    authentic_threshold: float
    deepfake_threshold: float
    api_url: str = 'https://api.sightengine.com/1.0/check.json'
    api_user: Optional[str] = None
    api_secret: Optional[str] = None
    timeout: float = 60.0

    @property
    def is_configured(self) -> bool:
        return bool(self.api_user and self.api_secret)


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    store_backend: str
    dynamodb: DynamoDBConfig
    cognito: CognitoConfig
    s3: S3Config
    quota: QuotaConfig
    purchases: PurchaseConfig
    scan_history: ScanHistoryConfig
    detection: DetectionConfig
    service_name: str = 'ScanGate'
    version: str = '1.0.0'
    extra: Dict[str, str] = field(default_factory=dict)

    @property
    def is_production(self) -> bool:
        return self.environment in ('prod', 'production')


DEFAULT_TOKEN_PACKS = {
    'pack_15': {'tokens': 15, 'price': 4.99},
    'pack_50': {'tokens': 50, 'price': 9.99},
    'pack_100': {'tokens': 100, 'price': 16.99},
}


def _int_env(name: str, default: str, minimum: int = 0) -> int:
    raw = os.getenv(name, default)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f'{name} must be an integer, got {raw!r}')
    if value < minimum:
        raise ConfigError(f'{name} must be >= {minimum}, got {value}')
    return value


def _float_env(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ConfigError(f'{name} must be a number, got {raw!r}')


def _bool_env(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def parse_token_packs(raw: Optional[str]) -> Dict[str, TokenPack]:
    """Parse the ``TOKEN_PACKS`` JSON object, falling back to the default pack table.

    Args:
        raw: JSON object mapping pack id to ``{"tokens": int, "price": float}``

    Returns:
        Dictionary of pack id to TokenPack

    Raises:
        ConfigError: If the value is not a well-formed pack table
    """
    table = DEFAULT_TOKEN_PACKS
    if raw:
        try:
            table = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigError(f'TOKEN_PACKS is not valid JSON: {e}')
        if not isinstance(table, dict) or not table:
            raise ConfigError('TOKEN_PACKS must be a non-empty JSON object')

    packs = {}
    for pack_id, entry in table.items():
        try:
            tokens = int(entry['tokens'])
            price = float(entry['price'])
        except (KeyError, TypeError, ValueError):
            raise ConfigError(f'Token pack {pack_id!r} needs integer tokens and numeric price')
        if tokens <= 0:
            raise ConfigError(f'Token pack {pack_id!r} must grant at least one token')
        packs[pack_id] = TokenPack(pack_id=pack_id, tokens=tokens, price=price)
    return packs


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', os.getenv('STAGE', 'development'))
    region = os.getenv('AWS_REGION', 'us-east-1')
    connect_timeout = _float_env('AWS_CONNECT_TIMEOUT', '3')
    read_timeout = _float_env('AWS_READ_TIMEOUT', '5')

    # DynamoDB configuration
    dynamodb_config = DynamoDBConfig(region=region,
                                     tokens_table=os.getenv('TOKENS_TABLE', 'image-analysis-dev-tokens'),
                                     purchases_table=os.getenv('PURCHASES_TABLE', 'image-analysis-dev-purchases'),
                                     purchases_user_index=os.getenv('PURCHASES_USER_INDEX', 'userId-purchaseDate-index'),
                                     device_scans_table=os.getenv('DEVICE_SCANS_TABLE', 'image-analysis-dev-device-scans'),
                                     scan_history_table=os.getenv('SCAN_HISTORY_TABLE', 'image-analysis-dev-scan-history'),
                                     scan_history_timestamp_index=os.getenv('SCAN_HISTORY_TIMESTAMP_INDEX',
                                                                            'userId-timestamp-index'),
                                     connect_timeout=connect_timeout,
                                     read_timeout=read_timeout,
                                     retry_attempts=_int_env('AWS_RETRY_ATTEMPTS', '3', minimum=1),
                                     retry_delay=_float_env('AWS_RETRY_DELAY', '0.2'),
                                     endpoint_url=os.getenv('DYNAMODB_ENDPOINT_URL') or None)

    # Cognito configuration
    cognito_config = CognitoConfig(region=os.getenv('COGNITO_AWS_REGION', region),
                                   user_pool_id=os.getenv('COGNITO_USER_POOL_ID') or None,
                                   client_id=os.getenv('COGNITO_USER_POOL_CLIENT_ID') or None,
                                   guest_handle_domain=os.getenv('GUEST_HANDLE_DOMAIN', 'temp.scangate.app'),
                                   verify_tokens=_bool_env('COGNITO_VERIFY_TOKENS', 'false'),
                                   connect_timeout=connect_timeout,
                                   read_timeout=read_timeout)

    # S3 configuration
    s3_config = S3Config(region=region,
                         bucket=os.getenv('S3_BUCKET') or None,
                         image_prefix=os.getenv('S3_IMAGE_PREFIX', 'images/'))

    # Free tier configuration, DEVICE_FREE_SCAN_LIMIT is the legacy name
    quota_config = QuotaConfig(free_scan_limit=_int_env('FREE_SCAN_LIMIT', os.getenv('DEVICE_FREE_SCAN_LIMIT', '5')),
                               initial_free_tokens=_int_env('INITIAL_FREE_TOKENS', '5'))

    purchase_config = PurchaseConfig(token_packs=parse_token_packs(os.getenv('TOKEN_PACKS')),
                                     enforce_idempotency=_bool_env('ENFORCE_PURCHASE_IDEMPOTENCY', 'true'))

    scan_history_config = ScanHistoryConfig(retention_days=_int_env('SCAN_HISTORY_RETENTION_DAYS', '365', minimum=1),
                                            default_page_size=_int_env('SCAN_HISTORY_PAGE_SIZE', '50', minimum=1),
                                            max_page_size=_int_env('SCAN_HISTORY_MAX_PAGE_SIZE', '100', minimum=1))

    # Thresholds are configured as percentages
    detection_config = DetectionConfig(authentic_threshold=_float_env('DEEPFAKE_THRESHOLD_AUTHENTIC', '5') / 100,
                                       deepfake_threshold=_float_env('DEEPFAKE_THRESHOLD_DEEPFAKE', '40') / 100,
                                       api_url=os.getenv('SIGHTENGINE_API_URL',
                                                         'https://api.sightengine.com/1.0/check.json'),
                                       api_user=(os.getenv('SIGHTENGINE_API_USER') or '').strip() or None,
                                       api_secret=(os.getenv('SIGHTENGINE_API_SECRET') or '').strip() or None,
                                       timeout=_float_env('SIGHTENGINE_TIMEOUT', '60'))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     store_backend=os.getenv('STORE_BACKEND', 'dynamodb').lower(),
                     dynamodb=dynamodb_config,
                     cognito=cognito_config,
                     s3=s3_config,
                     quota=quota_config,
                     purchases=purchase_config,
                     scan_history=scan_history_config,
                     detection=detection_config)


# Global configuration instance
config = load_config()


def reload_config() -> AppConfig:
    """Rebuild the global configuration from the current environment."""
    global config
    config = load_config()
    return config

"""
Shared fixtures: in-memory store, fake identity provider and a config factory.
"""

import itertools
import json
import threading
from typing import Any, Dict, Optional

import jwt
import pytest

from scangate.api import ApiHandlers, build_services
from scangate.models.core import Account, AuthChallenge, AuthResult, AuthTokens
from scangate.services.device_quota import DeviceQuotaTracker
from scangate.services.guest_provisioner import GuestProvisioner
from scangate.services.identity_resolver import IdentityResolver
from scangate.services.purchases import PurchaseService
from scangate.services.scan_records import ScanRecordStore
from scangate.services.token_ledger import TokenLedger
from scangate.utils.cognito_client import (NEW_PASSWORD_REQUIRED, AccountExistsError, CognitoError,
                                           CredentialRejectedError)
from scangate.utils.config import (AppConfig, CognitoConfig, DetectionConfig, DynamoDBConfig, PurchaseConfig,
                                   QuotaConfig, S3Config, ScanHistoryConfig, parse_token_packs)
from scangate.utils.detection_client import DetectionService
from scangate.utils.memory_store import MemoryStore
from scangate.utils.s3_client import S3Error, content_key
from scangate.utils.store import StoreUnavailableError

SIGNING_KEY = 'test-signing-key-that-is-long-enough-for-hs256'


def make_token(claims: Dict[str, Any]) -> str:
    """Bearer credential carrying the given claims."""
    return jwt.encode(claims, SIGNING_KEY, algorithm='HS256')


def make_config(free_scan_limit: int = 5,
                initial_free_tokens: int = 5,
                enforce_idempotency: bool = True,
                environment: str = 'test',
                default_page_size: int = 50,
                max_page_size: int = 100) -> AppConfig:
    """AppConfig for the in-memory backend, independent of the process environment."""
    return AppConfig(environment=environment,
                     log_level='DEBUG',
                     store_backend='memory',
                     dynamodb=DynamoDBConfig(region='us-east-1',
                                             tokens_table='tokens',
                                             purchases_table='purchases',
                                             purchases_user_index='userId-purchaseDate-index',
                                             device_scans_table='device-scans',
                                             scan_history_table='scan-history',
                                             scan_history_timestamp_index='userId-timestamp-index',
                                             connect_timeout=1,
                                             read_timeout=1,
                                             retry_attempts=2,
                                             retry_delay=0),
                     cognito=CognitoConfig(region='us-east-1',
                                           user_pool_id='us-east-1_TestPool',
                                           client_id='test-client',
                                           guest_handle_domain='temp.test',
                                           verify_tokens=False,
                                           connect_timeout=1,
                                           read_timeout=1),
                     s3=S3Config(region='us-east-1', bucket='test-bucket', image_prefix='images/'),
                     quota=QuotaConfig(free_scan_limit=free_scan_limit, initial_free_tokens=initial_free_tokens),
                     purchases=PurchaseConfig(token_packs=parse_token_packs(None),
                                              enforce_idempotency=enforce_idempotency),
                     scan_history=ScanHistoryConfig(retention_days=365,
                                                    default_page_size=default_page_size,
                                                    max_page_size=max_page_size),
                     detection=DetectionConfig(authentic_threshold=0.05, deepfake_threshold=0.40))


class FlakyStore(MemoryStore):
    """MemoryStore whose named operations raise StoreUnavailableError."""

    def __init__(self, key_schema):
        super().__init__(key_schema)
        self.failing = set()

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.failing:
            raise StoreUnavailableError(f'{operation} unavailable')

    def get_item(self, table, key):
        self._maybe_fail('get_item')
        return super().get_item(table, key)

    def put_item(self, table, item, unique_on=()):
        self._maybe_fail('put_item')
        return super().put_item(table, item, unique_on)

    def update_item(self, table, key, update):
        self._maybe_fail('update_item')
        return super().update_item(table, key, update)

    def query(self, table, key_name, key_value, limit, start_key=None, descending=False, index_name=None,
              sort_key=None):
        self._maybe_fail('query')
        return super().query(table, key_name, key_value, limit, start_key, descending, index_name, sort_key)

    def transact_write(self, operations):
        self._maybe_fail('transact_write')
        return super().transact_write(operations)

    def ping(self):
        return 'ping' not in self.failing


class FakeIdentityProvider:
    """Thread-safe stand-in for the Cognito adapter.

    Handles are unique, passwords are checked, and a temporary password answers sign-in
    with a challenge the way Cognito's FORCE_CHANGE_PASSWORD status does.

    challenge_mode:
        'session': NEW_PASSWORD_REQUIRED with a session while the password is temporary
        'sessionless': NEW_PASSWORD_REQUIRED reported without a session
        'always': every sign-in and every challenge answer returns another challenge
        'mfa': every sign-in returns an SMS_MFA challenge
        None: temporary passwords sign in directly
    """

    def __init__(self, challenge_mode: Optional[str] = 'session'):
        self.challenge_mode = challenge_mode
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.created = 0
        self.calls = []
        self.before_create = None
        self.lookup_error: Optional[Exception] = None
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def add_account(self, handle: str, credential: str = 'initial-Passw0rd', permanent: bool = True) -> Account:
        with self._lock:
            if handle not in self.accounts:
                self.accounts[handle] = {
                    'sub': f'sub-{next(self._ids)}',
                    'credential': credential,
                    'permanent': permanent,
                    'attributes': {'email': handle},
                }
            return self._account(handle)

    def _account(self, handle: str) -> Account:
        entry = self.accounts[handle]
        return Account(subject_id=entry['sub'],
                       handle=handle,
                       is_guest=entry['attributes'].get('custom:is_guest') == 'true')

    def _tokens(self, handle: str) -> AuthResult:
        sub = self.accounts[handle]['sub']
        token = make_token({'sub': sub, 'cognito:username': handle})
        return AuthResult(tokens=AuthTokens(access_token=token, id_token=token, refresh_token='refresh', expires_in=3600))

    def _challenge(self, name: str, handle: str) -> AuthResult:
        session = f'session-{self.accounts[handle]["credential"]}'
        return AuthResult(challenge=AuthChallenge(name=name, session=session))

    def find_by_attribute(self, attribute: str, value: str) -> Optional[Account]:
        self.calls.append('find_by_attribute')
        if self.lookup_error is not None:
            raise self.lookup_error
        with self._lock:
            for handle, entry in self.accounts.items():
                if entry['attributes'].get(attribute) == value:
                    return self._account(handle)
        return None

    def create_anonymous_account(self, handle: str, attributes: Dict[str, str], temporary_credential: str) -> Account:
        self.calls.append('create_anonymous_account')
        if self.before_create is not None:
            self.before_create(handle)
        with self._lock:
            if handle in self.accounts:
                raise AccountExistsError(f'User account already exists: {handle}')
            self.created += 1
            self.accounts[handle] = {
                'sub': f'sub-{next(self._ids)}',
                'credential': temporary_credential,
                'permanent': False,
                'attributes': dict(attributes),
            }
            return self._account(handle)

    def set_credential(self, handle: str, credential: str, permanent: bool) -> None:
        self.calls.append('set_credential')
        with self._lock:
            if handle not in self.accounts:
                raise CognitoError(f'User does not exist: {handle}')
            self.accounts[handle]['credential'] = credential
            self.accounts[handle]['permanent'] = permanent

    def authenticate(self, handle: str, credential: str) -> AuthResult:
        self.calls.append('authenticate')
        with self._lock:
            entry = self.accounts[handle]
            if entry['credential'] != credential:
                raise CredentialRejectedError('Incorrect username or password.')
            if self.challenge_mode == 'mfa':
                return self._challenge('SMS_MFA', handle)
            if self.challenge_mode == 'always':
                return self._challenge(NEW_PASSWORD_REQUIRED, handle)
            if not entry['permanent'] and self.challenge_mode == 'session':
                return self._challenge(NEW_PASSWORD_REQUIRED, handle)
            if not entry['permanent'] and self.challenge_mode == 'sessionless':
                return AuthResult(challenge=AuthChallenge(name=NEW_PASSWORD_REQUIRED))
            return self._tokens(handle)

    def respond_to_challenge(self, challenge: AuthChallenge, handle: str, new_credential: str) -> AuthResult:
        self.calls.append('respond_to_challenge')
        with self._lock:
            entry = self.accounts[handle]
            if challenge.session != f'session-{entry["credential"]}':
                raise CredentialRejectedError('Invalid session for the user.')
            entry['credential'] = new_credential
            if self.challenge_mode == 'always':
                return self._challenge(NEW_PASSWORD_REQUIRED, handle)
            entry['permanent'] = True
            return self._tokens(handle)

    def health_check(self) -> bool:
        return True


class FakeObjectStore:
    """Content-addressed object store keeping bytes in memory."""

    def __init__(self):
        self.objects = {}
        self.fail = False

    def put(self, data, content_type, extension):
        if self.fail:
            raise S3Error('bucket unavailable')
        key = content_key(data, extension)
        self.objects[key] = data
        return f'https://test-bucket.s3.us-east-1.amazonaws.com/{key}'


class FixedDetector(DetectionService):
    """Returns a fixed score, or raises when score is an exception."""

    def __init__(self, score):
        self.score = score
        self.calls = []

    def analyze(self, content_ref):
        self.calls.append(content_ref)
        if isinstance(self.score, Exception):
            raise self.score
        return self.score


def event(method, path, body=None, headers=None, query=None, path_parameters=None):
    """API Gateway proxy event."""
    return {
        'httpMethod': method,
        'path': path,
        'headers': headers or {},
        'queryStringParameters': query,
        'pathParameters': path_parameters,
        'body': body if body is None or isinstance(body, str) else json.dumps(body),
        'requestContext': {'requestId': 'req-123'},
    }


def bearer(subject_id):
    return {'Authorization': f'Bearer {make_token({"sub": subject_id})}'}


def body_of(response):
    return json.loads(response['body'])


def build_api(config=None, detector=None, identity_provider=None):
    """ApiHandlers over an in-memory store and fake collaborators."""
    config = config or make_config()
    store = FlakyStore(MemoryStore.from_config(config.dynamodb).key_schema)
    services = build_services(config,
                              store=store,
                              identity_provider=identity_provider or FakeIdentityProvider(),
                              object_store=FakeObjectStore(),
                              detector=detector or FixedDetector(0.01),
                              resolver=IdentityResolver())
    return ApiHandlers(services)


@pytest.fixture
def app_config():
    return make_config()


@pytest.fixture
def store(app_config):
    return FlakyStore(MemoryStore.from_config(app_config.dynamodb).key_schema)


@pytest.fixture
def ledger(store, app_config):
    return TokenLedger(store, app_config.dynamodb)


@pytest.fixture
def quota_tracker(store, app_config):
    return DeviceQuotaTracker(store, app_config.dynamodb, app_config.quota)


@pytest.fixture
def records(store, app_config):
    return ScanRecordStore(store, app_config.dynamodb, app_config.scan_history)


@pytest.fixture
def purchases(store, ledger, app_config):
    return PurchaseService(store, ledger, app_config.dynamodb, app_config.purchases)


@pytest.fixture
def identity_provider():
    return FakeIdentityProvider()


@pytest.fixture
def provisioner(identity_provider, ledger, quota_tracker, app_config):
    return GuestProvisioner(identity_provider, ledger, quota_tracker, app_config.cognito, app_config.quota)


@pytest.fixture
def resolver():
    return IdentityResolver()

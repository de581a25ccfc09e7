"""
Request/response layer translating API Gateway proxy events into service calls.
"""

import base64
import binascii
import json
import traceback
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .models.core import ScanRecord
from .models.errors import ScanGateError, UnauthorizedError, ValidationError
from .services.device_quota import DeviceQuotaTracker
from .services.guest_provisioner import GuestProvisioner
from .services.identity_resolver import IdentityResolver, extract_bearer
from .services.purchases import PurchaseService
from .services.scan_gate import ScanGate
from .services.scan_records import ScanRecordStore
from .services.token_ledger import TokenLedger
from .utils.cognito_client import CognitoClient
from .utils.config import AppConfig
from .utils.detection_client import DetectionService, create_detector
from .utils.health_check import get_system_info
from .utils.json_utils import dumps, parse_body
from .utils.logging_config import get_logger
from .utils.s3_client import S3ObjectStore
from .utils.store import Store, create_store

logger = get_logger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'Content-Type,Authorization,X-Device-ID,Device-ID',
    'Access-Control-Allow-Methods': 'GET,POST,PATCH,PUT,OPTIONS',
    'Content-Type': 'application/json',
}

DEVICE_HEADERS = ('x-device-id', 'device-id')

CONFIRM_SIGN_UP_TRIGGER = 'PostConfirmation_ConfirmSignUp'


@dataclass
class Services:
    """Everything a worker needs, built once at process start."""
    config: AppConfig
    store: Store
    identity_provider: Any
    resolver: IdentityResolver
    ledger: TokenLedger
    quota_tracker: DeviceQuotaTracker
    provisioner: GuestProvisioner
    records: ScanRecordStore
    purchases: PurchaseService
    scan_gate: ScanGate


def build_services(config: AppConfig,
                   store: Optional[Store] = None,
                   identity_provider: Optional[Any] = None,
                   object_store: Optional[S3ObjectStore] = None,
                   detector: Optional[DetectionService] = None,
                   resolver: Optional[IdentityResolver] = None) -> Services:
    """Wire the services from config, using the given collaborators where provided."""
    store = store or create_store(config)
    identity_provider = identity_provider or CognitoClient(config.cognito)
    detector = detector or create_detector(config.detection)
    resolver = resolver or IdentityResolver.from_config(config.cognito)
    ledger = TokenLedger(store, config.dynamodb)
    quota_tracker = DeviceQuotaTracker(store, config.dynamodb, config.quota)
    records = ScanRecordStore(store, config.dynamodb, config.scan_history)
    return Services(config=config,
                    store=store,
                    identity_provider=identity_provider,
                    resolver=resolver,
                    ledger=ledger,
                    quota_tracker=quota_tracker,
                    provisioner=GuestProvisioner(identity_provider, ledger, quota_tracker, config.cognito,
                                                 config.quota),
                    records=records,
                    purchases=PurchaseService(store, ledger, config.dynamodb, config.purchases),
                    scan_gate=ScanGate(ledger, quota_tracker, records, object_store or S3ObjectStore(config.s3),
                                       detector, config.detection))


def respond(status_code: int, body: Any) -> Dict[str, Any]:
    return {'statusCode': status_code, 'headers': dict(CORS_HEADERS), 'body': dumps(body) if body != '' else ''}


def _path(event: Dict[str, Any]) -> str:
    return event.get('path') or event.get('rawPath') or (event.get('requestContext') or {}).get('path') or ''


def _method(event: Dict[str, Any]) -> str:
    context = event.get('requestContext') or {}
    method = event.get('httpMethod') or context.get('httpMethod') or (context.get('http') or {}).get('method')
    return (method or 'GET').upper()


def _header(event: Dict[str, Any], names) -> Optional[str]:
    for name, value in (event.get('headers') or {}).items():
        if name.lower() in names and value:
            return value
    return None


def _scan_body(record: ScanRecord) -> Dict[str, Any]:
    return record.to_item()


class ApiHandlers:
    """One method per Lambda function, each taking a proxy event and returning a proxy response."""

    def __init__(self, services: Services):
        self.services = services

    def _dispatch(self, event: Dict[str, Any], route: Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]):
        if _method(event) == 'OPTIONS':
            return respond(200, '')
        try:
            body = parse_body(event.get('body'))
        except (ValueError, TypeError):
            return respond(400, {'success': False, 'error': 'Invalid JSON in request body'})

        try:
            return route(event, body)
        except ScanGateError as e:
            if e.status_code >= 500:
                logger.error(f'{type(e).__name__} on {_method(event)} {_path(event)}: {e.message}')
            return respond(e.status_code, e.to_body())
        except Exception as e:
            logger.error(f'Unexpected error on {_method(event)} {_path(event)}: {e}\n{traceback.format_exc()}')
            return respond(500, {'success': False, 'error': str(e) or 'Internal server error'})

    def _bearer_subject(self, event: Dict[str, Any]) -> str:
        subject = self.services.resolver.resolve(extract_bearer(event.get('headers')))
        if not subject:
            raise UnauthorizedError('Authorization header with a valid Bearer token is required')
        return subject

    def _any_subject(self, event: Dict[str, Any], body: Dict[str, Any]) -> str:
        subject = self.services.resolver.resolve_request(event, body)
        if not subject:
            raise UnauthorizedError('User ID is required')
        return subject

    # Guest provisioning

    def guest_signup(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return self._dispatch(event, self._guest_signup)

    def _guest_signup(self, event: Dict[str, Any], body: Dict[str, Any]) -> Dict[str, Any]:
        if _method(event) != 'POST':
            return respond(405, {'success': False, 'error': 'Method not allowed'})
        device_id = body.get('deviceId') or _header(event, DEVICE_HEADERS)
        if not device_id:
            raise ValidationError('Device ID is required for guest signup')
        session = self.services.provisioner.provision(device_id)
        return respond(200, session.to_response())

    # Registered account confirmation

    def post_confirmation(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Cognito post-confirmation trigger granting the free allotment to a new account.

        The device id comes from the ``deviceId`` client metadata passed to ConfirmSignUp,
        or the ``custom:device_id`` attribute. A failed grant does not block confirmation;
        the account can still sign in and purchase.

        Returns:
            The trigger event, as Cognito requires
        """
        if event.get('triggerSource') != CONFIRM_SIGN_UP_TRIGGER:
            return event
        request = event.get('request') or {}
        attributes = request.get('userAttributes') or {}
        subject_id = attributes.get('sub')
        if not subject_id:
            logger.warning(f'Post confirmation for {event.get("userName")} has no sub attribute')
            return event

        device_id = (request.get('clientMetadata') or {}).get('deviceId') or attributes.get('custom:device_id')
        try:
            bonus = self.services.provisioner.grant_registration_bonus(subject_id, device_id)
        except ScanGateError as e:
            logger.error(f'Error granting free tokens after confirmation of {subject_id}: {e.message}')
            return event
        logger.info(f'Confirmed {subject_id} on device {device_id}: {bonus}')
        return event

    # Token balance and purchases

    def subscription(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return self._dispatch(event, self._subscription)

    def _subscription(self, event: Dict[str, Any], body: Dict[str, Any]) -> Dict[str, Any]:
        method, path = _method(event), _path(event)
        ledger = self.services.ledger

        if method == 'GET':
            subject = self._any_subject(event, body)
            balance = ledger.display_balance(subject)
            return respond(200, {
                'success': True,
                'tokenBalance': balance,
                'scansRemaining': balance,
                'balanceAvailable': balance is not None,
            })

        if method != 'POST':
            return respond(405, {'success': False, 'error': 'Method not allowed'})

        if path.endswith('/check'):
            subject = self._any_subject(event, body)
            return respond(200, {'success': True, **ledger.can_consume(subject)})

        if path.endswith('/decrement'):
            balance = ledger.consume(self._bearer_subject(event))
            return respond(200, {
                'success': True,
                'message': 'Token decremented',
                'tokenBalance': balance,
                'scansRemaining': balance,
            })

        if path.endswith('/purchase'):
            subject = self._bearer_subject(event)
            result = self.services.purchases.purchase(subject, body.get('packId'), body.get('transactionId'))
            message = 'Purchase already processed' if result['duplicate'] else 'Tokens added successfully'
            return respond(200, {'success': True, 'message': message, **result})

        if path.endswith('/test/add-tokens') and not self.services.config.is_production:
            subject = body.get('userId') or self._any_subject(event, body)
            balance = self.services.purchases.add_test_tokens(subject, body.get('tokens'))
            return respond(200, {
                'success': True,
                'message': f'Successfully added {body.get("tokens")} tokens for testing',
                'tokenBalance': balance,
                'scansRemaining': balance,
                'tokensAdded': body.get('tokens'),
                'userId': subject,
            })

        return respond(404, {'success': False, 'error': 'Endpoint not found'})

    # Scan history

    def scan_history(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return self._dispatch(event, self._scan_history)

    def _scan_history(self, event: Dict[str, Any], body: Dict[str, Any]) -> Dict[str, Any]:
        method = _method(event)
        records = self.services.records

        if method == 'POST':
            subject = self._bearer_subject(event)
            content_ref = body.get('contentRef') or body.get('s3Url')
            if not content_ref and not body.get('requestId'):
                raise ValidationError('Either contentRef or requestId is required')
            if not body.get('status'):
                raise ValidationError('Status is required')
            record = records.insert_if_absent(subject,
                                              status=body['status'],
                                              content_ref=content_ref,
                                              request_id=body.get('requestId'),
                                              score=body.get('score', body.get('deepfakeScore')),
                                              success=body.get('success', True),
                                              ai_probability=body.get('aiProbability'),
                                              human_probability=body.get('humanProbability'),
                                              source=body.get('source'),
                                              label=body.get('label'),
                                              note=body.get('note'))
            return respond(201, {'success': True, 'scan': _scan_body(record)})

        if method in ('PATCH', 'PUT'):
            subject = self._bearer_subject(event)
            scan_id = (event.get('pathParameters') or {}).get('scanId') or body.get('scanId')
            if not scan_id:
                raise ValidationError('Scan ID is required')
            record = records.update(subject, scan_id, body)
            return respond(200, {'success': True, 'scan': _scan_body(record)})

        if method == 'GET':
            subject = self._any_subject(event, body)
            query = event.get('queryStringParameters') or {}
            try:
                limit = int(query['limit']) if query.get('limit') else None
            except ValueError:
                raise ValidationError('Invalid limit')
            page = records.list(subject, limit, query.get('cursor'))
            return respond(200, {
                'success': True,
                'scans': [_scan_body(record) for record in page['scans']],
                'count': page['count'],
                'hasMore': page['hasMore'],
                'cursor': page['cursor'],
            })

        return respond(405, {'success': False, 'error': 'Method not allowed'})

    # Gated scan

    def analyze(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return self._dispatch(event, self._analyze)

    def _analyze(self, event: Dict[str, Any], body: Dict[str, Any]) -> Dict[str, Any]:
        if _method(event) != 'POST':
            return respond(405, {'success': False, 'error': 'Method not allowed'})
        subject = self._bearer_subject(event)

        raw = body.get('image') or ''
        if not isinstance(raw, str):
            raise ValidationError('Image must be a base64 encoded string')
        content_type = body.get('contentType')
        if raw.startswith('data:') and ',' in raw:
            header, raw = raw.split(',', 1)
            content_type = content_type or header[5:].split(';')[0]
        try:
            image = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError('Image must be base64 encoded')

        request_id = (event.get('requestContext') or {}).get('requestId')
        result = self.services.scan_gate.scan(subject,
                                              image,
                                              content_type,
                                              device_id=_header(event, DEVICE_HEADERS) or body.get('deviceId'),
                                              request_id=request_id)
        return respond(200, {'success': True, **result, 'scan': _scan_body(result['scan'])})

    # Health

    def health(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return self._dispatch(event, self._health)

    def _health(self, event: Dict[str, Any], body: Dict[str, Any]) -> Dict[str, Any]:
        services = self.services
        info = get_system_info(services.store, services.identity_provider, services.config)
        healthy = all(status.get('healthy', False) for status in info['health_status'].values())
        return respond(200 if healthy else 503, {'success': healthy, **info})


def event_summary(event: Dict[str, Any]) -> str:
    """Loggable summary of an event, without headers that carry credentials."""
    return json.dumps({'method': _method(event), 'path': _path(event)})

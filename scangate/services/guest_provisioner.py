"""
Guest Provisioning Service for anonymous, device-bound accounts.

Provisioning is an explicit state machine:

    LOOKUP ──found──> REAUTHENTICATE ──> CHECK_QUOTA ──> GRANT_INITIAL_TOKENS ──> AUTHENTICATE ──> TERMINAL
      │                     ^                 │                  ^                  │      ^
      └──not found──> CHECK_QUOTA ──> CREATE ─┴──created─────────┘                  v      │
                                         └──already exists──> REAUTHENTICATE   RESPOND_TO_CHALLENGE

Concurrent and retried requests for one device converge without locks: the identity
provider refuses a second account for the derived handle (collapsed into REAUTHENTICATE),
and the initial grant is a conditional create of the ledger row, applied at most once.
Workers re-authenticating the same account replace each other's credential, so a rejected
sign-in returns to REAUTHENTICATE, at most MAX_CREDENTIAL_RESETS times.
"""

import re
import secrets
import string
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from ..models.core import Account, AuthChallenge, AuthResult, AuthTokens, GuestSession
from ..models.errors import ScanGateError, UnexpectedChallengeError, UpstreamUnavailableError, ValidationError
from ..utils.cognito_client import (NEW_PASSWORD_REQUIRED, AccountExistsError, CognitoError, CognitoUnavailableError,
                                    CredentialRejectedError)
from ..utils.config import CognitoConfig, QuotaConfig
from ..utils.logging_config import get_logger
from .device_quota import DeviceQuotaTracker
from .token_ledger import TokenLedger

logger = get_logger(__name__)

MAX_CHALLENGE_RESPONSES = 1
MAX_CREDENTIAL_RESETS = 3
CREDENTIAL_LENGTH = 16
CREDENTIAL_ALPHABET = string.ascii_letters + string.digits + '!@#$%^&*'


class ProvisioningState(Enum):
    """States of one guest provisioning invocation."""
    LOOKUP = auto()
    REAUTHENTICATE = auto()
    CHECK_QUOTA = auto()
    CREATE = auto()
    GRANT_INITIAL_TOKENS = auto()
    AUTHENTICATE = auto()
    RESPOND_TO_CHALLENGE = auto()
    TERMINAL = auto()


@dataclass
class ProvisioningContext:
    """Everything one invocation learns on its way to TERMINAL."""
    device_id: str
    handle: str
    credential: str
    account: Optional[Account] = None
    created: bool = False
    quota_checked: bool = False
    device_exhausted: bool = False
    balance: Optional[int] = None
    tokens: Optional[AuthTokens] = None
    challenge: Optional[AuthChallenge] = None
    pending_result: Optional[AuthResult] = None
    challenge_responses: int = 0
    credential_resets: int = 0
    trace: List[ProvisioningState] = field(default_factory=list)


def derive_guest_handle(device_id: str, domain: str) -> str:
    """Stable provider username for the device's guest account."""
    return f'guest-{re.sub(r"[^a-zA-Z0-9]", "-", device_id)}@{domain}'


def generate_credential(length: int = CREDENTIAL_LENGTH) -> str:
    """Random password with at least one upper case letter, lower case letter and digit."""
    required = [secrets.choice(string.ascii_uppercase),
                secrets.choice(string.ascii_lowercase),
                secrets.choice(string.digits)]
    rest = [secrets.choice(CREDENTIAL_ALPHABET) for _ in range(length - len(required))]
    characters = required + rest
    secrets.SystemRandom().shuffle(characters)
    return ''.join(characters)


def _provider_failure(action: str, error: CognitoError) -> ScanGateError:
    logger.error(f'Identity provider failed to {action}: {error}')
    if isinstance(error, CognitoUnavailableError):
        return UpstreamUnavailableError(f'Identity provider unavailable while trying to {action}')
    return ScanGateError(f'Failed to {action}: {error}')


class GuestProvisioner:
    """Create or reuse the guest account bound to a device and sign it in."""

    def __init__(self,
                 identity_provider: Any,
                 ledger: TokenLedger,
                 quota_tracker: DeviceQuotaTracker,
                 cognito_config: CognitoConfig,
                 quota_config: QuotaConfig,
                 credential_factory: Callable[[], str] = generate_credential):
        """
        Initialize the provisioner.

        Args:
            identity_provider: Object with the CognitoClient account and auth methods
            ledger: Token ledger used for the initial allotment
            quota_tracker: Device quota tracker consulted before granting
            cognito_config: Supplies the guest handle domain
            quota_config: Supplies the initial free token count
            credential_factory: Generates the per-invocation password
        """
        self.identity_provider = identity_provider
        self.ledger = ledger
        self.quota_tracker = quota_tracker
        self.handle_domain = cognito_config.guest_handle_domain
        self.initial_free_tokens = quota_config.initial_free_tokens
        self.credential_factory = credential_factory
        self._transitions: Dict[ProvisioningState, Callable[[ProvisioningContext], ProvisioningState]] = {
            ProvisioningState.LOOKUP: self._lookup,
            ProvisioningState.REAUTHENTICATE: self._reauthenticate,
            ProvisioningState.CHECK_QUOTA: self._check_quota,
            ProvisioningState.CREATE: self._create,
            ProvisioningState.GRANT_INITIAL_TOKENS: self._grant_initial_tokens,
            ProvisioningState.AUTHENTICATE: self._authenticate,
            ProvisioningState.RESPOND_TO_CHALLENGE: self._respond_to_challenge,
        }

    def provision(self, device_id: str) -> GuestSession:
        """
        Return an authenticated guest session for the device.

        Raises:
            ValidationError: If device_id is missing
            UnexpectedChallengeError: If the provider challenges again after one response
            UpstreamUnavailableError: If the provider or the ledger is unavailable
        """
        ctx = self.run(device_id)
        return GuestSession(subject_id=ctx.account.subject_id,
                            tokens=ctx.tokens,
                            device_id=device_id,
                            device_limit_reached=ctx.device_exhausted,
                            token_balance=ctx.balance,
                            created=ctx.created)

    def run(self, device_id: str) -> ProvisioningContext:
        """Drive the state machine to TERMINAL and return the final context."""
        if not device_id or not str(device_id).strip():
            raise ValidationError('Device ID is required for guest signup')

        ctx = ProvisioningContext(device_id=device_id,
                                  handle=derive_guest_handle(device_id, self.handle_domain),
                                  credential=self.credential_factory())
        state = ProvisioningState.LOOKUP
        while state is not ProvisioningState.TERMINAL:
            ctx.trace.append(state)
            state = self._transitions[state](ctx)

        logger.info(f'Guest provisioned for device {device_id}: sub {ctx.account.subject_id}, '
                    f'created={ctx.created}, path={[s.name for s in ctx.trace]}')
        return ctx

    def _lookup(self, ctx: ProvisioningContext) -> ProvisioningState:
        try:
            ctx.account = self.identity_provider.find_by_attribute('email', ctx.handle)
        except CognitoError as e:
            # CREATE collapses onto an existing account anyway
            logger.warning(f'Could not check for existing guest {ctx.handle}: {e}')
            ctx.account = None
        return ProvisioningState.REAUTHENTICATE if ctx.account else ProvisioningState.CHECK_QUOTA

    def _reauthenticate(self, ctx: ProvisioningContext) -> ProvisioningState:
        # The previous password is unknown and may have expired
        if ctx.credential_resets:
            ctx.credential = self.credential_factory()
            ctx.challenge_responses = 0
        try:
            self.identity_provider.set_credential(ctx.account.handle, ctx.credential, permanent=False)
        except CognitoError as e:
            raise _provider_failure('reset the guest credential', e)
        if not ctx.quota_checked:
            return ProvisioningState.CHECK_QUOTA
        return ProvisioningState.GRANT_INITIAL_TOKENS

    def _check_quota(self, ctx: ProvisioningContext) -> ProvisioningState:
        ctx.device_exhausted = self.quota_tracker.is_exhausted(ctx.device_id)
        ctx.quota_checked = True
        return ProvisioningState.GRANT_INITIAL_TOKENS if ctx.account else ProvisioningState.CREATE

    def _create(self, ctx: ProvisioningContext) -> ProvisioningState:
        attributes = {
            'email': ctx.handle,
            'email_verified': 'true',
            'custom:device_id': ctx.device_id,
            'custom:is_guest': 'true',
        }
        try:
            ctx.account = self.identity_provider.create_anonymous_account(ctx.handle, attributes, ctx.credential)
        except AccountExistsError:
            logger.info(f'Guest {ctx.handle} was created concurrently, reusing it')
            try:
                ctx.account = self.identity_provider.find_by_attribute('email', ctx.handle)
            except CognitoError as e:
                raise _provider_failure('load the existing guest account', e)
            if ctx.account is None:
                raise UpstreamUnavailableError('Guest account exists but is not visible yet')
            return ProvisioningState.REAUTHENTICATE
        except CognitoError as e:
            raise _provider_failure('create the guest account', e)

        ctx.created = True
        return ProvisioningState.GRANT_INITIAL_TOKENS

    def _grant_initial_tokens(self, ctx: ProvisioningContext) -> ProvisioningState:
        allotment = 0 if ctx.device_exhausted else self.initial_free_tokens
        ctx.balance, granted = self.ledger.open_account(ctx.account.subject_id, allotment)
        if granted:
            logger.info(f'Granted {allotment} free tokens to guest {ctx.account.subject_id}')
        self.quota_tracker.link_account(ctx.device_id, ctx.account.subject_id)
        return ProvisioningState.AUTHENTICATE

    def _authenticate(self, ctx: ProvisioningContext) -> ProvisioningState:
        result = ctx.pending_result
        ctx.pending_result = None
        if result is None:
            try:
                result = self.identity_provider.authenticate(ctx.account.handle, ctx.credential)
            except CredentialRejectedError as e:
                return self._credential_rejected(ctx, e)
            except CognitoError as e:
                raise _provider_failure('sign in the guest', e)

        if result.tokens:
            ctx.tokens = result.tokens
            return ProvisioningState.TERMINAL

        challenge = result.challenge
        if challenge.name != NEW_PASSWORD_REQUIRED or ctx.challenge_responses >= MAX_CHALLENGE_RESPONSES:
            logger.error(f'Unexpected challenge {challenge.name} for guest {ctx.account.handle} '
                         f'after {ctx.challenge_responses} response(s)')
            raise UnexpectedChallengeError(f'Unexpected challenge: {challenge.name}')
        ctx.challenge = challenge
        return ProvisioningState.RESPOND_TO_CHALLENGE

    def _respond_to_challenge(self, ctx: ProvisioningContext) -> ProvisioningState:
        ctx.challenge_responses += 1
        handle = ctx.account.handle
        try:
            if ctx.challenge.session:
                ctx.pending_result = self.identity_provider.respond_to_challenge(ctx.challenge, handle, ctx.credential)
            else:
                # No session to answer, make the password permanent and sign in again
                self.identity_provider.set_credential(handle, ctx.credential, permanent=True)
                ctx.pending_result = self.identity_provider.authenticate(handle, ctx.credential)
        except CredentialRejectedError as e:
            return self._credential_rejected(ctx, e)
        except CognitoError as e:
            raise _provider_failure('answer the sign-in challenge', e)
        return ProvisioningState.AUTHENTICATE

    def _credential_rejected(self, ctx: ProvisioningContext, error: CognitoError) -> ProvisioningState:
        # Another worker reset the credential between our reset and sign-in
        if ctx.credential_resets >= MAX_CREDENTIAL_RESETS:
            raise _provider_failure('sign in the guest', error)
        ctx.credential_resets += 1
        logger.info(f'Credential for {ctx.account.handle} was replaced concurrently, '
                    f'resetting (attempt {ctx.credential_resets}/{MAX_CREDENTIAL_RESETS})')
        return ProvisioningState.REAUTHENTICATE

    def grant_registration_bonus(self, subject_id: str, device_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Apply the quota-gated initial allotment to a newly confirmed registered account.

        Returns:
            Dictionary with freeTokensGranted, deviceLimitReached and tokenBalance
        """
        exhausted = self.quota_tracker.is_exhausted(device_id)
        allotment = 0 if exhausted else self.initial_free_tokens
        balance, created = self.ledger.open_account(subject_id, allotment)
        self.quota_tracker.link_account(device_id, subject_id)
        return {
            'freeTokensGranted': created and allotment > 0,
            'deviceLimitReached': exhausted,
            'tokenBalance': balance,
        }

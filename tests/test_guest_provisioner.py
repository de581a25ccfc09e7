"""
Unit tests for guest provisioning.

Tests the state machine paths, idempotency under concurrent and repeated calls,
device-quota gating of the initial allotment and the bounded challenge handling.
"""

import string
from concurrent.futures import ThreadPoolExecutor

import pytest

from scangate.models.errors import ScanGateError, UnexpectedChallengeError, UpstreamUnavailableError, ValidationError
from scangate.services.guest_provisioner import (ProvisioningState, GuestProvisioner, derive_guest_handle,
                                                 generate_credential)
from scangate.services.identity_resolver import IdentityResolver
from scangate.utils.cognito_client import CognitoError, CognitoUnavailableError, CredentialRejectedError

from conftest import FakeIdentityProvider

S = ProvisioningState


def _provisioner(identity_provider, ledger, quota_tracker, app_config):
    return GuestProvisioner(identity_provider, ledger, quota_tracker, app_config.cognito, app_config.quota)


class RejectingProvider(FakeIdentityProvider):
    """Rejects the first N sign-ins as if another worker had replaced the password."""

    def __init__(self, rejections: int):
        super().__init__()
        self.rejections = rejections

    def authenticate(self, handle, credential):
        if self.rejections > 0:
            self.rejections -= 1
            self.calls.append('authenticate')
            raise CredentialRejectedError('Incorrect username or password.')
        return super().authenticate(handle, credential)


class TestHelpers:
    """Test handle derivation and credential generation."""

    def test_handle_is_stable_and_sanitised(self):
        assert derive_guest_handle('dev A/1', 'temp.test') == 'guest-dev-A-1@temp.test'
        assert derive_guest_handle('dev A/1', 'temp.test') == derive_guest_handle('dev A/1', 'temp.test')

    def test_credential_has_required_character_classes(self):
        for _ in range(20):
            credential = generate_credential()
            assert len(credential) == 16
            assert any(c in string.ascii_uppercase for c in credential)
            assert any(c in string.ascii_lowercase for c in credential)
            assert any(c in string.digits for c in credential)


class TestNewDevice:
    """Test first-time provisioning."""

    def test_creates_account_and_grants_initial_tokens(self, provisioner, identity_provider, ledger):
        session = provisioner.provision('dev-A')

        assert session.created is True
        assert session.token_balance == 5
        assert session.device_limit_reached is False
        assert identity_provider.created == 1
        assert ledger.balance_of(session.subject_id) == 5
        assert IdentityResolver().resolve(session.tokens.access_token) == session.subject_id

    def test_path_through_state_machine(self, provisioner):
        ctx = provisioner.run('dev-A')
        assert ctx.trace == [S.LOOKUP, S.CHECK_QUOTA, S.CREATE, S.GRANT_INITIAL_TOKENS, S.AUTHENTICATE,
                             S.RESPOND_TO_CHALLENGE, S.AUTHENTICATE]

    def test_seeds_guest_attributes(self, provisioner, identity_provider):
        provisioner.provision('dev-A')
        attributes = identity_provider.accounts['guest-dev-A@temp.test']['attributes']
        assert attributes['custom:device_id'] == 'dev-A'
        assert attributes['custom:is_guest'] == 'true'
        assert attributes['email_verified'] == 'true'

    def test_links_device_to_subject(self, provisioner, quota_tracker):
        session = provisioner.provision('dev-A')
        record = quota_tracker.get_record('dev-A')
        assert record.linked_account_ids == [session.subject_id]
        assert record.free_scans_used == 0

    def test_response_shape(self, provisioner):
        response = provisioner.provision('dev-A').to_response()
        assert response['success'] is True
        assert response['isGuest'] is True
        assert response['deviceId'] == 'dev-A'
        assert response['deviceLimitReached'] is False
        assert response['tokenBalance'] == 5
        assert response['accessToken'] and response['idToken']
        assert response['expiresIn'] == 3600

    @pytest.mark.parametrize('device_id', ['', None, '   '])
    def test_missing_device_id(self, provisioner, device_id):
        with pytest.raises(ValidationError):
            provisioner.provision(device_id)


class TestReturningDevice:
    """Test repeated provisioning for the same device."""

    def test_second_call_reuses_account_without_granting_again(self, provisioner, identity_provider, ledger):
        first = provisioner.provision('dev-A')
        second = provisioner.provision('dev-A')

        assert second.subject_id == first.subject_id
        assert second.created is False
        assert identity_provider.created == 1
        assert ledger.balance_of(first.subject_id) == 5

    def test_reauthentication_path(self, provisioner):
        provisioner.provision('dev-A')
        ctx = provisioner.run('dev-A')
        assert ctx.trace[:4] == [S.LOOKUP, S.REAUTHENTICATE, S.CHECK_QUOTA, S.GRANT_INITIAL_TOKENS]
        assert S.CREATE not in ctx.trace

    def test_spent_tokens_are_not_topped_up(self, provisioner, ledger):
        session = provisioner.provision('dev-A')
        ledger.consume(session.subject_id)
        ledger.consume(session.subject_id)
        assert provisioner.provision('dev-A').token_balance == 3

    def test_reauthentication_heals_missing_grant(self, provisioner, identity_provider, ledger):
        account = identity_provider.add_account('guest-dev-A@temp.test')
        session = provisioner.provision('dev-A')
        assert session.subject_id == account.subject_id
        assert ledger.balance_of(account.subject_id) == 5


class TestConcurrency:
    """Test convergence of concurrent provisioning for one device."""

    def test_two_parallel_calls_converge(self, provisioner, identity_provider, ledger):
        with ThreadPoolExecutor(max_workers=2) as pool:
            sessions = list(pool.map(provisioner.provision, ['dev-A', 'dev-A']))

        assert sessions[0].subject_id == sessions[1].subject_id
        assert identity_provider.created == 1
        assert ledger.balance_of(sessions[0].subject_id) == 5

    def test_many_parallel_calls_grant_once(self, provisioner, identity_provider, ledger):
        with ThreadPoolExecutor(max_workers=8) as pool:
            sessions = list(pool.map(provisioner.provision, ['dev-A'] * 8))

        assert len({session.subject_id for session in sessions}) == 1
        assert identity_provider.created == 1
        assert ledger.balance_of(sessions[0].subject_id) == 5

    def test_create_race_collapses_into_reauthentication(self, provisioner, identity_provider, ledger):
        # Another worker creates the account between our lookup and create
        identity_provider.before_create = identity_provider.add_account
        ctx = provisioner.run('dev-A')

        assert ctx.trace[:5] == [S.LOOKUP, S.CHECK_QUOTA, S.CREATE, S.REAUTHENTICATE, S.GRANT_INITIAL_TOKENS]
        assert ctx.created is False
        assert identity_provider.created == 0
        assert ledger.balance_of(ctx.account.subject_id) == 5

    def test_rejected_credential_is_reset(self, ledger, quota_tracker, app_config):
        provider = RejectingProvider(rejections=1)
        ctx = _provisioner(provider, ledger, quota_tracker, app_config).run('dev-A')

        assert ctx.credential_resets == 1
        assert ctx.trace.count(S.REAUTHENTICATE) == 1
        assert ctx.tokens is not None
        assert ledger.balance_of(ctx.account.subject_id) == 5

    def test_credential_resets_are_bounded(self, ledger, quota_tracker, app_config):
        provider = RejectingProvider(rejections=100)
        with pytest.raises(ScanGateError) as exc_info:
            _provisioner(provider, ledger, quota_tracker, app_config).provision('dev-A')
        assert exc_info.value.status_code == 500
        assert provider.calls.count('authenticate') == 4


class TestQuotaGating:
    """Test the initial allotment against the device quota."""

    def test_exhausted_device_gets_no_free_tokens(self, provisioner, quota_tracker, ledger):
        for _ in range(5):
            quota_tracker.record_scan('dev-A', 'old-sub')

        session = provisioner.provision('dev-A')
        assert session.device_limit_reached is True
        assert session.token_balance == 0
        assert ledger.balance_of(session.subject_id) == 0
        assert 'purchase a scan pack' in session.to_response()['message']

    def test_quota_read_failure_fails_open(self, provisioner, quota_tracker, store):
        for _ in range(5):
            quota_tracker.record_scan('dev-A', 'old-sub')
        store.failing.add('get_item')

        ctx = provisioner.run('dev-A')
        assert ctx.device_exhausted is False

    def test_grant_failure_fails_closed(self, provisioner, store):
        store.failing.add('put_item')
        with pytest.raises(UpstreamUnavailableError):
            provisioner.provision('dev-A')

    def test_registration_bonus(self, provisioner, ledger):
        result = provisioner.grant_registration_bonus('registered-1', 'dev-B')
        assert result == {'freeTokensGranted': True, 'deviceLimitReached': False, 'tokenBalance': 5}
        again = provisioner.grant_registration_bonus('registered-1', 'dev-B')
        assert again['freeTokensGranted'] is False
        assert ledger.balance_of('registered-1') == 5

    def test_registration_bonus_on_exhausted_device(self, provisioner, quota_tracker):
        for _ in range(5):
            quota_tracker.record_scan('dev-B', 'old-sub')
        result = provisioner.grant_registration_bonus('registered-1', 'dev-B')
        assert result == {'freeTokensGranted': False, 'deviceLimitReached': True, 'tokenBalance': 0}


class TestChallenges:
    """Test the one allowed challenge response."""

    def test_no_challenge(self, ledger, quota_tracker, app_config):
        ctx = _provisioner(FakeIdentityProvider(challenge_mode=None), ledger, quota_tracker, app_config).run('dev-A')
        assert S.RESPOND_TO_CHALLENGE not in ctx.trace
        assert ctx.tokens is not None

    def test_sessionless_challenge_sets_permanent_credential(self, ledger, quota_tracker, app_config):
        provider = FakeIdentityProvider(challenge_mode='sessionless')
        ctx = _provisioner(provider, ledger, quota_tracker, app_config).run('dev-A')

        assert ctx.trace[-3:] == [S.AUTHENTICATE, S.RESPOND_TO_CHALLENGE, S.AUTHENTICATE]
        assert provider.accounts[ctx.handle]['permanent'] is True
        assert 'respond_to_challenge' not in provider.calls

    def test_second_challenge_is_unexpected(self, ledger, quota_tracker, app_config):
        provider = FakeIdentityProvider(challenge_mode='always')
        with pytest.raises(UnexpectedChallengeError) as exc_info:
            _provisioner(provider, ledger, quota_tracker, app_config).provision('dev-A')
        assert exc_info.value.status_code == 500
        assert provider.calls.count('respond_to_challenge') == 1

    def test_other_challenge_is_unexpected(self, ledger, quota_tracker, app_config):
        provider = FakeIdentityProvider(challenge_mode='mfa')
        with pytest.raises(UnexpectedChallengeError):
            _provisioner(provider, ledger, quota_tracker, app_config).provision('dev-A')
        assert 'respond_to_challenge' not in provider.calls


class TestProviderFailures:
    """Test identity provider error mapping."""

    def test_lookup_failure_is_treated_as_not_found(self, provisioner, identity_provider):
        identity_provider.lookup_error = CognitoError('ListUsers failed')
        session = provisioner.provision('dev-A')
        assert session.created is True

    def test_unavailable_provider_is_retryable(self, provisioner, identity_provider):
        def unavailable(*args, **kwargs):
            raise CognitoUnavailableError('timed out')

        identity_provider.create_anonymous_account = unavailable
        with pytest.raises(UpstreamUnavailableError):
            provisioner.provision('dev-A')

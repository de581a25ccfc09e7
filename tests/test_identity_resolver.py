"""
Unit tests for bearer credential resolution.
"""

import time
from types import SimpleNamespace

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from scangate.services.identity_resolver import IdentityResolver, JwksVerifier, extract_bearer
from scangate.utils.config import CognitoConfig

from conftest import make_config, make_token


class TestExtractBearer:
    """Test Authorization header parsing."""

    def test_bearer_prefix(self):
        assert extract_bearer({'Authorization': 'Bearer abc'}) == 'abc'

    def test_case_insensitive(self):
        assert extract_bearer({'authorization': 'bearer abc'}) == 'abc'

    def test_raw_token(self):
        assert extract_bearer({'Authorization': 'abc'}) == 'abc'

    @pytest.mark.parametrize('headers', [None, {}, {'Authorization': ''}, {'Authorization': 'Bearer '}])
    def test_missing(self, headers):
        assert extract_bearer(headers) is None


class TestResolve:
    """Test subject extraction without local verification."""

    def test_sub_claim(self, resolver):
        assert resolver.resolve(make_token({'sub': 'sub-1', 'username': 'someone'})) == 'sub-1'

    def test_username_fallbacks(self, resolver):
        assert resolver.resolve(make_token({'cognito:username': 'guest-1', 'username': 'other'})) == 'guest-1'
        assert resolver.resolve(make_token({'username': 'other'})) == 'other'

    def test_no_subject_claim(self, resolver):
        assert resolver.resolve(make_token({'email': 'a@b.c'})) is None

    @pytest.mark.parametrize('credential', [None, '', 'not-a-jwt', 'a.b.c'])
    def test_malformed(self, resolver, credential):
        assert resolver.resolve(credential) is None

    def test_request_prefers_bearer(self, resolver):
        event = {'headers': {'Authorization': f'Bearer {make_token({"sub": "sub-1"})}'},
                 'queryStringParameters': {'userId': 'someone-else'}}
        assert resolver.resolve_request(event) == 'sub-1'

    def test_request_falls_back_to_explicit_id(self, resolver):
        assert resolver.resolve_request({'queryStringParameters': {'userId': 'u-query'}}) == 'u-query'
        assert resolver.resolve_request({}, {'userId': 'u-body'}) == 'u-body'
        assert resolver.resolve_request({}, {'user_id': 'u-snake'}) == 'u-snake'
        assert resolver.resolve_request({}) is None


class TestJwksVerifier:
    """Test local RS256 verification against the user pool issuer."""

    @pytest.fixture
    def private_key(self):
        return rsa.generate_private_key(public_exponent=65537, key_size=2048)

    @pytest.fixture
    def verifying_resolver(self, private_key):
        cognito = make_config().cognito
        verifier = JwksVerifier(cognito)
        signing_key = SimpleNamespace(key=private_key.public_key())
        verifier.jwks_client = SimpleNamespace(get_signing_key_from_jwt=lambda token: signing_key)
        return IdentityResolver(verifier)

    def _sign(self, private_key, **claims):
        payload = {'iss': make_config().cognito.issuer, 'exp': int(time.time()) + 300, **claims}
        return jwt.encode(payload, private_key, algorithm='RS256', headers={'kid': 'k1'})

    def test_valid_credential(self, verifying_resolver, private_key):
        assert verifying_resolver.resolve(self._sign(private_key, sub='sub-1')) == 'sub-1'

    def test_wrong_issuer(self, verifying_resolver, private_key):
        token = self._sign(private_key, sub='sub-1', iss='https://evil.example.com')
        assert verifying_resolver.resolve(token) is None

    def test_expired(self, verifying_resolver, private_key):
        token = self._sign(private_key, sub='sub-1', exp=int(time.time()) - 60)
        assert verifying_resolver.resolve(token) is None

    def test_wrong_key(self, verifying_resolver):
        other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        assert verifying_resolver.resolve(self._sign(other_key, sub='sub-1')) is None

    def test_unsigned_credential_is_rejected(self, verifying_resolver):
        assert verifying_resolver.resolve(make_token({'sub': 'sub-1'})) is None

    def test_requires_user_pool(self):
        config = CognitoConfig(region='us-east-1', user_pool_id=None, client_id=None, guest_handle_domain='x',
                               verify_tokens=True, connect_timeout=1, read_timeout=1)
        with pytest.raises(ValueError):
            JwksVerifier(config)

    def test_issuer_and_jwks_url(self):
        cognito = make_config().cognito
        assert cognito.issuer == 'https://cognito-idp.us-east-1.amazonaws.com/us-east-1_TestPool'
        assert cognito.jwks_url.endswith('/us-east-1_TestPool/.well-known/jwks.json')

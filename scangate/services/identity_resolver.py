"""
Identity Resolver for bearer credentials issued by the identity provider.

Trust boundary: by default the resolver only *decodes* the credential. It is correct
only behind an authorizer (API Gateway Cognito authorizer) that has already verified
the signature, expiry and audience. Set ``COGNITO_VERIFY_TOKENS=true`` to verify
locally against the user pool's JWKS instead.
"""

from typing import Any, Dict, Optional

import jwt

from ..utils.config import CognitoConfig
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

SUBJECT_CLAIMS = ('sub', 'cognito:username', 'username')


def extract_bearer(headers: Optional[Dict[str, str]]) -> Optional[str]:
    """Credential from an ``Authorization: Bearer <token>`` header, case-insensitively."""
    if not headers:
        return None
    for name, value in headers.items():
        if name.lower() == 'authorization' and value:
            token = value.strip()
            if token.lower().startswith('bearer '):
                token = token[7:].strip()
            return token or None
    return None


class JwksVerifier:
    """Verifies RS256 signatures against the user pool's published keys."""

    def __init__(self, config: CognitoConfig):
        if not config.jwks_url:
            raise ValueError('COGNITO_USER_POOL_ID is required to verify tokens locally')
        self.issuer = config.issuer
        self.jwks_client = jwt.PyJWKClient(config.jwks_url)

    def verify(self, token: str) -> Dict[str, Any]:
        signing_key = self.jwks_client.get_signing_key_from_jwt(token)
        # Cognito access tokens carry client_id rather than aud
        return jwt.decode(token,
                          signing_key.key,
                          algorithms=['RS256'],
                          issuer=self.issuer,
                          options={'verify_aud': False})


class IdentityResolver:
    """Map a bearer credential to its subject identifier."""

    def __init__(self, verifier: Optional[JwksVerifier] = None):
        self.verifier = verifier
        if verifier is None:
            logger.info('Identity resolver trusts upstream signature verification')

    @classmethod
    def from_config(cls, config: CognitoConfig) -> 'IdentityResolver':
        return cls(JwksVerifier(config) if config.verify_tokens else None)

    def claims(self, credential: str) -> Optional[Dict[str, Any]]:
        try:
            if self.verifier is not None:
                return self.verifier.verify(credential)
            return jwt.decode(credential, options={'verify_signature': False})
        except jwt.PyJWTError as e:
            logger.warning(f'Could not decode bearer credential: {e}')
            return None

    def resolve(self, credential: Optional[str]) -> Optional[str]:
        """
        Subject identifier carried by the credential.

        Returns:
            The ``sub`` (or username) claim, None for missing or malformed credentials
        """
        if not credential:
            return None
        claims = self.claims(credential)
        if not isinstance(claims, dict):
            return None
        for claim in SUBJECT_CLAIMS:
            if claims.get(claim):
                return str(claims[claim])
        logger.warning(f'Credential has no subject claim, available claims: {sorted(claims)}')
        return None

    def resolve_request(self, event: Dict[str, Any], body: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """Subject from the bearer header, falling back to an explicit userId in body or query."""
        subject = self.resolve(extract_bearer(event.get('headers')))
        if subject:
            return subject
        body = body or {}
        query = event.get('queryStringParameters') or {}
        return body.get('userId') or query.get('userId') or body.get('user_id') or query.get('user_id')

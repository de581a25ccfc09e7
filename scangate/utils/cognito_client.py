"""
Amazon Cognito user pool client wrapper for anonymous account management.
"""

from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..models.core import Account, AuthChallenge, AuthResult, AuthTokens
from .config import CognitoConfig
from .logging_config import get_logger

logger = get_logger(__name__)

NEW_PASSWORD_REQUIRED = 'NEW_PASSWORD_REQUIRED'


class CognitoError(Exception):
    """Custom exception for Cognito errors."""
    pass


class CognitoUnavailableError(CognitoError):
    """Cognito could not be reached or timed out."""
    pass


class AccountExistsError(CognitoError):
    """The username is already taken in the user pool."""
    pass


class CredentialRejectedError(CognitoError):
    """The password did not match, typically because another worker reset it."""
    pass


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


def _account_from_user(user: Dict[str, Any], attributes_key: str = 'Attributes') -> Account:
    attributes = {attr['Name']: attr['Value'] for attr in user.get(attributes_key, [])}
    # The JWT sub claim is the UUID, not the username
    return Account(subject_id=attributes.get('sub', user['Username']),
                   handle=user['Username'],
                   is_guest=attributes.get('custom:is_guest') == 'true')


def _auth_result(response: Dict[str, Any]) -> AuthResult:
    if response.get('ChallengeName'):
        return AuthResult(challenge=AuthChallenge(name=response['ChallengeName'],
                                                  session=response.get('Session'),
                                                  parameters=response.get('ChallengeParameters', {})))
    result = response['AuthenticationResult']
    return AuthResult(tokens=AuthTokens(access_token=result['AccessToken'],
                                        id_token=result['IdToken'],
                                        refresh_token=result.get('RefreshToken'),
                                        expires_in=result.get('ExpiresIn'),
                                        token_type=result.get('TokenType', 'Bearer')))


class CognitoClient:
    """Amazon Cognito identity provider client with error handling."""

    def __init__(self, config: CognitoConfig, client: Optional[Any] = None):
        """
        Initialize Cognito client.

        Args:
            config: CognitoConfig instance with pool parameters
            client: Pre-built ``cognito-idp`` client, created from config when None
        """
        self.config = config
        self.client = client or boto3.client('cognito-idp',
                                             region_name=config.region,
                                             config=BotoConfig(connect_timeout=config.connect_timeout,
                                                               read_timeout=config.read_timeout,
                                                               retries={'max_attempts': 2}))

        logger.info(f'Initialized Cognito client for user pool: {config.user_pool_id}')

    def _require_pool(self) -> None:
        if not self.config.user_pool_id or not self.config.client_id:
            raise CognitoError('Cognito configuration missing. COGNITO_USER_POOL_ID and '
                               'COGNITO_USER_POOL_CLIENT_ID must be set.')

    def find_by_attribute(self, attribute: str, value: str) -> Optional[Account]:
        """
        Find the first account whose attribute equals value.

        Returns:
            Account if found, None otherwise
        """
        self._require_pool()
        try:
            response = self.client.list_users(UserPoolId=self.config.user_pool_id,
                                              Filter=f'{attribute} = "{value}"',
                                              Limit=1)
        except ClientError as e:
            raise CognitoError(f'ListUsers failed: {e}')
        except BotoCoreError as e:
            raise CognitoUnavailableError(f'ListUsers failed: {e}')

        users = response.get('Users', [])
        return _account_from_user(users[0]) if users else None

    def create_anonymous_account(self, handle: str, attributes: Dict[str, str], temporary_credential: str) -> Account:
        """
        Create a pre-verified account without sending any message to the user.

        Custom attributes are dropped and the call retried once when the pool schema
        does not define them.

        Raises:
            AccountExistsError: If the handle is already taken
            CognitoError: For any other failure
        """
        self._require_pool()
        user_attributes = [{'Name': name, 'Value': value} for name, value in attributes.items()]

        try:
            response = self._admin_create_user(handle, user_attributes, temporary_credential)
        except ClientError as e:
            message = e.response.get('Error', {}).get('Message', '')
            if _error_code(e) == 'InvalidParameterException' and ('custom:' in message or 'attribute' in message):
                logger.info('Custom attributes not available, creating user without them')
                standard = [attr for attr in user_attributes if not attr['Name'].startswith('custom:')]
                try:
                    response = self._admin_create_user(handle, standard, temporary_credential)
                except ClientError as retry_e:
                    self._raise_create_error(retry_e)
            else:
                self._raise_create_error(e)
        except BotoCoreError as e:
            raise CognitoUnavailableError(f'AdminCreateUser failed: {e}')

        account = _account_from_user(response['User'])
        account.is_guest = attributes.get('custom:is_guest') == 'true'
        logger.info(f'Created account - Username: {account.handle}, Sub: {account.subject_id}')
        return account

    def _admin_create_user(self, handle: str, user_attributes: List[Dict[str, str]],
                           temporary_credential: str) -> Dict[str, Any]:
        return self.client.admin_create_user(UserPoolId=self.config.user_pool_id,
                                             Username=handle,
                                             UserAttributes=user_attributes,
                                             TemporaryPassword=temporary_credential,
                                             MessageAction='SUPPRESS')

    def _raise_create_error(self, error: ClientError) -> None:
        if _error_code(error) == 'UsernameExistsException':
            raise AccountExistsError(str(error))
        raise CognitoError(f'AdminCreateUser failed: {error}')

    def set_credential(self, handle: str, credential: str, permanent: bool) -> None:
        """Set the account password, temporary or permanent."""
        self._require_pool()
        try:
            self.client.admin_set_user_password(UserPoolId=self.config.user_pool_id,
                                                Username=handle,
                                                Password=credential,
                                                Permanent=permanent)
        except ClientError as e:
            raise CognitoError(f'AdminSetUserPassword failed: {e}')
        except BotoCoreError as e:
            raise CognitoUnavailableError(f'AdminSetUserPassword failed: {e}')

    def authenticate(self, handle: str, credential: str) -> AuthResult:
        """
        Exchange a password for tokens.

        A ``NotAuthorizedException`` that names NEW_PASSWORD_REQUIRED is returned as a
        session-less challenge rather than raised.

        Raises:
            CredentialRejectedError: If the password does not match
            CognitoUnavailableError: If Cognito cannot be reached
            CognitoError: For any other failure
        """
        self._require_pool()
        try:
            response = self.client.initiate_auth(AuthFlow='USER_PASSWORD_AUTH',
                                                 ClientId=self.config.client_id,
                                                 AuthParameters={'USERNAME': handle, 'PASSWORD': credential})
        except ClientError as e:
            message = e.response.get('Error', {}).get('Message', '')
            if _error_code(e) == 'NotAuthorizedException' and NEW_PASSWORD_REQUIRED in message:
                return AuthResult(challenge=AuthChallenge(name=NEW_PASSWORD_REQUIRED))
            if _error_code(e) == 'NotAuthorizedException':
                raise CredentialRejectedError(f'InitiateAuth rejected: {e}')
            raise CognitoError(f'InitiateAuth failed: {e}')
        except BotoCoreError as e:
            raise CognitoUnavailableError(f'InitiateAuth failed: {e}')
        return _auth_result(response)

    def respond_to_challenge(self, challenge: AuthChallenge, handle: str, new_credential: str) -> AuthResult:
        """Answer a NEW_PASSWORD_REQUIRED challenge with a new password."""
        self._require_pool()
        try:
            response = self.client.respond_to_auth_challenge(ClientId=self.config.client_id,
                                                             ChallengeName=challenge.name,
                                                             Session=challenge.session,
                                                             ChallengeResponses={
                                                                 'USERNAME': handle,
                                                                 'NEW_PASSWORD': new_credential
                                                             })
        except ClientError as e:
            if _error_code(e) == 'NotAuthorizedException':
                raise CredentialRejectedError(f'RespondToAuthChallenge rejected: {e}')
            raise CognitoError(f'RespondToAuthChallenge failed: {e}')
        except BotoCoreError as e:
            raise CognitoUnavailableError(f'RespondToAuthChallenge failed: {e}')
        return _auth_result(response)

    def health_check(self) -> bool:
        """
        Perform a health check on the user pool.

        Returns:
            True if the pool can be described, False otherwise
        """
        try:
            self._require_pool()
            self.client.describe_user_pool(UserPoolId=self.config.user_pool_id)
            return True
        except (CognitoError, ClientError, BotoCoreError) as e:
            logger.error(f'Cognito health check failed: {e}')
            return False

"""
Core data models for the token ledger and guest provisioning system.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class Account:
    """An identity provider account as seen by this system."""
    subject_id: str  # Immutable `sub` claim carried by every credential for the account
    handle: str  # Provider username, the derived email for guests
    is_guest: bool = False


@dataclass
class DeviceRecord:
    """Free scan usage for one physical device, independent of account."""
    device_id: str
    free_scans_used: int
    linked_account_ids: List[str]  # Forensics only, never used for enforcement
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'DeviceRecord':
        return cls(device_id=item['deviceId'],
                   free_scans_used=int(item.get('freeScansUsed', 0)),
                   linked_account_ids=sorted(item.get('linkedUserIds', [])),
                   created_at=item.get('createdAt'),
                   updated_at=item.get('updatedAt'))


@dataclass
class TokenBalance:
    """Ledger row for one subject."""
    subject_id: str
    balance: int
    updated_at: Optional[str] = None

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'TokenBalance':
        return cls(subject_id=item['userId'], balance=int(item.get('balance', 0)), updated_at=item.get('updatedAt'))


@dataclass
class ScanRecord:
    """Outcome of one scan, unique per (subject, content)."""
    user_id: str
    scan_id: str  # Deterministic, derived from the content fingerprint
    timestamp: str
    status: str
    month_key: str
    expires_at: int  # Epoch seconds, DynamoDB TTL attribute
    score: Optional[float] = None
    ai_probability: Optional[float] = None
    human_probability: Optional[float] = None
    success: bool = True
    content_ref: Optional[str] = None
    request_id: Optional[str] = None
    source: str = 'image-analysis'
    label: Optional[str] = None
    note: Optional[str] = None
    created_at: Optional[str] = None

    _ATTRIBUTES = {
        'user_id': 'userId',
        'scan_id': 'scanId',
        'timestamp': 'timestamp',
        'status': 'status',
        'month_key': 'monthKey',
        'expires_at': 'expiresAt',
        'score': 'score',
        'ai_probability': 'aiProbability',
        'human_probability': 'humanProbability',
        'success': 'success',
        'content_ref': 'contentRef',
        'request_id': 'requestId',
        'source': 'source',
        'label': 'label',
        'note': 'note',
        'created_at': 'createdAt',
    }

    def to_item(self) -> Dict[str, Any]:
        values = asdict(self)
        return {attr: values[name] for name, attr in self._ATTRIBUTES.items()}

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'ScanRecord':
        kwargs = {name: item.get(attr) for name, attr in cls._ATTRIBUTES.items() if attr in item}
        kwargs.setdefault('month_key', '')
        kwargs.setdefault('expires_at', 0)
        kwargs.setdefault('status', 'unknown')
        return cls(**kwargs)


@dataclass
class PurchaseRecord:
    """Append-only record of a token pack purchase."""
    purchase_id: str
    user_id: str
    pack_id: str
    tokens: int
    price: float
    purchase_date: str
    transaction_id: Optional[str] = None
    status: str = 'completed'

    def to_item(self) -> Dict[str, Any]:
        return {
            'purchaseId': self.purchase_id,
            'userId': self.user_id,
            'packId': self.pack_id,
            'tokens': self.tokens,
            'price': self.price,
            'transactionId': self.transaction_id,
            'purchaseDate': self.purchase_date,
            'status': self.status,
            'createdAt': self.purchase_date,
        }

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'PurchaseRecord':
        return cls(purchase_id=item['purchaseId'],
                   user_id=item['userId'],
                   pack_id=item['packId'],
                   tokens=int(item['tokens']),
                   price=float(item['price']),
                   purchase_date=item['purchaseDate'],
                   transaction_id=item.get('transactionId'),
                   status=item.get('status', 'completed'))


@dataclass
class AuthTokens:
    """Tokens issued by the identity provider after a successful authentication."""
    access_token: str
    id_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = 'Bearer'


@dataclass
class AuthChallenge:
    """An interactive challenge returned instead of tokens.

    A challenge without a session is one the provider reported as an error, which can
    only be answered by resetting the credential out of band.
    """
    name: str
    session: Optional[str] = None
    parameters: Dict[str, str] = field(default_factory=dict)


@dataclass
class AuthResult:
    """Either tokens or a challenge, never both."""
    tokens: Optional[AuthTokens] = None
    challenge: Optional[AuthChallenge] = None


@dataclass
class GuestSession:
    """Result of guest provisioning."""
    subject_id: str
    tokens: AuthTokens
    device_id: str
    device_limit_reached: bool
    token_balance: Optional[int] = None
    created: bool = False

    def to_response(self) -> Dict[str, Any]:
        return {
            'success': True,
            'userSub': self.subject_id,
            'accessToken': self.tokens.access_token,
            'idToken': self.tokens.id_token,
            'refreshToken': self.tokens.refresh_token,
            'expiresIn': self.tokens.expires_in,
            'tokenType': self.tokens.token_type,
            'isGuest': True,
            'deviceId': self.device_id,
            'deviceLimitReached': self.device_limit_reached,
            'tokenBalance': self.token_balance,
            'message': self.message(),
        }

    def message(self) -> str:
        outcome = 'Guest account created' if self.created else 'Guest signed in'
        if self.device_limit_reached:
            return f'{outcome} but device has used all free scans. Please purchase a scan pack.'
        return f'{outcome} successfully.'

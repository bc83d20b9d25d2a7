"""Portunus asynchronous client-side identity flow engine."""

from .ceremonies import BrowserSession, IdTokenProvider, IdTokenResult, PasskeyAuthenticator
from .client import Portunus
from .config import PortunusConfig
from .events import AuthEvent, AuthEventKind, EventEmitter
from .exceptions import (
    AttemptExpiredError,
    ClientError,
    InvalidFactorError,
    InvalidStateError,
    PortunusError,
    ServerTransientError,
    ServerValidationError,
    SessionRevokedError,
    UserCancelledError,
)
from .factors import FactorPolicy
from .models import (
    AttemptResult,
    Client,
    ErrorInfo,
    Factor,
    Session,
    SessionStatus,
    SignIn,
    SignInStatus,
    SignUp,
    SignUpStatus,
    TokenResource,
    User,
    Verification,
    VerificationStatus,
)
from .observability import Observability, ObservabilityConfig
from .polling import SessionPoller
from .sign_in import SignInService
from .sign_up import SignUpAction, SignUpService, SignUpStep, next_step
from .storage import MemoryStorage, SecureStorage, SnapshotCache
from .store import ClientStore
from .strategies import SignUpField, Strategy, StrategyKind
from .tokens import CachedToken, SessionTokenCache, TokenKey
from .transfer import TransferFlowCoordinator, nonce_from_callback_url
from .transport import ApiRequest, ApiResponse, FrontendApi, HttpxTransport, Transport

__all__ = [
    "ApiRequest",
    "ApiResponse",
    "AttemptExpiredError",
    "AttemptResult",
    "AuthEvent",
    "AuthEventKind",
    "BrowserSession",
    "CachedToken",
    "Client",
    "ClientError",
    "ClientStore",
    "ErrorInfo",
    "EventEmitter",
    "Factor",
    "FactorPolicy",
    "FrontendApi",
    "HttpxTransport",
    "IdTokenProvider",
    "IdTokenResult",
    "InvalidFactorError",
    "InvalidStateError",
    "MemoryStorage",
    "Observability",
    "ObservabilityConfig",
    "PasskeyAuthenticator",
    "Portunus",
    "PortunusConfig",
    "PortunusError",
    "SecureStorage",
    "ServerTransientError",
    "ServerValidationError",
    "Session",
    "SessionPoller",
    "SessionRevokedError",
    "SessionStatus",
    "SessionTokenCache",
    "SignIn",
    "SignInService",
    "SignInStatus",
    "SignUp",
    "SignUpAction",
    "SignUpField",
    "SignUpService",
    "SignUpStatus",
    "SignUpStep",
    "SnapshotCache",
    "Strategy",
    "StrategyKind",
    "TokenKey",
    "TokenResource",
    "Transport",
    "TransferFlowCoordinator",
    "User",
    "UserCancelledError",
    "Verification",
    "VerificationStatus",
    "next_step",
    "nonce_from_callback_url",
]

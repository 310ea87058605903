# Ultra BMS Auth Services
from bms_auth.services.auth import AuthService
from bms_auth.services.cleanup import CleanupService
from bms_auth.services.permissions import PermissionResolver, get_permission_resolver
from bms_auth.services.revocation import RevocationLedger
from bms_auth.services.session_guard import SessionGuard, get_session_guard
from bms_auth.services.session_store import SessionPolicy, SessionStore
from bms_auth.services.token_codec import TokenCodec, get_token_codec

__all__ = [
    "AuthService",
    "CleanupService",
    "PermissionResolver",
    "RevocationLedger",
    "SessionGuard",
    "SessionPolicy",
    "SessionStore",
    "TokenCodec",
    "get_permission_resolver",
    "get_session_guard",
    "get_token_codec",
]

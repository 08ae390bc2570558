import logging
import secrets
import threading
from datetime import datetime, timezone
from typing import Optional

import bcrypt
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from store import DocumentStore


logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6
# bcrypt only looks at the first 72 bytes of a password
MAX_PASSWORD_BYTES = 72


class InvalidCredentials(ValueError):
    pass


class AccountExists(ValueError):
    pass


def _clean_user_id(user_id: str) -> str:
    clean = user_id.strip()
    if not clean or "/" in clean:
        raise ValueError("Invalid user id")
    return clean


def account_path(user_id: str) -> str:
    return f"accounts/{user_id}"


class AccountService:
    """Password credentials, one ``accounts/{user_id}`` document per user."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def register(self, user_id: str, password: str) -> str:
        user_id = _clean_user_id(user_id)
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValueError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        password_bytes = password.encode("utf-8")
        if len(password_bytes) > MAX_PASSWORD_BYTES:
            raise ValueError("Password is too long")
        if self.store.get_document(account_path(user_id)) is not None:
            raise AccountExists("An account with this user id already exists")

        password_hash = bcrypt.hashpw(password_bytes, bcrypt.gensalt())
        self.store.set_document(
            account_path(user_id),
            {
                "passwordHash": password_hash.decode("utf-8"),
                "createdAt": datetime.now(timezone.utc).isoformat(),
            },
        )
        logger.info(f"account_registered: user_id={user_id}")
        return user_id

    def verify(self, user_id: str, password: Optional[str]) -> bool:
        if not password:
            return False
        password_bytes = password.encode("utf-8")
        if len(password_bytes) > MAX_PASSWORD_BYTES:
            return False
        account = self.store.get_document(account_path(user_id))
        if not account or not account.get("passwordHash"):
            return False
        return bcrypt.checkpw(password_bytes, account["passwordHash"].encode("utf-8"))


class IdentityProvider:
    """Issues and checks signed, time-limited session tokens.

    A token carries the user id and a random nonce; signing out revokes the
    nonce for the lifetime of the process. Tokens are only handed out after
    the password has been checked against the user's account.
    """

    def __init__(self, secret: str, max_age_hours: int = 168) -> None:
        self._serializer = URLSafeTimedSerializer(secret, salt="kakeibo-session")
        self.max_age_seconds = max_age_hours * 3600
        self._revoked: set[str] = set()
        self._lock = threading.Lock()

    def _issue(self, user_id: str) -> str:
        return self._serializer.dumps({"u": user_id, "n": secrets.token_hex(8)})

    def sign_up(self, accounts: AccountService, user_id: str, password: str) -> str:
        user_id = accounts.register(user_id, password)
        return self._issue(user_id)

    def sign_in(
        self, accounts: AccountService, user_id: str, password: Optional[str]
    ) -> str:
        clean = _clean_user_id(user_id)
        if not accounts.verify(clean, password):
            logger.warning(f"sign_in_rejected: user_id={clean}")
            raise InvalidCredentials("Invalid user id or password")
        logger.info(f"sign_in: user_id={clean}")
        return self._issue(clean)

    def _load(self, token: str) -> Optional[dict]:
        try:
            data = self._serializer.loads(token, max_age=self.max_age_seconds)
        except SignatureExpired:
            return None
        except BadSignature:
            return None
        if not isinstance(data, dict) or not data.get("u") or not data.get("n"):
            return None
        return data

    def current_user(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        data = self._load(token)
        if data is None:
            return None
        with self._lock:
            if data["n"] in self._revoked:
                return None
        return data["u"]

    def sign_out(self, token: str) -> None:
        data = self._load(token)
        if data is None:
            return
        with self._lock:
            self._revoked.add(data["n"])
        logger.info(f"sign_out: user_id={data['u']}")


def build_identity_provider() -> IdentityProvider:
    settings = get_settings()
    return IdentityProvider(settings.session_secret, settings.session_max_age_hours)

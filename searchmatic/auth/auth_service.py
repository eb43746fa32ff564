"""User accounts and access tokens."""

import hashlib
import hmac
import logging
import re
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from ..errors import AuthenticationError, ValidationError
from ..storage.models import AuthSession, User

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
HASH_SCHEME = "pbkdf2_sha256"


def hash_password(password: str, iterations: int, salt: Optional[str] = None) -> str:
    """Hash a password as scheme$iterations$salt$hexdigest."""
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), iterations)
    return f"{HASH_SCHEME}${iterations}${salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        scheme, iterations, salt, _ = stored.split("$")
    except ValueError:
        return False
    if scheme != HASH_SCHEME:
        return False
    candidate = hash_password(password, int(iterations), salt)
    return hmac.compare_digest(candidate, stored)


def _row_to_user(row) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        full_name=row["full_name"],
        organization=row["organization"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class AuthService:
    """Email/password accounts with signed, revocable access tokens."""

    def __init__(self, database, settings):
        """
        Args:
            database: Workspace Database
            settings: Settings; the auth group supplies secret, TTL and hashing cost
        """
        self.database = database
        self.config = settings.auth
        self.jwt_secret = settings.get_jwt_secret()

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    def sign_up(
        self,
        email: str,
        password: str,
        full_name: Optional[str] = None,
        organization: Optional[str] = None,
    ) -> User:
        """Create an account. Emails are stored lowercased and must be unique."""
        email = (email or "").strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email address")
        if len(password or "") < self.config.password_min_length:
            raise ValidationError(
                f"Password must be at least {self.config.password_min_length} characters"
            )
        if self._find_by_email(email) is not None:
            raise ValidationError("User already registered")

        user = User(email=email, full_name=full_name, organization=organization)
        with self.database.transaction() as conn:
            conn.execute("""
                INSERT INTO users (id, email, password_hash, full_name, organization, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                user.id,
                user.email,
                hash_password(password, self.config.pbkdf2_iterations),
                user.full_name,
                user.organization,
                user.created_at.isoformat(),
                user.updated_at.isoformat(),
            ))

        logger.info(f"Registered user {user.id}")
        return user

    def _find_by_email(self, email: str):
        return self.database.fetch_one("SELECT * FROM users WHERE email = ?", (email.lower(),))

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        row = self.database.fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))
        return _row_to_user(row) if row else None

    def update_profile(
        self,
        user: User,
        full_name: Optional[str] = None,
        organization: Optional[str] = None,
    ) -> User:
        if user is None:
            raise AuthenticationError()
        updated = user.model_copy(update={
            "full_name": full_name if full_name is not None else user.full_name,
            "organization": organization if organization is not None else user.organization,
            "updated_at": datetime.now(),
        })
        with self.database.transaction() as conn:
            conn.execute(
                "UPDATE users SET full_name = ?, organization = ?, updated_at = ? WHERE id = ?",
                (updated.full_name, updated.organization, updated.updated_at.isoformat(), user.id),
            )
        return updated

    def change_password(self, user: User, current_password: str, new_password: str) -> None:
        row = self.database.fetch_one("SELECT password_hash FROM users WHERE id = ?", (user.id,))
        if row is None or not verify_password(current_password, row["password_hash"]):
            raise AuthenticationError("Invalid login credentials")
        if len(new_password or "") < self.config.password_min_length:
            raise ValidationError(
                f"Password must be at least {self.config.password_min_length} characters"
            )
        with self.database.transaction() as conn:
            conn.execute(
                "UPDATE users SET password_hash = ?, updated_at = ? WHERE id = ?",
                (hash_password(new_password, self.config.pbkdf2_iterations), datetime.now().isoformat(), user.id),
            )

    # =========================================================================
    # SESSIONS
    # =========================================================================

    def sign_in(self, email: str, password: str) -> AuthSession:
        """Verify credentials and issue an access token."""
        row = self._find_by_email((email or "").strip())
        if row is None or not verify_password(password or "", row["password_hash"]):
            logger.warning("Failed sign-in attempt")
            raise AuthenticationError("Invalid login credentials")

        with self.database.transaction() as conn:
            self._prune_revoked(conn)
        user = _row_to_user(row)
        issued_at = datetime.now(timezone.utc)
        expires_at = issued_at + timedelta(minutes=self.config.token_ttl_minutes)
        token = jwt.encode(
            {
                "sub": user.id,
                "email": user.email,
                "jti": str(uuid.uuid4()),
                "aud": self.config.jwt_audience,
                "iat": issued_at,
                "exp": expires_at,
            },
            self.jwt_secret,
            algorithm=self.config.jwt_algorithm,
        )
        return AuthSession(access_token=token, expires_at=expires_at, user=user)

    def _decode(self, token: str) -> dict:
        try:
            return jwt.decode(
                token,
                self.jwt_secret,
                algorithms=[self.config.jwt_algorithm],
                audience=self.config.jwt_audience,
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired")
        except jwt.InvalidTokenError as e:
            raise AuthenticationError(f"Invalid token: {e}")

    def get_user(self, token: Optional[str]) -> User:
        """Resolve an access token to its user."""
        if not token:
            raise AuthenticationError()
        payload = self._decode(token)

        revoked = self.database.fetch_one(
            "SELECT jti FROM revoked_tokens WHERE jti = ?", (payload.get("jti"),)
        )
        if revoked is not None:
            raise AuthenticationError("Token has been revoked")

        user = self.get_user_by_id(payload["sub"])
        if user is None:
            raise AuthenticationError("User no longer exists")
        return user

    def sign_out(self, token: str) -> None:
        """Revoke the token so later get_user calls fail."""
        payload = self._decode(token)
        with self.database.transaction() as conn:
            self._prune_revoked(conn)
            conn.execute(
                "INSERT OR IGNORE INTO revoked_tokens (jti, user_id, revoked_at, expires_at) VALUES (?, ?, ?, ?)",
                (
                    payload["jti"],
                    payload["sub"],
                    datetime.now().isoformat(),
                    datetime.fromtimestamp(payload["exp"], tz=timezone.utc).isoformat(timespec="seconds"),
                ),
            )

    def _prune_revoked(self, conn) -> None:
        """Drop revocations for tokens that have expired anyway."""
        now = datetime.now(timezone.utc).isoformat(timespec="seconds")
        conn.execute("DELETE FROM revoked_tokens WHERE expires_at < ?", (now,))

    def ensure_local_user(self) -> User:
        """
        Return the workspace user configured in settings, creating it on first use.

        The local user gets a random password; the Streamlit app never signs
        in with it.
        """
        row = self._find_by_email(self.config.local_user_email)
        if row is not None:
            return _row_to_user(row)
        return self.sign_up(
            email=self.config.local_user_email,
            password=secrets.token_urlsafe(24),
            full_name=self.config.local_user_name,
        )

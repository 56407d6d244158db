"""
Per (user, student, role) OAuth credential lifecycle.
"""

import logging
import threading
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Callable

from assignment_calendar_sync.crypto import TokenCipher
from assignment_calendar_sync.db import TokenStore
from assignment_calendar_sync.models import AccessToken
from assignment_calendar_sync.models import AccountRole
from assignment_calendar_sync.models import AuthorizationExpiredError
from assignment_calendar_sync.models import CalendarSyncError
from assignment_calendar_sync.models import ConnectionState
from assignment_calendar_sync.models import ConnectionStatus
from assignment_calendar_sync.models import NotConnectedError
from assignment_calendar_sync.models import RoleConnection
from assignment_calendar_sync.models import TokenRecord
from assignment_calendar_sync.oauth import GoogleOAuthClient

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN = timedelta(minutes=5)

_Key = tuple[str, int, AccountRole]


class TokenLifecycleManager:
    """
    Owns token_records: encrypts on the way in, decrypts and refreshes on
    the way out. Callers always pass the full (user, student, role) context.
    """

    def __init__(
        self,
        records: TokenStore,
        cipher: TokenCipher,
        oauth: GoogleOAuthClient,
        refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
        clock: Callable[[], datetime] | None = None,
    ):
        self.records = records
        self.cipher = cipher
        self.oauth = oauth
        self.refresh_margin = refresh_margin
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._guard = threading.Lock()
        self._refresh_locks: dict[_Key, threading.Lock] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_valid_token(self, user_id: str, student_id: int, role: AccountRole) -> AccessToken:
        """
        Return an access token that stays valid for at least the refresh margin.

        Raises NotConnectedError when no record exists, AuthorizationExpiredError
        when the record needs re-authentication (or refresh was rejected) and
        TokenRefreshError when refresh failed for a transient reason.
        """
        with self._refresh_lock(user_id, student_id, role):
            record = self._load(user_id, student_id, role)
            if record.expires_at - self.refresh_margin > self.clock():
                return self._to_access_token(record)
            logger.info(
                f"Access token for user {user_id}, student {student_id}, {role.value} "
                f"expires at {record.expires_at.isoformat()}; refreshing"
            )
            return self._refresh(record)

    def force_refresh(self, user_id: str, student_id: int, role: AccountRole) -> AccessToken:
        """Refresh regardless of expiry; used after the provider rejects a token."""
        with self._refresh_lock(user_id, student_id, role):
            return self._refresh(self._load(user_id, student_id, role))

    def connection_status(self, user_id: str, student_id: int) -> ConnectionStatus:
        def describe(role: AccountRole) -> RoleConnection:
            record = self.records.get(user_id, student_id, role)
            if record is None:
                return RoleConnection(role, ConnectionState.NOT_CONNECTED)
            state = (
                ConnectionState.REAUTH_REQUIRED
                if record.requires_reauth
                else ConnectionState.CONNECTED
            )
            return RoleConnection(
                role,
                state,
                account_email=record.account_email,
                calendar_id=record.calendar_id,
                expires_at=record.expires_at,
            )

        return ConnectionStatus(
            parent=describe(AccountRole.PARENT), student=describe(AccountRole.STUDENT)
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def store(
        self,
        user_id: str,
        student_id: int,
        role: AccountRole,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        account_email: str | None = None,
        calendar_id: str | None = None,
    ) -> TokenRecord:
        """Encrypt and upsert credentials; clears any re-authentication flag."""
        record = TokenRecord(
            user_id=user_id,
            student_id=student_id,
            role=role,
            encrypted_access_token=self.cipher.encrypt(access_token),
            encrypted_refresh_token=self.cipher.encrypt(refresh_token),
            expires_at=expires_at,
            calendar_id=calendar_id,
            account_email=account_email,
            requires_reauth=False,
        )
        self.records.upsert(record)
        logger.info(
            f"Stored calendar credentials for user {user_id}, student {student_id}, "
            f"{role.value} ({account_email or 'unknown account'})"
        )
        return record

    def connect(self, user_id: str, student_id: int, role: AccountRole, code: str) -> RoleConnection:
        """Complete the OAuth callback: exchange the code and store the result."""
        tokens = self.oauth.exchange_code(code)
        email = self.oauth.fetch_account_email(tokens.access_token)
        self.store(
            user_id,
            student_id,
            role,
            tokens.access_token,
            tokens.refresh_token,
            tokens.expires_at,
            account_email=email,
        )
        return self.connection_status(user_id, student_id).for_role(role)

    def revoke(
        self, user_id: str, student_id: int, role: AccountRole, remote: bool = True
    ) -> bool:
        """Delete the record; returns False when there was nothing to delete."""
        record = self.records.get(user_id, student_id, role)
        if record is None:
            return False
        if remote:
            try:
                self.oauth.revoke(self.cipher.decrypt(record.encrypted_refresh_token))
            except CalendarSyncError as e:
                logger.warning(f"Remote revocation skipped for {role.value}: {e}")
        deleted = self.records.delete(user_id, student_id, role)
        if deleted:
            logger.info(
                f"Disconnected {role.value} calendar for user {user_id}, student {student_id}"
            )
        return deleted

    def mark_invalid(self, user_id: str, student_id: int, role: AccountRole) -> None:
        """Flag the record as needing re-authentication; mapping data is left alone."""
        if self.records.set_requires_reauth(user_id, student_id, role, True):
            logger.warning(
                f"{role.value} calendar for user {user_id}, student {student_id} "
                f"requires re-authentication"
            )

    def update_calendar_id(
        self, user_id: str, student_id: int, role: AccountRole, calendar_id: str
    ) -> None:
        self.records.set_calendar_id(user_id, student_id, role, calendar_id)

    def cleanup_expired(self, older_than: timedelta = timedelta(days=30)) -> int:
        """Drop records that need re-authentication and expired before now - older_than."""
        count = self.records.delete_reauth_required_before(self.clock() - older_than)
        if count:
            logger.info(f"Removed {count} abandoned token record(s)")
        return count

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _refresh_lock(self, user_id: str, student_id: int, role: AccountRole) -> threading.Lock:
        key = (user_id, student_id, role)
        with self._guard:
            lock = self._refresh_locks.get(key)
            if lock is None:
                lock = self._refresh_locks[key] = threading.Lock()
            return lock

    def _load(self, user_id: str, student_id: int, role: AccountRole) -> TokenRecord:
        record = self.records.get(user_id, student_id, role)
        if record is None:
            raise NotConnectedError(
                f"No {role.value} calendar connected for user {user_id}, student {student_id}"
            )
        if record.requires_reauth:
            raise AuthorizationExpiredError(
                f"{role.value} calendar for student {student_id} must be reconnected"
            )
        return record

    def _refresh(self, record: TokenRecord) -> AccessToken:
        refresh_token = self.cipher.decrypt(record.encrypted_refresh_token)
        try:
            tokens = self.oauth.refresh(refresh_token)
        except AuthorizationExpiredError:
            self.mark_invalid(record.user_id, record.student_id, record.role)
            raise

        rotated = tokens.refresh_token if tokens.refresh_token != refresh_token else None
        self.records.update_access(
            record.user_id,
            record.student_id,
            record.role,
            self.cipher.encrypt(tokens.access_token),
            tokens.expires_at,
            encrypted_refresh=self.cipher.encrypt(rotated) if rotated else None,
        )
        logger.debug(
            f"Refreshed {record.role.value} token for student {record.student_id}; "
            f"valid until {tokens.expires_at.isoformat()}"
        )
        return AccessToken(
            value=tokens.access_token,
            expires_at=tokens.expires_at,
            calendar_id=record.calendar_id,
            account_email=record.account_email,
        )

    def _to_access_token(self, record: TokenRecord) -> AccessToken:
        return AccessToken(
            value=self.cipher.decrypt(record.encrypted_access_token),
            expires_at=record.expires_at,
            calendar_id=record.calendar_id,
            account_email=record.account_email,
        )

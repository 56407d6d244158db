"""
Token lifecycle: refresh margin, re-authentication flag, revocation and
encryption at rest.
"""

from datetime import timedelta

import pytest

from assignment_calendar_sync.models import AccountRole
from assignment_calendar_sync.models import AuthorizationExpiredError
from assignment_calendar_sync.models import ConnectionState
from assignment_calendar_sync.models import NotConnectedError
from assignment_calendar_sync.models import TokenRefreshError
from tests.conftest import STUDENT_ID
from tests.conftest import USER_ID
from tests.conftest import connect_role

PARENT = AccountRole.PARENT
STUDENT = AccountRole.STUDENT


class TestGetValidToken:
    def test_fresh_token_is_returned_without_refresh(self, tokens, oauth):
        connect_role(tokens, PARENT, expires_in=timedelta(hours=1))

        token = tokens.get_valid_token(USER_ID, STUDENT_ID, PARENT)

        assert token.value == "parent-access"
        assert oauth.refresh_calls == []

    def test_expired_token_is_refreshed(self, tokens, oauth, clock):
        """Expired ten minutes ago: a new token comes back and is persisted."""
        connect_role(tokens, PARENT, expires_in=timedelta(minutes=-10))

        token = tokens.get_valid_token(USER_ID, STUDENT_ID, PARENT)

        assert token.value != "parent-access"
        assert token.expires_at > clock.now()
        assert oauth.refresh_calls == ["parent-refresh"]
        # The stored record now serves the refreshed token.
        assert tokens.get_valid_token(USER_ID, STUDENT_ID, PARENT).value == token.value
        assert len(oauth.refresh_calls) == 1

    def test_token_inside_margin_is_refreshed(self, tokens, oauth):
        connect_role(tokens, PARENT, expires_in=timedelta(minutes=4))
        tokens.get_valid_token(USER_ID, STUDENT_ID, PARENT)
        assert len(oauth.refresh_calls) == 1

    def test_missing_record_raises_not_connected(self, tokens):
        with pytest.raises(NotConnectedError):
            tokens.get_valid_token(USER_ID, STUDENT_ID, STUDENT)

    def test_flagged_record_raises_without_calling_provider(self, tokens, oauth):
        connect_role(tokens, PARENT, expires_in=timedelta(minutes=-10))
        tokens.mark_invalid(USER_ID, STUDENT_ID, PARENT)

        with pytest.raises(AuthorizationExpiredError):
            tokens.get_valid_token(USER_ID, STUDENT_ID, PARENT)
        assert oauth.refresh_calls == []

    def test_rejected_refresh_marks_record_invalid(self, tokens, oauth):
        connect_role(tokens, PARENT, expires_in=timedelta(minutes=-10))
        oauth.fail_next(AuthorizationExpiredError("invalid_grant"))

        with pytest.raises(AuthorizationExpiredError):
            tokens.get_valid_token(USER_ID, STUDENT_ID, PARENT)

        status = tokens.connection_status(USER_ID, STUDENT_ID)
        assert status.parent.state is ConnectionState.REAUTH_REQUIRED

    def test_transient_refresh_failure_leaves_record_usable(self, tokens, oauth):
        connect_role(tokens, PARENT, expires_in=timedelta(minutes=-10))
        oauth.fail_next(TokenRefreshError("HTTP 503"))

        with pytest.raises(TokenRefreshError):
            tokens.get_valid_token(USER_ID, STUDENT_ID, PARENT)

        status = tokens.connection_status(USER_ID, STUDENT_ID)
        assert status.parent.state is ConnectionState.CONNECTED
        assert tokens.get_valid_token(USER_ID, STUDENT_ID, PARENT).value.startswith("access-")

    def test_rotated_refresh_token_is_stored(self, tokens, oauth, token_store, cipher):
        connect_role(tokens, PARENT, expires_in=timedelta(minutes=-10))
        oauth.rotate_refresh_token = True

        tokens.get_valid_token(USER_ID, STUDENT_ID, PARENT)

        record = token_store.get(USER_ID, STUDENT_ID, PARENT)
        assert cipher.decrypt(record.encrypted_refresh_token).startswith("refresh-rotated-")


class TestStorage:
    def test_tokens_are_encrypted_at_rest(self, tokens, state_db):
        connect_role(tokens, PARENT)

        row = state_db.query_one("SELECT encrypted_access, encrypted_refresh FROM token_records")
        assert row["encrypted_access"] != "parent-access"
        assert "parent-refresh" not in row["encrypted_refresh"]

    def test_connect_stores_account_email(self, tokens):
        connection = tokens.connect(USER_ID, STUDENT_ID, STUDENT, "auth-code")

        assert connection.state is ConnectionState.CONNECTED
        assert connection.account_email == "parent@example.com"

    def test_reconnect_clears_reauth_flag(self, tokens):
        connect_role(tokens, PARENT)
        tokens.mark_invalid(USER_ID, STUDENT_ID, PARENT)
        connect_role(tokens, PARENT)

        status = tokens.connection_status(USER_ID, STUDENT_ID)
        assert status.parent.state is ConnectionState.CONNECTED

    def test_roles_do_not_share_credentials(self, tokens):
        connect_role(tokens, PARENT)
        status = tokens.connection_status(USER_ID, STUDENT_ID)

        assert status.parent.state is ConnectionState.CONNECTED
        assert status.student.state is ConnectionState.NOT_CONNECTED
        assert status.any_connected


class TestRevoke:
    def test_revoke_is_idempotent(self, tokens, oauth):
        connect_role(tokens, PARENT)

        assert tokens.revoke(USER_ID, STUDENT_ID, PARENT) is True
        assert tokens.revoke(USER_ID, STUDENT_ID, PARENT) is False
        assert oauth.revoked == ["parent-refresh"]

    def test_local_only_revoke_skips_provider(self, tokens, oauth):
        connect_role(tokens, PARENT)
        tokens.revoke(USER_ID, STUDENT_ID, PARENT, remote=False)
        assert oauth.revoked == []

    def test_cleanup_removes_abandoned_records(self, tokens, clock):
        connect_role(tokens, PARENT, expires_in=timedelta(days=-45))
        connect_role(tokens, STUDENT, expires_in=timedelta(days=-45))
        tokens.mark_invalid(USER_ID, STUDENT_ID, PARENT)

        assert tokens.cleanup_expired(timedelta(days=30)) == 1
        status = tokens.connection_status(USER_ID, STUDENT_ID)
        assert status.parent.state is ConnectionState.NOT_CONNECTED
        assert status.student.state is ConnectionState.CONNECTED

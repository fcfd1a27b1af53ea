"""Tests for AuthService - core auth orchestration."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import Mock
from uuid import UUID

import pytest

from auth.directory import InMemoryUserDirectory
from auth.exceptions import (
    InvalidRequestError,
    InvalidTokenError,
    UserAlreadyExistsError,
    UserInactiveError,
    UserNotFoundError,
)
from auth.security_logger import SecurityEvent
from auth.service import AuthService, MagicLinkResult, normalize_email
from clients.email_client import EmailGatewayError

# Must match conftest.py
TEST_APP_URL = "https://test.example.com"
TEST_USER_EMAIL = "testuser@example.com"
TEST_USER_B_EMAIL = "testuser-b@example.com"


def _logged_events(mock_security_logger) -> list[SecurityEvent]:
    return [c.args[0] for c in mock_security_logger.log.call_args_list]


class TestNormalizeEmail:
    """Email normalization at the service boundary."""

    def test_trims_and_lowercases(self):
        assert normalize_email("  TestUser@Example.COM ") == TEST_USER_EMAIL

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_missing_raises(self, value):
        with pytest.raises(InvalidRequestError, match="required"):
            normalize_email(value)

    @pytest.mark.parametrize("value", ["not-an-email", "a@", "@example.com"])
    def test_malformed_raises(self, value):
        with pytest.raises(InvalidRequestError, match="Invalid email"):
            normalize_email(value)


class TestBuildCallbackUrl:

    def test_points_at_verify_page(self, auth_service):
        url = auth_service.build_callback_url("abc_DEF-123")
        assert url == f"{TEST_APP_URL}/auth/verify?token=abc_DEF-123"

    def test_trailing_slash_on_base_url(self, config, directory, token_issuer,
                                        mock_email_client, mock_security_logger):
        service = AuthService(
            config=config.model_copy(update={"app_base_url": TEST_APP_URL + "/"}),
            directory=directory,
            token_issuer=token_issuer,
            email_client=mock_email_client,
            security_logger=mock_security_logger,
        )
        assert service.build_callback_url("t").startswith(f"{TEST_APP_URL}/auth/verify?")


class TestRequestLoginLink:
    """Login: existing, active accounts only."""

    def test_existing_user_sends_magic_link(self, auth_service, directory, clock, mock_email_client):
        user = directory.create_user(TEST_USER_EMAIL, "Test User", clock())

        result = auth_service.request_login_link(TEST_USER_EMAIL)

        assert isinstance(result, MagicLinkResult)
        assert result.created is False
        assert result.user.id == user.id
        mock_email_client.send_magic_link.assert_called_once()
        email, url = mock_email_client.send_magic_link.call_args.args
        assert email == TEST_USER_EMAIL
        assert url.startswith(f"{TEST_APP_URL}/auth/verify?token=")

    def test_stores_token_with_configured_ttl(self, auth_service, directory, clock, sent_token):
        user = directory.create_user(TEST_USER_EMAIL, None, clock())

        auth_service.request_login_link(TEST_USER_EMAIL)

        stored = directory.get_user_by_id(user.id)
        assert stored.magic_link_token == sent_token()
        assert stored.magic_link_expiration == clock() + timedelta(minutes=15)

    def test_email_is_case_and_whitespace_insensitive(self, auth_service, directory, clock):
        directory.create_user(TEST_USER_EMAIL, None, clock())

        result = auth_service.request_login_link("  TESTUSER@example.com ")

        assert result.user.email == TEST_USER_EMAIL

    def test_unknown_email_raises_not_found(self, auth_service, mock_email_client, mock_security_logger):
        with pytest.raises(UserNotFoundError):
            auth_service.request_login_link(TEST_USER_EMAIL)

        mock_email_client.send_magic_link.assert_not_called()
        assert _logged_events(mock_security_logger) == [SecurityEvent.MAGIC_LINK_FAILED]

    def test_inactive_user_raises_and_stores_no_token(
        self, auth_service, directory, clock, mock_email_client
    ):
        user = directory.create_user(TEST_USER_EMAIL, None, clock())
        directory.deactivate_user(user.id, clock())

        with pytest.raises(UserInactiveError):
            auth_service.request_login_link(TEST_USER_EMAIL)

        stored = directory.get_user_by_id(user.id)
        assert stored.magic_link_token is None
        assert stored.magic_link_expiration is None
        mock_email_client.send_magic_link.assert_not_called()

    def test_invalid_email_raises(self, auth_service):
        with pytest.raises(InvalidRequestError):
            auth_service.request_login_link("nope")

    def test_second_request_invalidates_first_token(self, auth_service, directory, clock, sent_token):
        directory.create_user(TEST_USER_EMAIL, None, clock())

        auth_service.request_login_link(TEST_USER_EMAIL)
        first = sent_token()
        auth_service.request_login_link(TEST_USER_EMAIL)
        second = sent_token()

        assert first != second
        with pytest.raises(InvalidTokenError):
            auth_service.verify_magic_link(first)
        assert auth_service.verify_magic_link(second).email == TEST_USER_EMAIL

    def test_logs_requested_then_sent(self, auth_service, directory, clock, mock_security_logger):
        directory.create_user(TEST_USER_EMAIL, None, clock())

        auth_service.request_login_link(TEST_USER_EMAIL, ip_address="10.0.0.1", user_agent="pytest")

        assert _logged_events(mock_security_logger) == [
            SecurityEvent.MAGIC_LINK_REQUESTED,
            SecurityEvent.MAGIC_LINK_SENT,
        ]
        kwargs = mock_security_logger.log.call_args_list[0].kwargs
        assert kwargs["ip_address"] == "10.0.0.1"
        assert kwargs["user_agent"] == "pytest"

    def test_email_failure_propagates(self, auth_service, directory, clock, mock_email_client,
                                      mock_security_logger):
        user = directory.create_user(TEST_USER_EMAIL, None, clock())
        mock_email_client.send_magic_link.side_effect = EmailGatewayError("Gateway error: down")

        with pytest.raises(EmailGatewayError):
            auth_service.request_login_link(TEST_USER_EMAIL)

        # The token was persisted before delivery was attempted
        assert directory.get_user_by_id(user.id).magic_link_token is not None
        assert SecurityEvent.MAGIC_LINK_SENT not in _logged_events(mock_security_logger)

    def test_persist_failure_sends_no_email(self, config, token_issuer, mock_email_client,
                                            mock_security_logger, clock):
        directory = InMemoryUserDirectory()
        directory.create_user(TEST_USER_EMAIL, None, clock())
        failing = Mock(wraps=directory)
        failing.set_magic_link_token.side_effect = RuntimeError("database unavailable")
        service = AuthService(
            config=config,
            directory=failing,
            token_issuer=token_issuer,
            email_client=mock_email_client,
            security_logger=mock_security_logger,
            clock=clock,
        )

        with pytest.raises(RuntimeError):
            service.request_login_link(TEST_USER_EMAIL)

        mock_email_client.send_magic_link.assert_not_called()


class TestRequestMagicLink:
    """Send-me-a-link: creates the account on first contact."""

    def test_unknown_email_creates_user(self, auth_service, directory, mock_email_client,
                                        mock_security_logger):
        result = auth_service.request_magic_link(TEST_USER_EMAIL, name="New User")

        assert result.created is True
        assert result.user.name == "New User"
        assert result.user.is_active is True
        assert result.user.ai_chats_used == 0
        assert result.user.ai_chats_limit == 10
        assert result.user.total_conversations == 0
        assert directory.get_user_by_email(TEST_USER_EMAIL) is not None
        mock_email_client.send_magic_link.assert_called_once()
        assert _logged_events(mock_security_logger)[0] == SecurityEvent.USER_CREATED

    def test_existing_user_is_not_duplicated(self, auth_service, directory, clock):
        existing = directory.create_user(TEST_USER_EMAIL, "Original", clock())

        result = auth_service.request_magic_link("TestUser@Example.com", name="Other")

        assert result.created is False
        assert result.user.id == existing.id
        assert result.user.name == "Original"

    def test_repeated_calls_succeed(self, auth_service, mock_email_client):
        auth_service.request_magic_link(TEST_USER_EMAIL)
        auth_service.request_magic_link(TEST_USER_EMAIL)

        assert mock_email_client.send_magic_link.call_count == 2

    def test_inactive_user_raises(self, auth_service, directory, clock):
        user = directory.create_user(TEST_USER_EMAIL, None, clock())
        directory.deactivate_user(user.id, clock())

        with pytest.raises(UserInactiveError):
            auth_service.request_magic_link(TEST_USER_EMAIL)

    def test_lost_creation_race_uses_winning_account(self, config, token_issuer, mock_email_client,
                                                     mock_security_logger, clock):
        directory = InMemoryUserDirectory()
        winner = directory.create_user(TEST_USER_EMAIL, None, clock())
        racing = Mock(wraps=directory)
        # First lookup misses, as if the other insert had not committed yet
        racing.get_user_by_email.side_effect = [None, directory.get_user_by_email(TEST_USER_EMAIL)]
        service = AuthService(
            config=config,
            directory=racing,
            token_issuer=token_issuer,
            email_client=mock_email_client,
            security_logger=mock_security_logger,
            clock=clock,
        )

        result = service.request_magic_link(TEST_USER_EMAIL)

        assert result.created is False
        assert result.user.id == winner.id
        mock_email_client.send_magic_link.assert_called_once()


class TestRegister:
    """Registration: new accounts only."""

    def test_creates_user_and_sends_link(self, auth_service, directory, mock_email_client):
        result = auth_service.register(TEST_USER_EMAIL, name="Test User")

        assert result.created is True
        assert isinstance(result.user.id, UUID)
        assert directory.get_user_by_email(TEST_USER_EMAIL).name == "Test User"
        mock_email_client.send_magic_link.assert_called_once()

    def test_stores_normalized_email(self, auth_service):
        result = auth_service.register("  TestUser@EXAMPLE.com  ")
        assert result.user.email == TEST_USER_EMAIL

    def test_duplicate_email_raises(self, auth_service, mock_email_client):
        auth_service.register(TEST_USER_EMAIL)
        mock_email_client.reset_mock()

        with pytest.raises(UserAlreadyExistsError):
            auth_service.register("  TESTUSER@example.com")

        mock_email_client.send_magic_link.assert_not_called()

    def test_email_failure_keeps_account(self, auth_service, directory, mock_email_client):
        mock_email_client.send_magic_link.side_effect = EmailGatewayError("Gateway error: down")

        with pytest.raises(EmailGatewayError):
            auth_service.register(TEST_USER_EMAIL)

        assert directory.get_user_by_email(TEST_USER_EMAIL) is not None


class TestVerifyMagicLink:
    """Token redemption."""

    @pytest.fixture
    def issued(self, auth_service, directory, clock, sent_token):
        """An active user holding a freshly sent token."""
        user = directory.create_user(TEST_USER_EMAIL, "Test User", clock())
        auth_service.request_login_link(TEST_USER_EMAIL)
        return user, sent_token()

    def test_valid_token_returns_identity(self, auth_service, issued):
        user, token = issued

        identity = auth_service.verify_magic_link(token)

        assert identity.id == user.id
        assert identity.email == TEST_USER_EMAIL
        assert identity.name == "Test User"
        assert identity.is_active is True

    def test_clears_token_and_stamps_last_login(self, auth_service, directory, clock, issued):
        user, token = issued
        clock.advance(minutes=1)

        auth_service.verify_magic_link(token)

        stored = directory.get_user_by_id(user.id)
        assert stored.magic_link_token is None
        assert stored.magic_link_expiration is None
        assert stored.last_login_at == clock()

    def test_already_used_token_raises(self, auth_service, issued):
        _, token = issued
        auth_service.verify_magic_link(token)

        with pytest.raises(InvalidTokenError):
            auth_service.verify_magic_link(token)

    def test_unknown_token_raises(self, auth_service, issued):
        with pytest.raises(InvalidTokenError, match="Invalid or expired token"):
            auth_service.verify_magic_link("x" * 43)

    def test_empty_token_raises_invalid_request(self, auth_service):
        with pytest.raises(InvalidRequestError):
            auth_service.verify_magic_link("")

    def test_valid_just_before_expiry(self, auth_service, clock, issued):
        _, token = issued
        clock.advance(minutes=15, microseconds=-1)

        assert auth_service.verify_magic_link(token).email == TEST_USER_EMAIL

    def test_expired_at_exact_expiry_instant(self, auth_service, clock, issued):
        _, token = issued
        clock.advance(minutes=15)

        with pytest.raises(InvalidTokenError):
            auth_service.verify_magic_link(token)

    def test_inactive_user_raises_and_keeps_token(self, auth_service, directory, clock, issued):
        user, token = issued
        directory.deactivate_user(user.id, clock())

        with pytest.raises(UserInactiveError):
            auth_service.verify_magic_link(token)

        assert directory.get_user_by_id(user.id).magic_link_token == token

    def test_logs_verified(self, auth_service, mock_security_logger, issued):
        _, token = issued
        mock_security_logger.reset_mock()

        auth_service.verify_magic_link(token, ip_address="10.0.0.1")

        assert _logged_events(mock_security_logger) == [SecurityEvent.MAGIC_LINK_VERIFIED]

    def test_failure_log_never_contains_token(self, auth_service, mock_security_logger, issued):
        mock_security_logger.reset_mock()

        with pytest.raises(InvalidTokenError):
            auth_service.verify_magic_link("guessed-token-value")

        assert "guessed-token-value" not in repr(mock_security_logger.log.call_args_list)

    def test_redeem_lost_after_lookup_raises(self, config, token_issuer, mock_email_client,
                                             mock_security_logger, clock, sent_token):
        directory = InMemoryUserDirectory()
        spy = Mock(wraps=directory)
        service = AuthService(
            config=config,
            directory=spy,
            token_issuer=token_issuer,
            email_client=mock_email_client,
            security_logger=mock_security_logger,
            clock=clock,
        )
        service.register(TEST_USER_EMAIL)
        spy.redeem_magic_link_token.side_effect = lambda *args: None

        with pytest.raises(InvalidTokenError):
            service.verify_magic_link(sent_token())

    def test_users_tokens_are_independent(self, auth_service, directory, clock, sent_token):
        directory.create_user(TEST_USER_EMAIL, None, clock())
        directory.create_user(TEST_USER_B_EMAIL, None, clock())

        auth_service.request_login_link(TEST_USER_EMAIL)
        token_a = sent_token()
        auth_service.request_login_link(TEST_USER_B_EMAIL)
        token_b = sent_token()

        assert auth_service.verify_magic_link(token_a).email == TEST_USER_EMAIL
        assert auth_service.verify_magic_link(token_b).email == TEST_USER_B_EMAIL


class TestLinkReissueScenario:
    """T1 is replaced by T2; T2 works once; nothing works afterwards."""

    def test_full_sequence(self, auth_service, directory, clock, sent_token):
        directory.create_user(TEST_USER_EMAIL, None, clock())

        auth_service.request_login_link(TEST_USER_EMAIL)
        t1 = sent_token()
        clock.advance(minutes=1)
        auth_service.request_login_link(TEST_USER_EMAIL)
        t2 = sent_token()

        with pytest.raises(InvalidTokenError):
            auth_service.verify_magic_link(t1)

        assert auth_service.verify_magic_link(t2).email == TEST_USER_EMAIL

        for token in (t1, t2):
            with pytest.raises(InvalidTokenError):
                auth_service.verify_magic_link(token)


class TestConcurrentVerify:
    """Two simultaneous redemptions of one token: exactly one wins."""

    def test_exactly_one_success(self, auth_service, directory, clock, sent_token):
        directory.create_user(TEST_USER_EMAIL, None, clock())
        auth_service.request_login_link(TEST_USER_EMAIL)
        token = sent_token()

        workers = 8
        barrier = threading.Barrier(workers)

        def attempt():
            barrier.wait()
            try:
                auth_service.verify_magic_link(token)
                return "ok"
            except InvalidTokenError:
                return "invalid"

        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(lambda _: attempt(), range(workers)))

        assert outcomes.count("ok") == 1
        assert outcomes.count("invalid") == workers - 1


def _fail_on(*events):
    """side_effect for SecurityLogger.log that raises for the given events."""
    def _log(event, **kwargs):
        if event in events:
            raise RuntimeError("security_events insert failed")
    return _log


class TestAuditFailures:
    """A broken audit trail never changes what the caller sees."""

    @pytest.fixture
    def user(self, directory, clock):
        return directory.create_user(TEST_USER_EMAIL, "Test User", clock())

    def test_verify_succeeds_when_verified_event_fails(self, auth_service, directory, user,
                                                       mock_security_logger, sent_token):
        auth_service.request_login_link(TEST_USER_EMAIL)
        mock_security_logger.log.side_effect = _fail_on(SecurityEvent.MAGIC_LINK_VERIFIED)

        identity = auth_service.verify_magic_link(sent_token())

        assert identity.id == user.id
        assert identity.email == TEST_USER_EMAIL
        stored = directory.get_user_by_id(user.id)
        assert stored.magic_link_token is None
        assert stored.last_login_at is not None

    def test_failure_is_logged(self, auth_service, user, mock_security_logger, sent_token, caplog):
        auth_service.request_login_link(TEST_USER_EMAIL)
        mock_security_logger.log.side_effect = _fail_on(SecurityEvent.MAGIC_LINK_VERIFIED)

        with caplog.at_level("ERROR", logger="auth.service"):
            auth_service.verify_magic_link(sent_token())

        assert "magic_link_verified" in caplog.text

    def test_delivered_link_stays_valid_when_sent_event_fails(self, auth_service, directory, user,
                                                              mock_security_logger, sent_token):
        mock_security_logger.log.side_effect = _fail_on(SecurityEvent.MAGIC_LINK_SENT)

        result = auth_service.request_login_link(TEST_USER_EMAIL)

        assert result.user.id == user.id
        assert directory.get_user_by_id(user.id).magic_link_token == sent_token()
        assert auth_service.verify_magic_link(sent_token()).id == user.id

    def test_created_user_gets_link_when_created_event_fails(self, auth_service, mock_email_client,
                                                             mock_security_logger):
        mock_security_logger.log.side_effect = _fail_on(SecurityEvent.USER_CREATED)

        result = auth_service.request_magic_link(TEST_USER_EMAIL, "New User")

        assert result.created is True
        mock_email_client.send_magic_link.assert_called_once()

    def test_rejection_unchanged_when_failed_event_fails(self, auth_service, mock_security_logger):
        mock_security_logger.log.side_effect = _fail_on(SecurityEvent.MAGIC_LINK_FAILED)

        with pytest.raises(InvalidTokenError):
            auth_service.verify_magic_link("no-such-token")

    def test_session_event_failure_is_swallowed(self, auth_service, mock_security_logger):
        mock_security_logger.log.side_effect = _fail_on(SecurityEvent.SESSION_CREATED)

        auth_service.record_session_event(
            SecurityEvent.SESSION_CREATED,
            UUID("00000000-0000-0000-0000-000000000001"),
            TEST_USER_EMAIL,
        )

        mock_security_logger.log.assert_called_once()


class TestSessionHelpers:

    def test_get_active_user(self, auth_service, directory, clock):
        user = directory.create_user(TEST_USER_EMAIL, None, clock())
        assert auth_service.get_active_user(user.id).id == user.id

    def test_get_active_user_inactive_returns_none(self, auth_service, directory, clock):
        user = directory.create_user(TEST_USER_EMAIL, None, clock())
        directory.deactivate_user(user.id, clock())
        assert auth_service.get_active_user(user.id) is None

    def test_get_active_user_missing_returns_none(self, auth_service):
        assert auth_service.get_active_user(UUID("00000000-0000-0000-0000-000000000009")) is None

    def test_record_session_event(self, auth_service, mock_security_logger):
        user_id = UUID("00000000-0000-0000-0000-000000000001")

        auth_service.record_session_event(SecurityEvent.SESSION_ENDED, user_id, TEST_USER_EMAIL)

        mock_security_logger.log.assert_called_once_with(
            SecurityEvent.SESSION_ENDED,
            email=TEST_USER_EMAIL,
            user_id=user_id,
            ip_address=None,
            user_agent=None,
        )

"""Tests for access token signing, blacklisting and refresh token rotation."""

import base64
import json
from datetime import timedelta

import pytest

from learnquest.service.errors import InvalidOrExpiredTokenError
from learnquest.service.tokens import TokenIssuer
from learnquest.storage.models import UserRole


def _claims(token):
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


def _tamper(token, **changes):
    header, payload, sig = token.split(".")
    claims = _claims(token)
    claims.update(changes)
    body = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{header}.{body}.{sig}"


@pytest.fixture
def user(store):
    return store.create_user("ann@x.com", "Ann", "hash", is_active=True)


class TestAccessTokens:
    def test_claims_identify_the_user(self, tokens, settings, clock):
        issued = tokens.issue_access_token(7, "ann@x.com", "Ann", UserRole.INSTRUCTOR)
        claims = tokens.validate(issued.token)

        assert claims["sub"] == "7"
        assert claims["email"] == "ann@x.com"
        assert claims["name"] == "Ann"
        assert claims["role"] == "Instructor"
        assert claims["jti"] == issued.jti
        assert claims["iss"] == settings.jwt_issuer
        assert claims["aud"] == settings.jwt_audience
        assert issued.expires_at == clock.now + timedelta(minutes=60)

    def test_each_token_gets_a_unique_id(self, tokens):
        first = tokens.issue_access_token(1, "a@x.com", "A", UserRole.REGULAR_USER)
        second = tokens.issue_access_token(1, "a@x.com", "A", UserRole.REGULAR_USER)
        assert first.jti != second.jti
        assert first.token != second.token

    def test_custom_ttl(self, tokens, clock):
        issued = tokens.issue_access_token(1, "a@x.com", "A", "RegularUser", timedelta(days=30))
        assert issued.expires_at == clock.now + timedelta(days=30)

    def test_expired_token_is_rejected(self, tokens, clock):
        issued = tokens.issue_access_token(1, "a@x.com", "A", UserRole.REGULAR_USER)
        clock.advance(minutes=59)
        tokens.validate(issued.token)
        clock.advance(minutes=1)
        with pytest.raises(InvalidOrExpiredTokenError):
            tokens.validate(issued.token)

    def test_tampered_payload_is_rejected(self, tokens):
        issued = tokens.issue_access_token(1, "a@x.com", "A", UserRole.REGULAR_USER)
        with pytest.raises(InvalidOrExpiredTokenError):
            tokens.validate(_tamper(issued.token, role="Admin"))

    def test_token_from_another_secret_is_rejected(self, store, settings, clock, tokens):
        other = TokenIssuer(
            store,
            settings.model_copy(update={"jwt_secret": "another-secret-that-is-long-enough-xyz"}),
            clock=clock,
        )
        issued = other.issue_access_token(1, "a@x.com", "A", UserRole.REGULAR_USER)
        with pytest.raises(InvalidOrExpiredTokenError):
            tokens.validate(issued.token)

    def test_non_hs256_header_is_rejected(self, tokens):
        issued = tokens.issue_access_token(1, "a@x.com", "A", UserRole.REGULAR_USER)
        _, payload, sig = issued.token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        with pytest.raises(InvalidOrExpiredTokenError):
            tokens.validate(f"{header}.{payload}.{sig}")

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!.??.**", "é.é.é"])
    def test_garbage_is_rejected(self, tokens, garbage):
        with pytest.raises(InvalidOrExpiredTokenError):
            tokens.validate(garbage)

    def test_non_ascii_signature_is_rejected(self, tokens):
        issued = tokens.issue_access_token(1, "a@x.com", "A", UserRole.REGULAR_USER)
        header, payload, _ = issued.token.split(".")
        with pytest.raises(InvalidOrExpiredTokenError):
            tokens.validate(f"{header}.{payload}.ééé")

    def test_link_token_is_not_an_access_token(self, tokens):
        link = tokens.issue_verification_link_token("a@x.com", "123456")
        with pytest.raises(InvalidOrExpiredTokenError):
            tokens.validate(link)


class TestRevocation:
    def test_revoked_token_is_blacklisted(self, tokens, store):
        issued = tokens.issue_access_token(1, "a@x.com", "A", UserRole.REGULAR_USER)
        assert tokens.revoke(issued.token) is True
        assert store.is_token_blacklisted(issued.token)
        with pytest.raises(InvalidOrExpiredTokenError):
            tokens.validate(issued.token)

    def test_revoking_twice_is_harmless(self, tokens, store):
        issued = tokens.issue_access_token(1, "a@x.com", "A", UserRole.REGULAR_USER)
        tokens.revoke(issued.token)
        assert tokens.revoke(issued.token) is True
        assert len(store.blacklist) == 1

    def test_expired_token_is_not_blacklisted(self, tokens, store, clock):
        issued = tokens.issue_access_token(1, "a@x.com", "A", UserRole.REGULAR_USER)
        clock.advance(hours=2)
        assert tokens.revoke(issued.token) is False
        assert not store.blacklist

    def test_forged_token_cannot_be_revoked(self, tokens):
        issued = tokens.issue_access_token(1, "a@x.com", "A", UserRole.REGULAR_USER)
        with pytest.raises(InvalidOrExpiredTokenError, match="Logout failed"):
            tokens.revoke(_tamper(issued.token, sub="2"))

    def test_non_ascii_signature_cannot_be_revoked(self, tokens):
        issued = tokens.issue_access_token(1, "a@x.com", "A", UserRole.REGULAR_USER)
        header, payload, _ = issued.token.split(".")
        with pytest.raises(InvalidOrExpiredTokenError, match="Logout failed"):
            tokens.revoke(f"{header}.{payload}.ééé")

    def test_blacklist_entry_expires_with_token(self, tokens, store, clock):
        issued = tokens.issue_access_token(1, "a@x.com", "A", UserRole.REGULAR_USER)
        tokens.revoke(issued.token)
        assert store.blacklist[issued.token].expires_at == issued.expires_at


class TestRefreshTokens:
    def test_pair_contains_a_stored_refresh_token(self, tokens, store, user, clock):
        pair = tokens.issue_token_pair(user)
        record = store.get_refresh_token(pair.refresh.token)
        assert record.user_id == user.id
        assert record.expires_at == clock.now + timedelta(days=7)
        assert not record.is_revoked
        assert pair.user.id == user.id

    def test_refresh_token_rotates_and_works_once(self, tokens, store, user):
        pair = tokens.issue_token_pair(user)

        rotated = tokens.redeem_refresh_token(pair.refresh.token)

        assert rotated.refresh.token != pair.refresh.token
        assert tokens.validate(rotated.access.token)["sub"] == str(user.id)
        assert store.get_refresh_token(pair.refresh.token).is_revoked
        with pytest.raises(InvalidOrExpiredTokenError, match="refresh token"):
            tokens.redeem_refresh_token(pair.refresh.token)

    def test_expired_refresh_token_is_rejected(self, tokens, user, clock):
        pair = tokens.issue_token_pair(user)
        clock.advance(days=7)
        with pytest.raises(InvalidOrExpiredTokenError):
            tokens.redeem_refresh_token(pair.refresh.token)

    def test_unknown_refresh_token_is_rejected(self, tokens):
        with pytest.raises(InvalidOrExpiredTokenError):
            tokens.redeem_refresh_token("not-a-real-token")

    @pytest.mark.parametrize("change", ["deactivate", "delete"])
    def test_refresh_for_unusable_owner_fails_and_burns_token(self, tokens, store, user, change):
        pair = tokens.issue_token_pair(user)
        if change == "deactivate":
            store.set_user_active(user.id, False)
        else:
            store.set_user_deleted(user.id, True)

        with pytest.raises(InvalidOrExpiredTokenError):
            tokens.redeem_refresh_token(pair.refresh.token)

        assert store.get_refresh_token(pair.refresh.token).is_revoked
        assert len(store.refresh_tokens) == 1


class TestVerificationLinks:
    def test_link_round_trips_email_and_code(self, tokens):
        link = tokens.issue_verification_link_token("a@x.com", "123456")
        assert tokens.read_verification_link_token(link) == ("a@x.com", "123456")

    def test_link_expires_with_the_code(self, tokens, clock):
        link = tokens.issue_verification_link_token("a@x.com", "123456")
        clock.advance(minutes=30)
        with pytest.raises(InvalidOrExpiredTokenError):
            tokens.read_verification_link_token(link)

    def test_access_token_is_not_a_link(self, tokens):
        issued = tokens.issue_access_token(1, "a@x.com", "A", UserRole.REGULAR_USER)
        with pytest.raises(InvalidOrExpiredTokenError):
            tokens.read_verification_link_token(issued.token)


def test_purge_expired_drops_old_blacklist_and_refresh_rows(tokens, store, user, clock):
    access = tokens.issue_access_token(user.id, user.email, user.full_name, user.role)
    tokens.revoke(access.token)
    tokens.issue_token_pair(user)

    assert tokens.purge_expired() == 0
    clock.advance(hours=2)
    assert tokens.purge_expired() == 1
    clock.advance(days=7)
    assert tokens.purge_expired() == 1
    assert not store.blacklist
    assert not store.refresh_tokens

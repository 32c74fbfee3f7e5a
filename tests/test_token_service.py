from datetime import timedelta

import pytest

from tokenward.core.config import TokenConfig
from tokenward.core.exceptions import (
    DuplicateContact,
    FieldValidationError,
    InvalidCredentials,
    InvalidIdentity,
    InvalidToken,
    RateLimited,
    TokenExpired,
)
from tokenward.core.tokens import AccessClaims, TokenCodec, TokenKind
from tokenward.crud.crud_refresh_token import session_store
from tokenward.models.user import AuthProvider
from tokenward.schemas.user import UserRegister, UserUpdate
from tokenward.services.identity import IdentityClaims
from tokenward.services.rate_limit import LoginRateLimiter
from tokenward.services.token_service import ExternalCredentials, PasswordCredentials, TokenService

PASSWORD = "Secret123"


def _registration(**overrides) -> UserRegister:
    data = {
        "full_name": "Ada Lovelace",
        "email": "a@x.com",
        "device_id": "d1",
        "provider": AuthProvider.PASSWORD,
        "password": PASSWORD,
    }
    data.update(overrides)
    return UserRegister(**data)


async def _registered_pair(service: TokenService):
    user = await service.register(_registration())
    pair = await service.login(PasswordCredentials(password=PASSWORD, device_id="d1", email="a@x.com"))
    return user, pair


class TestRegister:
    async def test_password_account(self, service):
        user = await service.register(_registration())
        assert user.external_id
        assert user.provider is AuthProvider.PASSWORD
        assert user.hashed_password and user.hashed_password != PASSWORD
        assert user.last_device_id == "d1"

    async def test_password_required_for_password_accounts(self, service):
        with pytest.raises(FieldValidationError) as excinfo:
            await service.register(_registration(password=None))
        assert "password" in excinfo.value.errors

    async def test_password_rejected_for_delegated_accounts(self, service):
        with pytest.raises(FieldValidationError):
            await service.register(_registration(provider=AuthProvider.GOOGLE))

    async def test_delegated_account_without_password(self, service):
        user = await service.register(_registration(provider=AuthProvider.MOBILE_OTP, password=None, email=None,
                                                    mobile_number="+15550001111"))
        assert user.hashed_password is None
        assert user.mobile_number == "+15550001111"

    async def test_contact_required(self, service):
        with pytest.raises(FieldValidationError) as excinfo:
            await service.register(_registration(email=None))
        assert "email" in excinfo.value.errors

    async def test_duplicate_contact(self, service):
        await service.register(_registration())
        with pytest.raises(DuplicateContact):
            await service.register(_registration(full_name="Someone Else"))


class TestAuthenticate:
    async def test_login_issues_pair_and_records_login(self, service, codec, db):
        user, pair = await _registered_pair(service)
        access = codec.decode(pair.access_token)
        assert isinstance(access, AccessClaims)
        assert access.sub == user.external_id
        assert access.email == "a@x.com"
        assert access.name == "Ada Lovelace"
        assert pair.expires_in == 3600
        assert user.last_login_at is not None

        session = await session_store.find_by_token(db, token=pair.refresh_token)
        assert session.device_id == "d1"
        assert session.user_id == user.id

    async def test_login_by_mobile(self, service):
        await service.register(_registration(email=None, mobile_number="+15550001111"))
        pair = await service.login(PasswordCredentials(password=PASSWORD, device_id="d2", mobile_number="+15550001111"))
        assert pair.access_token

    async def test_wrong_password_creates_no_session(self, service, db):
        user = await service.register(_registration())
        user_id = user.id
        with pytest.raises(InvalidCredentials):
            await service.login(PasswordCredentials(password="Wrong1234", device_id="d1", email="a@x.com"))
        assert await session_store.count_active_for_user(db, user_id=user_id) == 0

    async def test_unknown_contact(self, service):
        with pytest.raises(InvalidCredentials):
            await service.login(PasswordCredentials(password=PASSWORD, device_id="d1", email="ghost@x.com"))

    async def test_mismatched_email_and_mobile(self, service):
        await service.register(_registration(mobile_number="+15550001111"))
        with pytest.raises(InvalidCredentials):
            await service.login(
                PasswordCredentials(password=PASSWORD, device_id="d1", email="a@x.com", mobile_number="+15559999999")
            )

    async def test_inactive_account(self, service):
        user = await service.register(_registration())
        await service.deactivate(user)
        with pytest.raises(InvalidCredentials):
            await service.login(PasswordCredentials(password=PASSWORD, device_id="d1", email="a@x.com"))

    async def test_delegated_account_cannot_use_password_login(self, service):
        await service.register(_registration(provider=AuthProvider.EMAIL_OTP, password=None))
        with pytest.raises(InvalidCredentials):
            await service.login(PasswordCredentials(password=PASSWORD, device_id="d1", email="a@x.com"))

    async def test_rate_limited(self, db, codec):
        service = TokenService(db, codec, rate_limiter=LoginRateLimiter("2/minute"))
        for _ in range(2):
            with pytest.raises(InvalidCredentials):
                await service.login(PasswordCredentials(password=PASSWORD, device_id="d1", email="ghost@x.com"))
        with pytest.raises(RateLimited):
            await service.login(PasswordCredentials(password=PASSWORD, device_id="d1", email="GHOST@x.com"))


class TestDelegated:
    def _claims(self, **overrides) -> IdentityClaims:
        data = {
            "uid": "google-uid-1",
            "provider": AuthProvider.GOOGLE,
            "email": "g@x.com",
            "email_verified": True,
            "name": "Grace Hopper",
        }
        data.update(overrides)
        return IdentityClaims(**data)

    async def test_first_login_creates_account(self, service):
        pair = await service.login(ExternalCredentials(claims=self._claims(), device_id="d1"))
        user = pair.user
        assert user.provider is AuthProvider.GOOGLE
        assert user.provider_uid == "google-uid-1"
        assert user.is_email_verified is True
        assert user.hashed_password is None

    async def test_next_login_resolves_and_overwrites_profile(self, service):
        first = await service.login(ExternalCredentials(claims=self._claims(), device_id="d1"))
        external_id = first.user.external_id
        await service.update_profile(first.user, UserUpdate(full_name="Local Edit"))

        second = await service.login(
            ExternalCredentials(claims=self._claims(name="Upstream Name", email_verified=False), device_id="d2")
        )
        assert second.user.external_id == external_id
        assert second.user.full_name == "Upstream Name"
        assert second.user.is_email_verified is True
        assert second.user.last_device_id == "d2"

    async def test_links_registered_row_with_same_provider(self, service):
        registered = await service.register(_registration(provider=AuthProvider.GOOGLE, password=None, email="g@x.com"))
        external_id = registered.external_id
        pair = await service.login(ExternalCredentials(claims=self._claims(), device_id="d1"))
        assert pair.user.external_id == external_id
        assert pair.user.provider_uid == "google-uid-1"

    async def test_contact_owned_by_password_account_is_a_clash(self, service):
        await service.register(_registration(email="g@x.com"))
        with pytest.raises(DuplicateContact):
            await service.login(ExternalCredentials(claims=self._claims(), device_id="d1"))

    async def test_phone_identity(self, service):
        claims = self._claims(uid="phone-uid", provider=AuthProvider.MOBILE_OTP, email=None,
                              phone_number="+15550003333", name=None)
        pair = await service.login(ExternalCredentials(claims=claims, device_id="d1"))
        assert pair.user.mobile_number == "+15550003333"
        assert pair.user.is_mobile_verified is True

    async def test_assertion_without_contact(self, service):
        with pytest.raises(InvalidIdentity):
            await service.login(ExternalCredentials(claims=self._claims(email=None), device_id="d1"))

    async def test_inactive_delegated_account(self, service):
        pair = await service.login(ExternalCredentials(claims=self._claims(), device_id="d1"))
        await service.deactivate(pair.user)
        with pytest.raises(InvalidCredentials):
            await service.login(ExternalCredentials(claims=self._claims(), device_id="d1"))


class TestRefresh:
    async def test_refresh_rotates(self, service, db):
        user, pair = await _registered_pair(service)
        refreshed = await service.refresh(pair.refresh_token)

        assert refreshed.refresh_token != pair.refresh_token
        claims = await service.validate_access(refreshed.access_token)
        assert claims.sub == user.external_id

        old = await session_store.find_by_token(db, token=pair.refresh_token)
        new = await session_store.find_by_token(db, token=refreshed.refresh_token)
        assert old.is_revoked is True
        assert new.is_revoked is False
        assert new.device_id == "d1"

        with pytest.raises(InvalidToken):
            await service.refresh(pair.refresh_token)

    async def test_refresh_without_rotation_returns_same_token(self, db, token_config):
        codec = TokenCodec(token_config.model_copy(update={"rotate_refresh_tokens": False}))
        service = TokenService(db, codec)
        _, pair = await _registered_pair(service)

        first = await service.refresh(pair.refresh_token)
        second = await service.refresh(pair.refresh_token)
        assert first.refresh_token == pair.refresh_token
        assert second.refresh_token == pair.refresh_token
        await service.validate_access(second.access_token)

    async def test_access_token_cannot_refresh(self, service):
        _, pair = await _registered_pair(service)
        with pytest.raises(InvalidToken):
            await service.refresh(pair.access_token)

    async def test_garbage_and_unknown_tokens(self, service, codec):
        with pytest.raises(InvalidToken):
            await service.refresh("not-a-token")
        # Well formed and signed, but never persisted
        orphan = codec.issue(TokenKind.REFRESH, "0b9a5f3e-8d57-4d8a-9a57-1c1b5a1e2f44")
        with pytest.raises(InvalidToken):
            await service.refresh(orphan)

    async def test_expired_refresh_token(self, db):
        codec = TokenCodec(TokenConfig(secret_key="k", refresh_ttl=timedelta(seconds=-60), leeway=timedelta(0)))
        service = TokenService(db, codec)
        _, pair = await _registered_pair(service)
        with pytest.raises(InvalidToken) as excinfo:
            await service.refresh(pair.refresh_token)
        assert isinstance(excinfo.value, TokenExpired)

    async def test_refresh_after_deactivation(self, service):
        user, pair = await _registered_pair(service)
        await service.deactivate(user)
        with pytest.raises(InvalidToken):
            await service.refresh(pair.refresh_token)

    async def test_revoke_then_refresh_in_another_session(self, session_factory, codec):
        async with session_factory() as db:
            _, pair = await _registered_pair(TokenService(db, codec))

        async with session_factory() as db:
            assert await TokenService(db, codec).revoke(pair.refresh_token) is True

        async with session_factory() as db:
            with pytest.raises(InvalidToken):
                await TokenService(db, codec).refresh(pair.refresh_token)

    async def test_second_rotation_of_same_token_loses(self, session_factory, codec):
        async with session_factory() as db:
            _, pair = await _registered_pair(TokenService(db, codec))

        async with session_factory() as first_db, session_factory() as second_db:
            winner = await TokenService(first_db, codec).refresh(pair.refresh_token)
            with pytest.raises(InvalidToken):
                await TokenService(second_db, codec).refresh(pair.refresh_token)
            await TokenService(second_db, codec).refresh(winner.refresh_token)


class TestRevoke:
    async def test_revoke_twice_succeeds(self, service, db):
        _, pair = await _registered_pair(service)
        assert await service.revoke(pair.refresh_token) is True
        assert await service.revoke(pair.refresh_token) is False
        session = await session_store.find_by_token(db, token=pair.refresh_token)
        assert session.is_revoked is True

    async def test_revoke_unknown_token(self, service):
        with pytest.raises(InvalidToken):
            await service.revoke("never-issued")

    async def test_revoke_foreign_session(self, service):
        _, pair = await _registered_pair(service)
        other = await service.register(_registration(email="b@x.com"))
        with pytest.raises(InvalidToken):
            await service.revoke(pair.refresh_token, owner=other)

    async def test_revoked_refresh_keeps_access_token_valid(self, service):
        _, pair = await _registered_pair(service)
        await service.revoke(pair.refresh_token)
        claims = await service.validate_access(pair.access_token)
        assert claims.email == "a@x.com"

    async def test_revoke_all(self, service):
        user, first = await _registered_pair(service)
        second = await service.issue_pair(user, device_id="d2")
        assert await service.active_session_count(user) == 2
        assert await service.revoke_all(user) == 2
        assert await service.active_session_count(user) == 0
        for token in (first.refresh_token, second.refresh_token):
            with pytest.raises(InvalidToken):
                await service.refresh(token)


class TestValidateAccess:
    async def test_refresh_token_is_not_an_access_token(self, service):
        _, pair = await _registered_pair(service)
        with pytest.raises(InvalidToken):
            await service.validate_access(pair.refresh_token)

    async def test_deactivated_owner(self, service):
        user, pair = await _registered_pair(service)
        await service.validate_access(pair.access_token)
        await service.deactivate(user)
        with pytest.raises(InvalidToken):
            await service.validate_access(pair.access_token)

    async def test_deactivate_revokes_sessions(self, service):
        user, pair = await _registered_pair(service)
        await service.issue_pair(user, device_id="d2")
        assert await service.deactivate(user) == 2
        assert await service.active_session_count(user) == 0

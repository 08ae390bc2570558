import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from identity import (
    AccountExists,
    AccountService,
    IdentityProvider,
    InvalidCredentials,
    account_path,
)
from store import DocumentStore


@pytest.fixture()
def accounts():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        service = AccountService(DocumentStore(session))
        service.register("alice", "hunter22")
        yield service


def test_sign_in_round_trip_and_sign_out(accounts: AccountService) -> None:
    provider = IdentityProvider("secret")

    token = provider.sign_in(accounts, " alice ", "hunter22")

    assert provider.current_user(token) == "alice"
    provider.sign_out(token)
    assert provider.current_user(token) is None


@pytest.mark.parametrize("password", [None, "", "hunter2", "HUNTER22", "x" * 100])
def test_wrong_or_missing_password_is_rejected(
    accounts: AccountService, password
) -> None:
    with pytest.raises(InvalidCredentials):
        IdentityProvider("secret").sign_in(accounts, "alice", password)


def test_unknown_user_is_rejected(accounts: AccountService) -> None:
    with pytest.raises(InvalidCredentials):
        IdentityProvider("secret").sign_in(accounts, "bob", "hunter22")


def test_passwords_are_stored_hashed(accounts: AccountService) -> None:
    stored = accounts.store.get_document(account_path("alice"))

    assert "hunter22" not in str(stored)
    assert stored["passwordHash"].startswith("$2")


def test_sign_up_issues_a_token_once_per_user_id(accounts: AccountService) -> None:
    provider = IdentityProvider("secret")

    token = provider.sign_up(accounts, "bob", "s3cret-pass")

    assert provider.current_user(token) == "bob"
    with pytest.raises(AccountExists):
        provider.sign_up(accounts, "bob", "another-pass")
    assert accounts.verify("bob", "s3cret-pass")
    assert not accounts.verify("bob", "another-pass")


def test_short_passwords_are_refused(accounts: AccountService) -> None:
    with pytest.raises(ValueError):
        accounts.register("carol", "abc")


def test_tokens_from_other_secrets_or_garbage_are_rejected(
    accounts: AccountService,
) -> None:
    token = IdentityProvider("one").sign_in(accounts, "alice", "hunter22")

    assert IdentityProvider("two").current_user(token) is None
    assert IdentityProvider("one").current_user("not-a-token") is None
    assert IdentityProvider("one").current_user(None) is None


def test_each_sign_in_gets_its_own_session(accounts: AccountService) -> None:
    provider = IdentityProvider("secret")
    first = provider.sign_in(accounts, "alice", "hunter22")
    second = provider.sign_in(accounts, "alice", "hunter22")

    provider.sign_out(first)

    assert provider.current_user(second) == "alice"


def test_expired_tokens_are_rejected(accounts: AccountService) -> None:
    provider = IdentityProvider("secret", max_age_hours=0)
    token = provider.sign_in(accounts, "alice", "hunter22")
    provider.max_age_seconds = -1

    assert provider.current_user(token) is None


@pytest.mark.parametrize("user_id", ["", "   ", "a/b"])
def test_invalid_user_ids_are_rejected(accounts: AccountService, user_id: str) -> None:
    with pytest.raises(ValueError):
        IdentityProvider("secret").sign_in(accounts, user_id, "hunter22")
    with pytest.raises(ValueError):
        accounts.register(user_id, "hunter22")

import pytest

from athenzpolicy.errors import (
    DenyByPolicyError,
    DomainExpiredError,
    DomainMismatchError,
    DomainNotFoundError,
    FetchPolicyError,
    InvalidPolicyResourceError,
    NoMatchError,
    PolicyError,
)


@pytest.mark.parametrize(
    "cls, text",
    [
        (DomainMismatchError, "Access denied due to domain mismatch between Resource and RoleToken"),
        (DomainNotFoundError, "Access denied due to domain not found in library cache"),
        (
            NoMatchError,
            "Access denied due to no match to any of the assertions defined in domain policy file",
        ),
        (InvalidPolicyResourceError, "Access denied due to invalid/empty policy resources"),
        (DenyByPolicyError, "Access Check was explicitly denied"),
        (DomainExpiredError, "Access denied due to expired domain policy file"),
        (FetchPolicyError, "Error fetching athenz policy"),
    ],
)
def test_default_messages(cls, text):
    err = cls()
    assert str(err) == text
    assert isinstance(err, PolicyError)


def test_wrap_prefixes_and_keeps_type():
    err = DenyByPolicyError().wrap("policy deny")
    assert str(err) == "policy deny: Access Check was explicitly denied"
    assert isinstance(err, DenyByPolicyError)
    assert isinstance(err.__cause__, DenyByPolicyError)


def test_wrap_twice():
    err = NoMatchError().wrap("a").wrap("b")
    assert str(err).startswith("b: a: ")


def test_explicit_message_overrides_default():
    assert str(FetchPolicyError("custom")) == "custom"
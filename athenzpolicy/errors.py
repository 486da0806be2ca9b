"""Errors raised while fetching, verifying and checking Athenz policies."""

from __future__ import annotations

__all__ = [
    "PolicyError",
    "DomainMismatchError",
    "DomainNotFoundError",
    "NoMatchError",
    "InvalidPolicyResourceError",
    "DenyByPolicyError",
    "DomainExpiredError",
    "FetchPolicyError",
]


class PolicyError(Exception):
    """Base class of every policy error; carries a default message."""

    default_message = "policy error"

    def __init__(self, *args: object) -> None:
        super().__init__(*(args or (self.default_message,)))

    def wrap(self, message: str) -> "PolicyError":
        """Return an error of the same kind whose text is prefixed by ``message``."""
        wrapped = type(self)(f"{message}: {self}")
        wrapped.__cause__ = self
        return wrapped


class DomainMismatchError(PolicyError):
    default_message = "Access denied due to domain mismatch between Resource and RoleToken"


class DomainNotFoundError(PolicyError):
    default_message = "Access denied due to domain not found in library cache"


class NoMatchError(PolicyError):
    default_message = (
        "Access denied due to no match to any of the assertions defined in domain policy file"
    )


class InvalidPolicyResourceError(PolicyError):
    default_message = "Access denied due to invalid/empty policy resources"


class DenyByPolicyError(PolicyError):
    default_message = "Access Check was explicitly denied"


class DomainExpiredError(PolicyError):
    default_message = "Access denied due to expired domain policy file"


class FetchPolicyError(PolicyError):
    default_message = "Error fetching athenz policy"
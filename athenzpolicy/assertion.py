"""Refined assertions used when checking a request against cached policies."""

from __future__ import annotations

import re
from dataclasses import dataclass

from .errors import DenyByPolicyError, InvalidPolicyResourceError, PolicyError

_META_CHARACTERS = frozenset("^$.|[+\\(){")


def is_regex_meta_character(target: str) -> bool:
    """Tell whether ``target`` must be escaped in a glob-derived pattern."""
    return target in _META_CHARACTERS


def pattern_from_glob(glob: str) -> str:
    """Turn a glob using ``*`` and ``?`` into an anchored regular expression."""
    parts = ["^"]
    for char in glob:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            if is_regex_meta_character(char):
                parts.append("\\")
            parts.append(char)
    parts.append("$")
    return "".join(parts)


@dataclass(eq=False)
class Assertion:
    """A compiled assertion: domain, action and resource patterns, and effect."""

    resource_domain: str
    action_regexp: re.Pattern
    resource_regexp: re.Pattern
    effect: Exception | None
    action: str
    resource: str
    action_regexp_string: str
    resource_regexp_string: str

    def matches(self, domain: str, action: str, resource: str) -> bool:
        """Tell whether the request falls under this assertion."""
        return (
            self.resource_domain.casefold() == domain.casefold()
            and self.action_regexp.fullmatch(action.lower()) is not None
            and self.resource_regexp.fullmatch(resource.lower()) is not None
        )

    def _key(self):
        effect = None if self.effect is None else (type(self.effect), str(self.effect))
        return (
            self.resource_domain,
            self.action_regexp,
            self.resource_regexp,
            effect,
            self.action,
            self.resource,
            self.action_regexp_string,
            self.resource_regexp_string,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Assertion):
            return NotImplemented
        return self._key() == other._key()

    __hash__ = None  # type: ignore[assignment]


def _compile(text: str) -> re.Pattern:
    try:
        return re.compile(pattern_from_glob(text.lower()))
    except re.error as exc:
        raise PolicyError(f"assertion format not correct: {exc}") from exc


def new_assertion(action: str, resource: str, effect: str) -> Assertion:
    """Build an assertion from its raw action, ``domain:resource`` and effect."""
    parts = resource.split(":", 1)
    if len(parts) < 2:
        raise InvalidPolicyResourceError().wrap("assertion format not correct")
    domain, res = parts
    action_re = _compile(action)
    resource_re = _compile(res)
    deny = DenyByPolicyError().wrap("policy deny") if effect.casefold() == "deny" else None
    return Assertion(
        resource_domain=domain,
        action_regexp=action_re,
        resource_regexp=resource_re,
        effect=deny,
        action=action,
        resource=res,
        action_regexp_string=action_re.pattern,
        resource_regexp_string=resource_re.pattern,
    )
import re

import pytest

from athenzpolicy.assertion import (
    Assertion,
    is_regex_meta_character,
    new_assertion,
    pattern_from_glob,
)
from athenzpolicy.errors import DenyByPolicyError, InvalidPolicyResourceError


def test_new_assertion_allow():
    got = new_assertion("act", "dom:res", "allow")
    want = Assertion(
        resource_domain="dom",
        action_regexp=re.compile("^act$"),
        resource_regexp=re.compile("^res$"),
        effect=None,
        action="act",
        resource="res",
        action_regexp_string="^act$",
        resource_regexp_string="^res$",
    )
    assert got == want


def test_new_assertion_deny():
    got = new_assertion("act", "dom:res", "deny")
    assert got.resource_domain == "dom"
    assert got.action_regexp == re.compile("^act$")
    assert got.resource_regexp == re.compile("^res$")
    assert isinstance(got.effect, DenyByPolicyError)
    assert str(got.effect) == "policy deny: Access Check was explicitly denied"


def test_new_assertion_wildcard():
    got = new_assertion("*[act]?", "dom:*[res]?", "allow")
    assert got.action == "*[act]?"
    assert got.resource == "*[res]?"
    assert got.resource_domain == "dom"
    assert got.action_regexp_string == "^.*\\[act].$"
    assert got.resource_regexp_string == "^.*\\[res].$"
    assert got.effect is None


def test_new_assertion_invalid_resource():
    with pytest.raises(InvalidPolicyResourceError) as info:
        new_assertion("act", "domres", "deny")
    assert str(info.value) == (
        "assertion format not correct: Access denied due to invalid/empty policy resources"
    )


def test_new_assertion_regex_chars_escaped():
    got = new_assertion("act", "dom:res(", "deny")
    assert got.resource_domain == "dom"
    assert got.resource_regexp_string == "^res\\($"
    assert str(got.effect) == "policy deny: Access Check was explicitly denied"


@pytest.mark.parametrize(
    "char, want",
    [("^", True), ("$", True), (".", True), (")", True), ("*", False), ("]", False), ("a", False)],
)
def test_is_regex_meta_character(char, want):
    assert is_regex_meta_character(char) is want


@pytest.mark.parametrize(
    "glob, want",
    [
        ("^$.|[+\\(){", "^\\^\\$\\.\\|\\[\\+\\\\\\(\\)\\{$"),
        (".*wild?card?-*test*", "^\\..*wild.card.-.*test.*$"),
        ("\\*test\\?", "^\\\\.*test\\\\.$"),
    ],
)
def test_pattern_from_glob(glob, want):
    got = pattern_from_glob(glob)
    assert got == want
    assert re.compile(got).pattern == want


@pytest.mark.parametrize(
    "action_glob, resource, action, target, want",
    [
        ("*Act?", "dummyDom:dummyRes", "dummyAct1", "dummyRes", True),
        ("*Act?", "dummyDom:dummyRes", "dummyAct1234", "dummyRes", False),
        ("dummyAct", "dummyDom:*Res?", "dummyAct", "dummyRes1", True),
        ("dummyAct", "dummyDom:*Res?", "dummyAct", "dummyRes", False),
        ("dummyAct1|dummyAct2", "dummyDom:dummyRes", "dummyAct1", "dummyRes", False),
        ("dummyAct", "dummyDom:dummyRes.*", "dummyAct", "dummyRes1234", False),
        ("dummyAct?", "dummyDom:dummyRes", "dummyAct", "-dummyRes", False),
        ("\\*Act\\?", "dummyDom:\\*Res\\?", "\\dummyAct\\1", "\\dummyRes\\1", True),
        ("\\*Act\\?", "dummyDom:\\*Res\\?", "*Act?", "*Res?", False),
    ],
)
def test_matches(action_glob, resource, action, target, want):
    assertion = new_assertion(action_glob, resource, "allow")
    assert assertion.matches("dummyDom", action, target) is want


def test_matches_domain_mismatch():
    assertion = new_assertion("dummyAct", "dummyDom3:dummyRes", "allow")
    assert assertion.matches("dummyDom", "dummyAct", "dummyRes") is False
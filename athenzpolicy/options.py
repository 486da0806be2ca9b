"""Configuration of the policy daemon through option callables."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Optional

import requests

__all__ = [
    "DaemonOptions",
    "UnsupportedSchemeError",
    "Option",
    "DEFAULT_OPTIONS",
    "parse_duration",
    "with_pub_key_provider",
    "with_athenz_url",
    "with_athenz_domains",
    "with_expiry_margin",
    "with_refresh_period",
    "with_purge_period",
    "with_retry_delay",
    "with_retry_attempts",
    "with_http_client",
]

_UNIT_MICROS = {
    "ns": 0.001,
    "us": 1.0,
    "µs": 1.0,
    "μs": 1.0,
    "ms": 1_000.0,
    "s": 1_000_000.0,
    "m": 60_000_000.0,
    "h": 3_600_000_000.0,
}
_NUMBER = r"(?:\d+(?:\.\d*)?|\.\d+)"
_UNIT = r"(?:ns|us|µs|μs|ms|s|m|h)"
_DURATION = re.compile(rf"([+-]?)((?:{_NUMBER}{_UNIT})+|0)")
_PART = re.compile(rf"({_NUMBER})({_UNIT})")


class UnsupportedSchemeError(ValueError):
    """The Athenz URL uses a scheme other than http or https."""

    def __init__(self, message: str = "unsupported scheme") -> None:
        super().__init__(message)


@dataclass
class DaemonOptions:
    """Settings of a policy daemon."""

    expiry_margin: timedelta = timedelta(0)
    refresh_period: timedelta = timedelta(0)
    purge_period: timedelta = timedelta(0)
    retry_delay: timedelta = timedelta(0)
    retry_attempts: int = 0
    athenz_url: str = ""
    athenz_domains: list[str] = field(default_factory=list)
    session: Optional[requests.Session] = None
    pub_key_provider: Optional[Callable[..., Any]] = None


Option = Callable[[DaemonOptions], None]


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``1h30m``, ``5s`` or ``100ms``."""
    match = _DURATION.fullmatch(text)
    if match is None:
        raise ValueError(f'time: invalid duration "{text}"')
    sign, body = match.groups()
    if body == "0":
        return timedelta(0)
    micros = sum(float(number) * _UNIT_MICROS[unit] for number, unit in _PART.findall(body))
    return timedelta(microseconds=-micros if sign == "-" else micros)


def _duration_option(name: str, label: str, text: str) -> Option:
    def apply(options: DaemonOptions) -> None:
        if not text:
            return
        try:
            value = parse_duration(text)
        except ValueError as exc:
            raise ValueError(f"invalid {label}: {exc}") from exc
        setattr(options, name, value)

    return apply


def with_pub_key_provider(provider: Optional[Callable[..., Any]]) -> Option:
    """Set the public key provider used to verify policies."""

    def apply(options: DaemonOptions) -> None:
        if provider is not None:
            options.pub_key_provider = provider

    return apply


def _trim_http_scheme(url: str) -> str:
    for prefix in ("https://", "http://"):
        if url.startswith(prefix):
            return url[len(prefix):]
    return url


def with_athenz_url(url: str) -> Option:
    """Set the Athenz host and path; an http or https scheme is dropped."""

    def apply(options: DaemonOptions) -> None:
        trimmed = _trim_http_scheme(url)
        if "://" in trimmed:
            raise UnsupportedSchemeError()
        options.athenz_url = trimmed

    return apply


def with_athenz_domains(*args: str) -> Option:
    """Set the Athenz domains whose policies are fetched."""

    def apply(options: DaemonOptions) -> None:
        if args:
            options.athenz_domains = list(args)

    return apply


def with_expiry_margin(duration: str) -> Option:
    """Refresh a policy this long before it actually expires."""
    return _duration_option("expiry_margin", "expiry margin", duration)


def with_refresh_period(duration: str) -> Option:
    """Set how often policies are refreshed."""
    return _duration_option("refresh_period", "refresh period", duration)


def with_purge_period(duration: str) -> Option:
    """Set how often expired cache entries are purged."""
    return _duration_option("purge_period", "purge period", duration)


def with_retry_delay(duration: str) -> Option:
    """Set the delay between fetch retries."""
    return _duration_option("retry_delay", "retry delay", duration)


def with_retry_attempts(count: int) -> Option:
    """Set the number of fetch retries; zero leaves the setting alone."""

    def apply(options: DaemonOptions) -> None:
        if count != 0:
            options.retry_attempts = count

    return apply


def with_http_client(session: Optional[requests.Session]) -> Option:
    """Set the HTTP session used for fetching."""

    def apply(options: DaemonOptions) -> None:
        if session is not None:
            options.session = session

    return apply


DEFAULT_OPTIONS: tuple[Option, ...] = (
    with_expiry_margin("3h"),
    with_refresh_period("30m"),
    with_purge_period("1h"),
    with_retry_delay("1m"),
    with_retry_attempts(2),
)
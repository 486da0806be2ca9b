"""The daemon that keeps role policies of Athenz domains cached and checks requests."""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from .assertion import Assertion, new_assertion
from .errors import NoMatchError, PolicyError
from .fetcher import Fetcher
from .options import DEFAULT_OPTIONS, DaemonOptions
from .signed_policy import PolicyAssertion, SignedPolicy

__all__ = [
    "ExpiringCache",
    "PolicyDaemon",
    "fetch_and_cache_policy",
    "simplify_and_cache_policy",
]

log = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _cancelled() -> PolicyError:
    return PolicyError("context canceled")


class ExpiringCache:
    """A thread-safe mapping whose entries may expire."""

    def __init__(self, on_expired: Optional[Callable[[str], None]] = None) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, tuple[Any, Optional[datetime]]] = {}
        self.on_expired = on_expired

    def set(self, key: str, value: Any, ttl: Optional[timedelta] = None) -> None:
        """Store ``value``; with a ``ttl`` it expires after that long."""
        expiry = None if ttl is None else _now() + ttl
        with self._lock:
            self._items[key] = (value, expiry)

    def _live(self, key: str) -> Optional[tuple[Any, Optional[datetime]]]:
        item = self._items.get(key)
        if item is None:
            return None
        if item[1] is not None and item[1] <= _now():
            return None
        return item

    def get(self, key: str) -> Any:
        """Return the live value for ``key``, or None."""
        with self._lock:
            item = self._live(key)
        return None if item is None else item[0]

    def get_with_expiry(self, key: str) -> Optional[tuple[Any, Optional[datetime]]]:
        """Return ``(value, expiry)`` for a live entry, or None."""
        with self._lock:
            return self._live(key)

    def delete_expired(self) -> list[str]:
        """Drop expired entries, call the expiry hook for each, return their keys."""
        now = _now()
        with self._lock:
            expired = [k for k, (_, e) in self._items.items() if e is not None and e <= now]
            for key in expired:
                del self._items[key]
        if self.on_expired is not None:
            for key in expired:
                self.on_expired(key)
        return expired

    def to_dict(self) -> dict[str, Any]:
        """Return the live entries as a plain dict."""
        now = _now()
        with self._lock:
            return {k: v for k, (v, e) in self._items.items() if e is None or e > now}

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        return len(self.to_dict())


def fetch_and_cache_policy(
    cache: ExpiringCache, fetcher: Any, cancel: Optional[threading.Event] = None
) -> None:
    """Fetch a domain's policy (falling back to its cache) and store its assertions."""
    try:
        sp = fetcher.fetch_with_retry()
    except Exception as exc:
        log.error("fetch policy fail, error: %s", exc)
        sp = getattr(exc, "policy", None)
        if sp is None:
            raise PolicyError(f"fetch policy fail: {exc}") from exc
    if sp is None:
        raise PolicyError("fetch policy fail: no policy")

    log.debug("will merge policy, domain: %s", getattr(fetcher, "domain", ""))
    try:
        simplify_and_cache_policy(cache, sp, cancel)
    except Exception as exc:
        log.debug("simplify and cache policy fail, error: %s", exc)
        raise PolicyError(f"simplify and cache policy fail: {exc}") from exc


def simplify_and_cache_policy(
    cache: ExpiringCache, policy: SignedPolicy, cancel: Optional[threading.Event] = None
) -> None:
    """Merge duplicate assertions (deny wins) and cache them by role, denies first."""
    spd = policy.signed_policy_data
    policies = spd.policy_data.policies if spd is not None and spd.policy_data is not None else []

    merged: dict[tuple[str, str, str], PolicyAssertion] = {}
    for pol in policies:
        for raw in pol.assertions:
            if cancel is not None and cancel.is_set():
                raise PolicyError("error simplify and cache policy: context canceled")
            key = (raw.role, raw.action, raw.resource)
            if key not in merged or raw.effect.casefold() == "deny":
                merged[key] = raw

    ttl = None if spd is None or spd.expires is None else spd.expires - _now()
    for raw in merged.values():
        assertion = new_assertion(raw.action, raw.resource, raw.effect)
        existing: list[Assertion] = cache.get(raw.role) or []
        if assertion.effect is None:
            updated = [*existing, assertion]
        else:
            updated = [assertion, *existing]
        cache.set(raw.role, updated, ttl)
        log.debug("added assertion to the tmp cache: %s", raw)


class PolicyDaemon:
    """Keeps role policies of the configured domains fresh and checks access."""

    def __init__(self, *args: Callable[[DaemonOptions], None]) -> None:
        options = DaemonOptions()
        for option in (*DEFAULT_OPTIONS, *args):
            try:
                option(options)
            except Exception as exc:
                raise PolicyError(f"error create policyd: {exc}") from exc
        self.options = options
        self.role_policies = self._new_cache()
        self.fetchers: dict[str, Any] = {
            domain: Fetcher(
                domain,
                options.athenz_url,
                self._verify,
                session=options.session,
                expiry_margin=options.expiry_margin,
                retry_delay=options.retry_delay,
                retry_attempts=options.retry_attempts,
            )
            for domain in options.athenz_domains
        }
        self._stop_event: Optional[threading.Event] = None
        self._threads: list[threading.Thread] = []

    def _verify(self, sp: SignedPolicy) -> None:
        provider = self.options.pub_key_provider
        if provider is None:
            raise PolicyError("no public key provider")
        sp.verify(provider)

    def _new_cache(self) -> ExpiringCache:
        return ExpiringCache(on_expired=self._refresh_expired)

    def _refresh_expired(self, key: str) -> None:
        fetcher = self.fetchers.get(key.split(":role.")[0])
        if fetcher is None:
            return
        try:
            fetch_and_cache_policy(self.role_policies, fetcher)
        except Exception as exc:
            log.error("refresh of expired policy %s fail: %s", key, exc)

    def start(self) -> "queue.Queue[Exception]":
        """Refresh policies periodically in the background; errors go to the returned queue."""
        if any(t.is_alive() for t in self._threads):
            raise RuntimeError("policy daemon already started")
        if self.options.refresh_period <= timedelta(0):
            raise ValueError("refresh period must be positive")
        log.info("Starting policyd updater")
        stop = threading.Event()
        errors: "queue.Queue[Exception]" = queue.Queue()
        self._stop_event = stop
        self._threads = [threading.Thread(target=self._run, args=(stop, errors), daemon=True)]
        if self.options.purge_period > timedelta(0):
            self._threads.append(threading.Thread(target=self._purge, args=(stop,), daemon=True))
        for thread in self._threads:
            thread.start()
        return errors

    def stop(self) -> None:
        """Stop the background refresh and wait for it to finish."""
        if self._stop_event is not None:
            self._stop_event.set()
        for thread in self._threads:
            thread.join()
        self._threads = []

    def _run(self, stop: threading.Event, errors: "queue.Queue[Exception]") -> None:
        refresh = self.options.refresh_period.total_seconds()
        delay = self.options.retry_delay.total_seconds()
        retrying = False
        while True:
            if not retrying and stop.wait(refresh):
                break
            if stop.is_set():
                break
            try:
                self.update(stop)
                retrying = False
            except Exception as exc:
                errors.put(PolicyError(f"error update policy: {exc}"))
                if retrying and stop.wait(delay):
                    break
                retrying = True
        log.info("Stopping policyd updater")
        errors.put(_cancelled())

    def _purge(self, stop: threading.Event) -> None:
        period = self.options.purge_period.total_seconds()
        while not stop.wait(period):
            self.role_policies.delete_expired()

    def update(self, cancel: Optional[threading.Event] = None) -> None:
        """Fetch every domain's policy and swap the cache in only if all succeed."""
        job_id = int(time.time())
        log.info("[%d] will update policy", job_id)
        if cancel is not None and cancel.is_set():
            log.info("Update policy interrupted")
            raise _cancelled()

        fresh = self._new_cache()
        fetchers = list(self.fetchers.values())
        if fetchers:
            with ThreadPoolExecutor(max_workers=min(32, len(fetchers))) as pool:
                futures = [pool.submit(self._fetch_into, fresh, f, cancel) for f in fetchers]
                failures = [e for e in (fut.exception() for fut in futures) if e is not None]
            if failures:
                log.error("[%d] update policy fail", job_id)
                raise failures[0]

        self.role_policies, old = fresh, self.role_policies
        old.clear()
        log.info("[%d] update policy done", job_id)

    @staticmethod
    def _fetch_into(
        cache: ExpiringCache, fetcher: Any, cancel: Optional[threading.Event]
    ) -> None:
        if cancel is not None and cancel.is_set():
            raise _cancelled()
        fetch_and_cache_policy(cache, fetcher, cancel)

    def check_policy(self, domain: str, roles: list[str], action: str, resource: str) -> None:
        """Return if any role allows the request; raise if denied or unmatched.

        Only action and resource accept ``*`` and ``?`` wildcards.
        """
        allowed = False
        for role in roles:
            assertions: list[Assertion] = self.role_policies.get(f"{domain}:role.{role}") or []
            for assertion in assertions:
                if assertion.matches(domain, action, resource):
                    if assertion.effect is not None:
                        log.debug(
                            "check policy domain: %s, roles: %s, action: %s, resource: %s, denied",
                            domain, roles, action, resource,
                        )
                        raise type(assertion.effect)(str(assertion.effect))
                    allowed = True
                    break
        if allowed:
            return None
        raise NoMatchError().wrap("no match")

    def get_policy_cache(self) -> dict[str, Any]:
        """Return the cached role policies."""
        return self.role_policies.to_dict()
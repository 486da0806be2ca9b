"""Fetching of a domain's signed policy from ZTS, with ETag caching and retries."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import requests

from .errors import FetchPolicyError, PolicyError
from .signed_policy import ZERO_TIME, SignedPolicy, _time_text

log = logging.getLogger(__name__)


def flush_and_close(stream: Any) -> None:
    """Drain a readable stream and close it; errors are raised."""
    if stream is None:
        return
    while stream.read(8192):
        pass
    stream.close()


@dataclass
class TaggedPolicy:
    """A fetched policy together with its ETag and timings."""

    etag: str = ""
    etag_expiry: datetime = ZERO_TIME
    sp: Optional[SignedPolicy] = None
    ctime: datetime = ZERO_TIME

    def __str__(self) -> str:
        domain = ""
        if self.sp is not None and self.sp.signed_policy_data is not None:
            pd = self.sp.signed_policy_data.policy_data
            if pd is not None:
                domain = pd.domain
        return (
            f"{{ ctime: {_time_text(self.ctime)}, eTag: {self.etag}, "
            f"eTagExpiry: {_time_text(self.etag_expiry)}, sp.domain: {domain} }}"
        )


class FetchRetryError(PolicyError):
    """Every attempt failed; ``policy`` holds the cached policy, if any."""

    def __init__(self, message: str, policy: Optional[SignedPolicy] = None) -> None:
        super().__init__(message)
        self.policy = policy


def _subtract(moment: datetime, delta: timedelta) -> datetime:
    try:
        return moment - delta
    except OverflowError:
        return ZERO_TIME


class Fetcher:
    """Fetches and verifies one domain's signed policy."""

    def __init__(
        self,
        domain: str,
        athenz_url: str,
        verifier: Callable[[SignedPolicy], None],
        *,
        session: Optional[requests.Session] = None,
        expiry_margin: timedelta = timedelta(0),
        retry_delay: timedelta = timedelta(0),
        retry_attempts: int = 0,
        policy_cache: Optional[TaggedPolicy] = None,
    ) -> None:
        self.domain = domain
        self.athenz_url = athenz_url
        self.verifier = verifier
        self.session = session if session is not None else requests.Session()
        self.expiry_margin = expiry_margin
        self.retry_delay = retry_delay
        self.retry_attempts = retry_attempts
        self.policy_cache = policy_cache

    def fetch(self) -> Optional[SignedPolicy]:
        """Fetch the policy once, using the cached ETag while it is fresh."""
        log.info("will fetch policy for domain: %s", self.domain)
        url = f"https://{self.athenz_url}/domain/{self.domain}/signed_policy_data"
        cached = self.policy_cache
        headers = {}
        if cached is not None and cached.etag and cached.etag_expiry > datetime.now(timezone.utc):
            headers["If-None-Match"] = cached.etag

        try:
            request = self.session.prepare_request(requests.Request("GET", url, headers=headers))
        except Exception as exc:
            raise PolicyError(f"create fetch policy request fail: {exc}") from exc
        try:
            response = self.session.send(request)
        except Exception as exc:
            raise PolicyError(f"fetch policy HTTP request fail: {exc}") from exc

        try:
            if response.status_code == 304:
                log.debug("policy not modified, use cache for domain: %s", self.domain)
                return cached.sp if cached is not None else None
            if response.status_code != 200:
                log.error("fetch policy failed, domain: %s, status: %d", self.domain, response.status_code)
                raise FetchPolicyError().wrap("fetch policy HTTP response != 200 OK")
            try:
                sp = SignedPolicy.from_dict(json.loads(response.content))
            except ValueError as exc:
                raise PolicyError(f"policy decode fail: {exc}") from exc
            try:
                self.verifier(sp)
            except Exception as exc:
                raise PolicyError(f"invalid policy: {exc}") from exc
        finally:
            response.close()

        spd = sp.signed_policy_data
        expires = spd.expires if spd is not None and spd.expires is not None else ZERO_TIME
        self.policy_cache = TaggedPolicy(
            etag=response.headers.get("ETag", ""),
            etag_expiry=_subtract(expires, self.expiry_margin),
            sp=sp,
            ctime=datetime.now(timezone.utc),
        )
        log.debug("set policy cache for domain: %s, policy: %s", self.domain, self.policy_cache)
        return sp

    def fetch_with_retry(self) -> Optional[SignedPolicy]:
        """Fetch with retries; on total failure raise FetchRetryError carrying the cache."""
        last: Optional[Exception] = None
        for _ in range(self.retry_attempts + 1):
            try:
                return self.fetch()
            except Exception as exc:
                last = exc
                time.sleep(self.retry_delay.total_seconds())

        if last is None:
            last = PolicyError(f"retryAttempts {self.retry_attempts}")
        message = f"max. retry count excess: {last}"
        log.info("will use policy cache, since: %s, domain: %s", message, self.domain)
        cached = self.policy_cache
        if cached is None:
            raise FetchRetryError(f"no policy cache: {message}") from last
        raise FetchRetryError(message, cached.sp) from last
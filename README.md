# athenzpolicy

A library that fetches signed role policies from an Athenz ZTS server,
verifies their signatures, keeps them in an expiring in-memory cache and
answers access checks against them.

## Installation

```
pip install athenzpolicy
```

For running the test suite:

```
pip install "athenzpolicy[test]"
pytest
```

## Modules

- `athenzpolicy.errors`: `PolicyError` and its subclasses
  `DomainMismatchError`, `DomainNotFoundError`, `NoMatchError`,
  `InvalidPolicyResourceError`, `DenyByPolicyError`, `DomainExpiredError` and
  `FetchPolicyError`. Each carries a default message; `PolicyError.wrap(message)`
  returns an error of the same class whose text is `"<message>: <original>"`.
- `athenzpolicy.signed_policy`: the policy document classes
  (`SignedPolicy`, `SignedPolicyData`, `PolicyData`, `Policy`,
  `PolicyAssertion`), the `KeyEnv` enum (`ZTS`, `ZMS`) and the helpers
  `parse_timestamp` / `format_timestamp`. `SignedPolicy.from_dict` builds a
  policy from decoded JSON; an unreadable timestamp becomes the zero time.
  `SignedPolicy.verify(provider)` checks that policy data and an expiry are
  present, that the policy has not expired, and then the ZTS signature of the
  signed policy data and the ZMS signature of the policy data. The provider is
  called as `provider(env, key_id)` and returns an object with a
  `verify(data, signature)` method that raises on a bad signature, or `None`
  when the key is unknown.
- `athenzpolicy.fetcher`: `Fetcher` downloads
  `https://<athenz url>/domain/<domain>/signed_policy_data` with a
  `requests.Session`. While the cached ETag has not passed its expiry (the
  policy's expiry minus the expiry margin) it sends `If-None-Match`, and on a
  304 it returns the cached policy. `fetch_with_retry()` makes
  `retry_attempts + 1` attempts, sleeping `retry_delay` after each failure;
  when all fail it raises `FetchRetryError`, whose `policy` attribute holds
  the last fetched policy or `None`. `TaggedPolicy` is the cached entry and
  `flush_and_close` drains and closes a stream.
- `athenzpolicy.assertion`: `new_assertion(action, resource, effect)` turns a
  raw assertion into an `Assertion` matcher. The resource must have the form
  `domain:resource`, otherwise `InvalidPolicyResourceError` is raised. Only the
  glob wildcards `*` and `?` are special in actions and resources; every other
  character matches itself, and matching is case-insensitive.
  `pattern_from_glob` and `is_regex_meta_character` expose the conversion.
- `athenzpolicy.options`: option callables for the daemon and
  `parse_duration`.
- `athenzpolicy.daemon`: `PolicyDaemon`, the thread-safe `ExpiringCache`, and
  the functions `fetch_and_cache_policy` and `simplify_and_cache_policy`.
  Duplicate assertions for the same role, action and resource are merged with
  deny winning, and deny assertions are stored ahead of allow assertions; each
  cache entry expires with its policy.

## Usage

```python
from athenzpolicy.daemon import PolicyDaemon
from athenzpolicy.errors import PolicyError
from athenzpolicy.options import (
    with_athenz_domains,
    with_athenz_url,
    with_pub_key_provider,
    with_refresh_period,
)


def provider(env, key_id):
    # Return an object whose verify(data, signature) raises on a bad
    # signature, or None when no key with this id is known for env.
    return known_verifiers.get((env, key_id))


daemon = PolicyDaemon(
    with_athenz_url("https://zts.example.com/zts/v1"),
    with_athenz_domains("sports", "media"),
    with_pub_key_provider(provider),
    with_refresh_period("10m"),
)

daemon.update()          # first load; raises if any domain cannot be fetched
errors = daemon.start()  # refresh in the background

try:
    daemon.check_policy("sports", ["reader", "writer"], "read", "articles/2024")
except PolicyError as err:
    print("denied:", err)
else:
    print("allowed")

daemon.stop()
```

`update(cancel=None)` fetches every domain concurrently and replaces the cache
only if all of them succeed; a set `threading.Event` passed as `cancel`
interrupts it. `start()` runs the refresh in a background thread every refresh
period (retrying after the retry delay on failure) and a purge thread every
purge period, which drops expired entries and fetches their domain again. It
returns a `queue.Queue` that receives each update error, and a final
"context canceled" error once `stop()` has been called.

`check_policy` returns normally when access is allowed and raises otherwise:
`DenyByPolicyError` when a deny assertion matches, `NoMatchError` when nothing
matches. Domain and role names are taken literally. `get_policy_cache()`
returns the live cache entries as a dict keyed by `<domain>:role.<role>`.

### Options

Durations are strings such as `"90s"`, `"30m"`, `"1h30m"` or `"100ms"`
(units `ns`, `us`, `ms`, `s`, `m`, `h`); an invalid one makes `PolicyDaemon`
raise `PolicyError`. An empty string, a zero count, `None`, or no domains
leaves the setting as it was.

| Option                  | Default |
|-------------------------|---------|
| `with_expiry_margin`    | `3h`    |
| `with_refresh_period`   | `30m`   |
| `with_purge_period`     | `1h`    |
| `with_retry_delay`      | `1m`    |
| `with_retry_attempts`   | `2`     |
| `with_http_client`      | none; each fetcher then makes its own `requests.Session` |
| `with_athenz_url`       | none; `http://` and `https://` are stripped, other schemes raise `UnsupportedSchemeError` |
| `with_athenz_domains`   | none    |
| `with_pub_key_provider` | none; without one every fetched policy fails verification |

## What this package does not do

It does not obtain or manage public keys: the key provider, and the verifier
objects it returns, must come from the caller. It has no command-line program
and no server; it is a library to be used from other code.
"""Signed policy documents and their signature verification."""

from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .errors import PolicyError

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_TIMESTAMP = re.compile(r"^(\d{4})-(\d\d)-(\d\d)T(\d\d):(\d\d):(\d\d)(\.\d+)?Z$")


class KeyEnv(enum.Enum):
    """Which Athenz service a public key belongs to."""

    ZTS = "zts"
    ZMS = "zms"


def parse_timestamp(value: Any) -> datetime:
    """Parse an RDL timestamp; anything unreadable becomes the zero time."""
    if not isinstance(value, str):
        return ZERO_TIME
    match = _TIMESTAMP.match(value)
    if match is None:
        return ZERO_TIME
    year, month, day, hour, minute, second = (int(g) for g in match.groups()[:6])
    fraction = match.group(7)
    micro = int((fraction[1:] + "000000")[:6]) if fraction else 0
    try:
        return datetime(year, month, day, hour, minute, second, micro, tzinfo=timezone.utc)
    except ValueError:
        return ZERO_TIME


def format_timestamp(value: datetime) -> str:
    """Format a time as an RDL timestamp with millisecond precision."""
    v = value.astimezone(timezone.utc)
    return (
        f"{v.year:04d}-{v.month:02d}-{v.day:02d}T"
        f"{v.hour:02d}:{v.minute:02d}:{v.second:02d}.{v.microsecond // 1000:03d}Z"
    )


def _time_text(value: datetime) -> str:
    v = value.astimezone(timezone.utc)
    text = f"{v.year:04d}-{v.month:02d}-{v.day:02d} {v.hour:02d}:{v.minute:02d}:{v.second:02d}"
    if v.microsecond:
        text += "." + f"{v.microsecond:06d}".rstrip("0")
    return text + " +0000 UTC"


def _opt_time(value: Any) -> Optional[datetime]:
    return None if value is None else parse_timestamp(value)


@dataclass
class PolicyAssertion:
    role: str = ""
    resource: str = ""
    action: str = ""
    effect: str = ""

    def to_dict(self) -> dict:
        data = {"role": self.role, "resource": self.resource, "action": self.action}
        if self.effect:
            data["effect"] = self.effect
        return data

    @classmethod
    def _from_dict(cls, data: dict) -> "PolicyAssertion":
        return cls(
            role=data.get("role", ""),
            resource=data.get("resource", ""),
            action=data.get("action", ""),
            effect=data.get("effect", ""),
        )


@dataclass
class Policy:
    name: str = ""
    modified: Optional[datetime] = None
    assertions: list[PolicyAssertion] = field(default_factory=list)

    def to_dict(self) -> dict:
        data: dict = {"name": self.name}
        if self.modified is not None:
            data["modified"] = format_timestamp(self.modified)
        data["assertions"] = [a.to_dict() for a in self.assertions]
        return data

    @classmethod
    def _from_dict(cls, data: dict) -> "Policy":
        return cls(
            name=data.get("name", ""),
            modified=_opt_time(data.get("modified")),
            assertions=[PolicyAssertion._from_dict(a) for a in data.get("assertions") or []],
        )


@dataclass
class PolicyData:
    domain: str = ""
    policies: list[Policy] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"domain": self.domain, "policies": [p.to_dict() for p in self.policies]}

    @classmethod
    def _from_dict(cls, data: dict) -> "PolicyData":
        return cls(
            domain=data.get("domain", ""),
            policies=[Policy._from_dict(p) for p in data.get("policies") or []],
        )


@dataclass
class SignedPolicyData:
    policy_data: Optional[PolicyData] = None
    zms_signature: str = ""
    zms_key_id: str = ""
    modified: Optional[datetime] = None
    expires: Optional[datetime] = None

    def to_dict(self) -> dict:
        data: dict = {
            "policyData": None if self.policy_data is None else self.policy_data.to_dict(),
            "zmsSignature": self.zms_signature,
            "zmsKeyId": self.zms_key_id,
        }
        if self.modified is not None:
            data["modified"] = format_timestamp(self.modified)
        if self.expires is not None:
            data["expires"] = format_timestamp(self.expires)
        return data

    @classmethod
    def _from_dict(cls, data: dict) -> "SignedPolicyData":
        pd = data.get("policyData")
        return cls(
            policy_data=PolicyData._from_dict(pd) if isinstance(pd, dict) else None,
            zms_signature=data.get("zmsSignature", ""),
            zms_key_id=data.get("zmsKeyId", ""),
            modified=_opt_time(data.get("modified")),
            expires=_opt_time(data.get("expires")),
        )


def _canonical(data: Any) -> str:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


@dataclass
class SignedPolicy:
    """A domain's signed policy data as served by ZTS."""

    signed_policy_data: Optional[SignedPolicyData] = None
    signature: str = ""
    key_id: str = ""

    def to_dict(self) -> dict:
        return {
            "signedPolicyData": None
            if self.signed_policy_data is None
            else self.signed_policy_data.to_dict(),
            "signature": self.signature,
            "keyId": self.key_id,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SignedPolicy":
        if not isinstance(data, dict):
            raise ValueError("policy is not a JSON object")
        spd = data.get("signedPolicyData")
        return cls(
            signed_policy_data=SignedPolicyData._from_dict(spd) if isinstance(spd, dict) else None,
            signature=data.get("signature", ""),
            key_id=data.get("keyId", ""),
        )

    def verify(self, provider: Callable[[KeyEnv, str], Any]) -> None:
        """Check expiry and both signatures; raise PolicyError on failure.

        ``provider(env, key_id)`` returns an object whose ``verify(data, signature)``
        raises on a bad signature, or None if the key is unknown.
        """
        spd = self.signed_policy_data
        if spd is None:
            raise PolicyError("no policy data")
        if spd.expires is None:
            raise PolicyError("policy without expiry")
        if spd.expires <= datetime.now(timezone.utc):
            raise PolicyError(f"policy already expired at {_time_text(spd.expires)}")

        verifier = provider(KeyEnv.ZTS, self.key_id)
        if verifier is None:
            raise PolicyError("zts key not found")
        try:
            verifier.verify(_canonical(spd.to_dict()), self.signature)
        except Exception as exc:
            raise PolicyError(f"error verify signature: {exc}") from exc

        verifier = provider(KeyEnv.ZMS, spd.zms_key_id)
        if verifier is None:
            raise PolicyError("zms key not found")
        policy_data = None if spd.policy_data is None else spd.policy_data.to_dict()
        try:
            verifier.verify(_canonical(policy_data), spd.zms_signature)
        except Exception as exc:
            raise PolicyError(f"error verify zms signature: {exc}") from exc
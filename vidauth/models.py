from __future__ import annotations

from dataclasses import dataclass, field, fields


@dataclass
class AuxClaims:
    user_id: str | None = None
    id_token: str | None = None
    user_info: dict | None = None

    def merged(self, newer: "AuxClaims") -> "AuxClaims":
        """Overlay ``newer`` on these claims; fields absent from ``newer`` are kept."""
        values = {}
        for item in fields(self):
            value = getattr(newer, item.name)
            values[item.name] = value if value is not None else getattr(self, item.name)
        return AuxClaims(**values)

    def to_payload(self) -> dict:
        return {
            item.name: getattr(self, item.name)
            for item in fields(self)
            if getattr(self, item.name) is not None
        }


@dataclass
class Credential:
    access_token: str
    issued_at: float
    aux_claims: AuxClaims = field(default_factory=AuxClaims)

    def age(self, now: float) -> float:
        return max(0.0, now - self.issued_at)

    def to_record(self) -> dict:
        return {
            "access_token": self.access_token,
            "timestamp": self.issued_at,
            **self.aux_claims.to_payload(),
        }

    @classmethod
    def from_record(cls, record: dict) -> "Credential":
        access_token = record.get("access_token")
        timestamp = record.get("timestamp", 0)
        if not isinstance(access_token, str) or not access_token:
            raise RuntimeError("Stored credential is missing access_token.")
        if not isinstance(timestamp, (int, float)):
            raise RuntimeError("Stored credential timestamp must be a number.")
        return cls(
            access_token=access_token,
            issued_at=float(timestamp),
            aux_claims=AuxClaims(
                user_id=record.get("user_id"),
                id_token=record.get("id_token"),
                user_info=record.get("user_info"),
            ),
        )


@dataclass
class PKCEFlowState:
    code_verifier: str
    state: str
    created_at: float


@dataclass
class PKCEChallenge:
    code_verifier: str
    code_challenge: str
    state: str

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass
class Node:
    id: str
    name: str
    ui_url: str
    api_url: str
    discovery_status: str = "discovered"

    def as_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "name": self.name,
            "ui_url": self.ui_url,
            "api_url": self.api_url,
            "discovery_status": self.discovery_status,
        }


@dataclass
class Workload:
    name: str
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> Workload | None:
        if not isinstance(payload, dict):
            return None
        names = payload.get("Names")
        if isinstance(names, list) and names:
            return cls(name=str(names[0]), raw=payload)
        name = payload.get("name") or payload.get("Name")
        if name:
            return cls(name=str(name), raw=payload)
        return None


@dataclass(frozen=True, slots=True)
class RemovalSuccess:
    raw: str
    steps: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True, slots=True)
class RemovalSoftFail:
    message: str
    is_auth_error: bool = False


@dataclass(frozen=True, slots=True)
class RemovalTransportFail:
    message: str


RemovalOutcome = Union[RemovalSuccess, RemovalSoftFail, RemovalTransportFail]

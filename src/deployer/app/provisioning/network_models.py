"""Request/response shapes of the overlay-network controller."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class NodeState(str, enum.Enum):
    """Realization state of a fabric or transport node."""

    SUCCESS = 'SUCCESS'
    PENDING = 'PENDING'
    IN_PROGRESS = 'IN_PROGRESS'
    FAILED = 'FAILED'
    PARTIAL_SUCCESS = 'PARTIAL_SUCCESS'
    ORPHANED = 'ORPHANED'

    @classmethod
    def parse(cls, value: str) -> NodeState:
        return cls(value.strip().upper())


# Anything else short of SUCCESS (FAILED, PARTIAL_SUCCESS, ORPHANED) is terminal.
IN_FLIGHT_NODE_STATES = frozenset({NodeState.PENDING, NodeState.IN_PROGRESS})


@dataclass(frozen=True, slots=True)
class HostNodeLoginCredential:
    username: str
    password: str
    thumbprint: str

    def to_payload(self) -> dict[str, Any]:
        return {
            'username': self.username,
            'password': self.password,
            'thumbprint': self.thumbprint,
        }

    def __repr__(self) -> str:
        return (
            f'HostNodeLoginCredential(username={self.username!r}, '
            f"password='***', thumbprint={self.thumbprint!r})"
        )


@dataclass(frozen=True, slots=True)
class FabricNodeCreateSpec:
    display_name: str
    description: str
    ip_addresses: tuple[str, ...]
    host_credential: HostNodeLoginCredential
    os_type: str = 'ESXI'
    resource_type: str = 'HostNode'

    def to_payload(self) -> dict[str, Any]:
        return {
            'display_name': self.display_name,
            'description': self.description,
            'ip_addresses': list(self.ip_addresses),
            'os_type': self.os_type,
            'resource_type': self.resource_type,
            'host_credential': self.host_credential.to_payload(),
        }


@dataclass(frozen=True, slots=True)
class HostSwitch:
    name: str

    def to_payload(self) -> dict[str, Any]:
        return {'host_switch_name': self.name}


@dataclass(frozen=True, slots=True)
class TransportZoneEndPoint:
    transport_zone_id: str

    def to_payload(self) -> dict[str, Any]:
        return {'transport_zone_id': self.transport_zone_id}


@dataclass(frozen=True, slots=True)
class TransportNodeCreateSpec:
    display_name: str
    description: str
    node_id: str
    host_switches: tuple[HostSwitch, ...] = ()
    transport_zone_endpoints: tuple[TransportZoneEndPoint, ...] = field(
        default_factory=tuple,
    )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            'display_name': self.display_name,
            'description': self.description,
            'node_id': self.node_id,
            'host_switches': [s.to_payload() for s in self.host_switches],
        }
        if self.transport_zone_endpoints:
            payload['transport_zone_endpoints'] = [
                e.to_payload() for e in self.transport_zone_endpoints
            ]
        return payload

"""
Host enumeration.

Host providers report the current set of hosts with their raw capacity and a
reserved-capacity override. The allocator calls `scan()` on every
housekeeping pass, so a provider backed by a file picks up upgraded or newly
added hosts without a restart.
"""

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

import structlog

from batchnet.common.constants import PRIVILEGED_HOST
from batchnet.common.schemas import HostSpec
from batchnet.common.utils import load_yaml_config


logger = structlog.get_logger(__name__)


class HostProvider(Protocol):
    def scan(self) -> List[HostSpec]: ...


class StaticHostProvider:
    """Fixed host list; `update()` lets callers emulate capacity changes"""

    def __init__(self, hosts: Iterable[HostSpec]):
        self._hosts: Dict[str, HostSpec] = {h.host_id: h for h in hosts}

    def update(self, host: HostSpec) -> None:
        self._hosts[host.host_id] = host

    def scan(self) -> List[HostSpec]:
        return list(self._hosts.values())


def parse_inventory(
    data: Dict,
    privileged_host: str = PRIVILEGED_HOST,
    privileged_reserved: Optional[float] = None,
) -> List[HostSpec]:
    """Build host specs from an inventory mapping.

    Accepted shapes::

        hosts:
          home: {capacity: 64, reserved: 8}
          n00dles: 4
    """
    hosts = data.get("hosts", data) or {}
    reserved_overrides = data.get("reserved", {}) if "hosts" in data else {}

    specs = []
    for host_id, entry in hosts.items():
        if isinstance(entry, dict):
            capacity = float(entry.get("capacity", 0))
            reserved = float(entry.get("reserved", 0))
        else:
            capacity = float(entry)
            reserved = 0.0
        reserved = float(reserved_overrides.get(host_id, reserved))
        privileged = host_id == privileged_host
        if privileged and privileged_reserved is not None:
            reserved = max(reserved, privileged_reserved)
        specs.append(HostSpec(
            host_id=str(host_id),
            capacity=capacity,
            reserved=min(reserved, capacity),
            privileged=privileged,
        ))
    return specs


class InventoryHostProvider:
    """Hosts read from a YAML inventory file on every scan"""

    def __init__(
        self,
        path: str,
        privileged_host: str = PRIVILEGED_HOST,
        privileged_reserved: Optional[float] = None,
    ):
        self.path = Path(path)
        self.privileged_host = privileged_host
        self.privileged_reserved = privileged_reserved
        self._last: List[HostSpec] = []

    def scan(self) -> List[HostSpec]:
        try:
            data = load_yaml_config(str(self.path))
        except ValueError as e:
            # Keep serving the last good inventory while the file is broken
            logger.warning("Inventory unreadable, keeping previous hosts",
                           path=str(self.path), error=str(e))
            return list(self._last)
        self._last = parse_inventory(data, self.privileged_host, self.privileged_reserved)
        return list(self._last)

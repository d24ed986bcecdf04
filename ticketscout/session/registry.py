"""
Process-wide registries keyed by profile id

Created once at startup and passed to whichever component needs them.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

T = TypeVar("T")


class Registry(Generic[T]):
    """add/get/remove store keyed by profile id"""

    def __init__(self, name: str):
        self.name = name
        self._items: Dict[str, T] = {}
        self.logger = logging.getLogger(__name__)

    def add(self, profile_id: str, item: T) -> Optional[T]:
        """Store `item`, returning whatever it replaced"""
        previous = self._items.get(profile_id)
        self._items[profile_id] = item
        self.logger.debug(f"[{self.name}] {'replaced' if previous is not None else 'added'} {profile_id}")
        return previous

    def get(self, profile_id: str) -> Optional[T]:
        return self._items.get(profile_id)

    def remove(self, profile_id: str) -> Optional[T]:
        item = self._items.pop(profile_id, None)
        if item is not None:
            self.logger.debug(f"[{self.name}] removed {profile_id}")
        return item

    def ids(self) -> List[str]:
        return list(self._items)

    def items(self) -> List[Tuple[str, T]]:
        return list(self._items.items())

    def __contains__(self, profile_id: str) -> bool:
        return profile_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))


@dataclass
class EngineRegistry:
    """Sessions, debugging handles and monitors for all live profiles"""
    sessions: Registry = field(default_factory=lambda: Registry("sessions"))
    handles: Registry = field(default_factory=lambda: Registry("handles"))
    monitors: Registry = field(default_factory=lambda: Registry("monitors"))

    def discard_profile(self, profile_id: str):
        self.sessions.remove(profile_id)
        self.monitors.remove(profile_id)

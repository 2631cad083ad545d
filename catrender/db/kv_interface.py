"""
Key-value store interface (abstract protocol) for CatRender.

Holds the product list, the catalogue registry, field definitions and the
render checkpoint. Every write is a whole-record replace.
"""

from abc import ABC, abstractmethod
from typing import List, Optional


class KeyValueStore(ABC):
    """Abstract persistent key-value store.

    Implementations must raise StorageQuotaExceeded for out-of-space / quota
    failures and StorageError for any other failed write, and return None
    (never raise) for a missing key.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the stored value, or None if the key does not exist."""
        ...

    @abstractmethod
    def set(self, key: str, value: bytes) -> None:
        """Replace the whole value stored under key."""
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove key. Missing keys are ignored."""
        ...

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        ...

    def close(self) -> None:
        pass

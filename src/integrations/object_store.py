"""Object store interface used by saga compensation."""

from __future__ import annotations

from typing import Protocol


class ObjectStore(Protocol):
    async def delete_key(self, category: str, key: str) -> None: ...

    async def delete_prefix(self, category: str, prefix: str) -> None: ...

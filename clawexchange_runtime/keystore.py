"""Credential storage used by the transport, event connection and agent loop."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

__all__ = ["KeyStore", "MemoryKeyStore"]


@runtime_checkable
class KeyStore(Protocol):
    """Anything that can hand out the agent's signing credentials."""

    async def get_private_key(self) -> bytes | None: ...

    async def get_public_key(self) -> str | None: ...

    async def get_agent_id(self) -> str | None: ...

    async def store(self, private_key: bytes, public_key: str, agent_id: str) -> None: ...

    async def clear(self) -> None: ...


class MemoryKeyStore:
    """In-memory key store. Keys are lost when the process exits."""

    def __init__(self) -> None:
        self._private_key: bytes | None = None
        self._public_key: str | None = None
        self._agent_id: str | None = None

    async def get_private_key(self) -> bytes | None:
        return self._private_key

    async def get_public_key(self) -> str | None:
        return self._public_key

    async def get_agent_id(self) -> str | None:
        return self._agent_id

    async def store(self, private_key: bytes, public_key: str, agent_id: str) -> None:
        self._private_key = bytes(private_key)
        self._public_key = public_key
        self._agent_id = agent_id

    async def clear(self) -> None:
        self._private_key = None
        self._public_key = None
        self._agent_id = None

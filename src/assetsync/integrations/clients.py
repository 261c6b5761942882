"""Internal client directory collaborator.

The asset store only references internal clients by id; the directory that
owns client records lives outside this service. Discovery auto-mapping uses
it to match vendor client names to internal clients.
"""

from __future__ import annotations

from typing import Protocol


class ClientDirectory(Protocol):
    """Lookup of internal clients by display name."""

    async def find_client_id_by_name(self, name: str) -> int | None:
        """Internal client id whose name equals ``name`` ignoring case, or None."""
        ...


class StaticClientDirectory:
    """ClientDirectory backed by an in-memory name -> id map.

    Used by the operator CLI (``--client NAME=ID``) and in tests.
    """

    def __init__(self, clients: dict[str, int] | None = None) -> None:
        self._clients = {name.strip().casefold(): client_id for name, client_id in (clients or {}).items()}

    async def find_client_id_by_name(self, name: str) -> int | None:
        return self._clients.get(name.strip().casefold())

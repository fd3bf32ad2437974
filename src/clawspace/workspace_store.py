"""JSON-file persistence of workspace definitions and runtime status.

The whole registry is one document rewritten atomically (temp file, then
replace).  Unlike the trust store, an unreadable registry is an error: the
workspaces in it must not silently disappear.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Protocol

import aiofiles
import aiofiles.os
from pydantic import BaseModel, ValidationError

from clawspace._logging import get_logger
from clawspace.exceptions import WorkspaceStoreError
from clawspace.models import Workspace

if TYPE_CHECKING:
    from pathlib import Path

logger = get_logger(__name__)


class WorkspaceRepository(Protocol):
    """Persistence the orchestrator writes status changes through."""

    async def list_workspaces(self) -> list[Workspace]: ...

    async def save(self, workspace: Workspace) -> None: ...


class _Registry(BaseModel):
    workspaces: list[Workspace] = []


class WorkspaceStore:
    """File-backed WorkspaceRepository.

    Attributes:
        path: JSON document holding every workspace
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = asyncio.Lock()

    async def list_workspaces(self) -> list[Workspace]:
        async with self._lock:
            return await self._load_unlocked()

    async def get(self, workspace_id: str) -> Workspace | None:
        for workspace in await self.list_workspaces():
            if workspace.id == workspace_id:
                return workspace
        return None

    async def find(self, id_or_name: str) -> Workspace | None:
        """Lookup by id first, then by case-insensitive name."""
        workspaces = await self.list_workspaces()
        for workspace in workspaces:
            if workspace.id == id_or_name:
                return workspace
        wanted = id_or_name.strip().lower()
        return next((w for w in workspaces if w.name.strip().lower() == wanted), None)

    async def save(self, workspace: Workspace) -> None:
        """Insert or replace by id."""
        async with self._lock:
            workspaces = await self._load_unlocked()
            for index, existing in enumerate(workspaces):
                if existing.id == workspace.id:
                    workspaces[index] = workspace.model_copy(deep=True)
                    break
            else:
                workspaces.append(workspace.model_copy(deep=True))
            await self._save_unlocked(workspaces)
        logger.debug(
            "Workspace saved",
            extra={"workspace_id": workspace.id, "status": workspace.status.value},
        )

    async def delete(self, workspace_id: str) -> bool:
        async with self._lock:
            workspaces = await self._load_unlocked()
            remaining = [w for w in workspaces if w.id != workspace_id]
            if len(remaining) == len(workspaces):
                return False
            await self._save_unlocked(remaining)
        logger.info("Workspace deleted", extra={"workspace_id": workspace_id})
        return True

    async def _load_unlocked(self) -> list[Workspace]:
        """Load the registry (must hold lock).

        Raises:
            WorkspaceStoreError: File exists but cannot be read or parsed
        """
        if not await aiofiles.os.path.exists(self.path):
            return []
        try:
            async with aiofiles.open(self.path, encoding="utf-8") as f:
                raw = await f.read()
        except OSError as e:
            msg = f"Cannot read workspace store: {e}"
            raise WorkspaceStoreError(msg, {"path": str(self.path)}) from e
        if not raw.strip():
            return []
        try:
            return _Registry.model_validate_json(raw).workspaces
        except ValidationError as e:
            msg = f"Workspace store is corrupt: {self.path}"
            raise WorkspaceStoreError(msg, {"path": str(self.path), "error": str(e)}) from e

    async def _save_unlocked(self, workspaces: list[Workspace]) -> None:
        payload = json.dumps(_Registry(workspaces=workspaces).model_dump(mode="json"), indent=2)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(payload)
            await aiofiles.os.replace(tmp_path, self.path)
        except OSError as e:
            msg = f"Cannot write workspace store: {e}"
            raise WorkspaceStoreError(msg, {"path": str(self.path)}) from e

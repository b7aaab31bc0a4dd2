"""Explicit wiring of the stores, session and sync engine.

Everything is constructed once here and passed down; nothing in labbook
reaches for a process-wide store handle.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from labbook.config import Settings, load_settings
from labbook.session import UserSession
from labbook.storage import HttpDocumentStore, IdentifierMappingStore, SQLiteStorage
from labbook.storage.remote import RemoteStore
from labbook.sync import SyncEngine

logger = logging.getLogger(__name__)


@dataclass
class Workspace:
    settings: Settings
    local: SQLiteStorage
    mappings: IdentifierMappingStore
    remote: Optional[RemoteStore]
    session: UserSession
    engine: SyncEngine

    @classmethod
    def build(cls, settings: Optional[Settings] = None, remote: Optional[RemoteStore] = None) -> "Workspace":
        """Create a workspace from settings.

        An explicit ``remote`` wins. Otherwise the HTTP store is used when a
        backend URL and token are configured; without them the workspace is
        local-only and explicit syncs raise ``RemoteNotConfiguredError``.
        """
        settings = settings or load_settings()
        db_path = settings.resolved_db_path
        local = SQLiteStorage(db_path)
        mappings = IdentifierMappingStore(db_path)

        if remote is None:
            if settings.has_remote:
                remote = HttpDocumentStore(
                    settings.backend_url,
                    auth_token=settings.auth_token,
                    timeout=settings.remote_timeout,
                )
            elif settings.backend_url:
                logger.warning("Backend URL set without an auth token, working local-only")
            else:
                logger.info("No backend configured, working local-only")

        session = UserSession(settings.user_id)
        engine = SyncEngine(local, remote, mappings, session, dedup_key=settings.merge_dedup_key)
        return cls(settings, local, mappings, remote, session, engine)

    async def aclose(self) -> None:
        await self.engine.drain()
        close = getattr(self.remote, "aclose", None)
        if close is not None:
            await close()
        self.local.close()

from __future__ import annotations

from dataclasses import dataclass

from app.fieldops.auth_client import AuthClient, AuthSettings, MemoryStorage, build_opener


@dataclass(frozen=True)
class IsolatedContext:
    """
    Throwaway auth context for a single call. Its storage is private, its transport
    never sends an Authorization header, and it neither persists nor refreshes sessions.
    """

    client: AuthClient
    storage: MemoryStorage


def create_isolated_context(settings: AuthSettings) -> IsolatedContext:
    storage = MemoryStorage()
    opener = build_opener(strip_authorization=True, handlers=settings.handlers)
    client = AuthClient(
        settings,
        storage=storage,
        persist_session=False,
        auto_refresh_token=False,
        opener=opener,
    )
    return IsolatedContext(client=client, storage=storage)

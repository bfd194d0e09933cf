"""Per-user cache of activity profiles and notification preferences."""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from care_notifier.schemas.notification import NotificationPreferences, UserActivityProfile
from care_notifier.stores.base import PreferenceStore
from care_notifier.utils.time import utcnow

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=1)

PROFILE = "profile"
PREFERENCES = "preferences"


@dataclass
class CachedValue:
    value: Any
    fetched_at: datetime


class ProfileCache:
    """
    TTL cache with stale-while-revalidate.

    A fresh entry is served as is. A stale entry is served while a single
    background refresh runs. A missing entry is fetched inline, and a failing
    store yields the defaults so scheduling never blocks on it.
    """

    def __init__(
        self,
        store: PreferenceStore,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = utcnow,
        timeout: float = 10.0,
    ):
        self.store = store
        self.ttl = ttl
        self.clock = clock
        self.timeout = timeout
        self._entries: Dict[Tuple[str, str], CachedValue] = {}
        self._refreshing: Dict[Tuple[str, str], asyncio.Task] = {}

    @property
    def cached_user_patterns(self) -> int:
        return sum(1 for kind, _ in self._entries if kind == PROFILE)

    async def get_profile(self, user_id: str) -> UserActivityProfile:
        return await self._get(
            PROFILE,
            user_id,
            lambda: self.store.get_activity_profile(user_id),
            lambda: UserActivityProfile(user_id=user_id),
        )

    async def get_preferences(self, user_id: str) -> NotificationPreferences:
        return await self._get(
            PREFERENCES,
            user_id,
            lambda: self.store.get_preferences(user_id),
            NotificationPreferences,
        )

    async def _get(
        self,
        kind: str,
        user_id: str,
        fetch: Callable[[], Awaitable[Optional[Any]]],
        default: Callable[[], Any],
    ) -> Any:
        key = (kind, user_id)
        cached = self._entries.get(key)

        if cached is not None:
            if self.clock() - cached.fetched_at >= self.ttl:
                self._start_refresh(key, fetch, default)
            return cached.value

        try:
            value = await asyncio.wait_for(fetch(), timeout=self.timeout)
        except Exception as e:
            logger.error(f"Failed to load {kind} for user {user_id}, using defaults: {str(e)}")
            return default()

        value = value if value is not None else default()
        self._entries[key] = CachedValue(value=value, fetched_at=self.clock())
        return value

    def _start_refresh(self, key: Tuple[str, str], fetch, default):
        if key in self._refreshing:
            return
        task = asyncio.create_task(self._refresh(key, fetch, default))
        self._refreshing[key] = task
        task.add_done_callback(lambda done: self._forget_refresh(key, done))

    def _forget_refresh(self, key: Tuple[str, str], task: asyncio.Task):
        if self._refreshing.get(key) is task:
            del self._refreshing[key]

    async def _refresh(self, key: Tuple[str, str], fetch, default):
        try:
            value = await asyncio.wait_for(fetch(), timeout=self.timeout)
        except Exception as e:
            # Keep serving the stale value
            logger.warning(f"Background refresh of {key[0]} for user {key[1]} failed: {str(e)}")
            return
        self._entries[key] = CachedValue(
            value=value if value is not None else default(),
            fetched_at=self.clock(),
        )
        logger.debug(f"Refreshed {key[0]} for user {key[1]}")

    async def wait_for_refreshes(self):
        if self._refreshing:
            await asyncio.gather(*list(self._refreshing.values()), return_exceptions=True)

    def clear(self):
        self._entries.clear()
        for task in self._refreshing.values():
            task.cancel()
        self._refreshing.clear()

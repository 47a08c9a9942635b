"""
Persisted key/value store for the calculator's ratio state.

Values are plain strings, mirroring the on-device store the mobile app used.
Database work is blocking, so every call runs in the thread pool and the
caller simply awaits it.
"""

import logging
from typing import Callable, Iterable, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.database import SessionLocal
from app.models.models import KeyValueEntry

logger = logging.getLogger(__name__)


# Store keys
SELECTED_RATIO = "selectedRatio"
MEAT_RATIO = "meatRatio"
BONE_RATIO = "boneRatio"
ORGAN_RATIO = "organRatio"
CUSTOM_MEAT_RATIO = "customMeatRatio"
CUSTOM_BONE_RATIO = "customBoneRatio"
CUSTOM_ORGAN_RATIO = "customOrganRatio"
USER_SELECTED_RATIO = "userSelectedRatio"

ACTIVE_RATIO_KEYS = (SELECTED_RATIO, MEAT_RATIO, BONE_RATIO, ORGAN_RATIO)
CUSTOM_RATIO_KEYS = (CUSTOM_MEAT_RATIO, CUSTOM_BONE_RATIO, CUSTOM_ORGAN_RATIO)
ALL_RATIO_KEYS = ACTIVE_RATIO_KEYS + CUSTOM_RATIO_KEYS + (USER_SELECTED_RATIO,)


class StorageError(RuntimeError):
    """A read or write against the persisted store failed."""


class KeyValueStore:
    """Asynchronous string key/value store backed by SQLAlchemy."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    async def get(self, key: str) -> Optional[str]:
        values = await self.multi_get([key])
        return values[key]

    async def multi_get(self, keys: Iterable[str]) -> dict[str, Optional[str]]:
        """
        Read several keys at once.

        Returns:
            Dict of key -> value, with None for missing keys
        """
        keys = list(keys)
        return await run_in_threadpool(self._multi_get, keys)

    async def set(self, key: str, value: str) -> None:
        await self.multi_set([(key, value)])

    async def multi_set(self, pairs: Iterable[tuple[str, str]]) -> None:
        """Write several keys in a single transaction."""
        pairs = list(pairs)
        if not pairs:
            return
        await run_in_threadpool(self._multi_set, pairs)

    async def multi_remove(self, keys: Iterable[str]) -> None:
        """Delete several keys in a single transaction."""
        keys = list(keys)
        if not keys:
            return
        await run_in_threadpool(self._multi_remove, keys)

    def _multi_get(self, keys: list[str]) -> dict[str, Optional[str]]:
        try:
            with self._session_factory() as db:
                rows = db.query(KeyValueEntry).filter(KeyValueEntry.key.in_(keys)).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read {keys}: {e}") from e
        found = {row.key: row.value for row in rows}
        return {key: found.get(key) for key in keys}

    def _multi_set(self, pairs: list[tuple[str, str]]) -> None:
        with self._session_factory() as db:
            try:
                for key, value in pairs:
                    db.merge(KeyValueEntry(key=key, value=str(value)))
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to write {[k for k, _ in pairs]}: {e}") from e
        logger.debug("Stored keys %s", [k for k, _ in pairs])

    def _multi_remove(self, keys: list[str]) -> None:
        with self._session_factory() as db:
            try:
                db.query(KeyValueEntry).filter(
                    KeyValueEntry.key.in_(keys)
                ).delete(synchronize_session=False)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to remove {keys}: {e}") from e
        logger.debug("Removed keys %s", keys)

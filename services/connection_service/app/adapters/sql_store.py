"""
SQL Instance Store Adapter.
Point reads of `evolution_instances` through SQLAlchemy, plus an in-process
change feed that the service publishes to whenever it writes a row.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .base import ChangeFeed, InstanceStore, StoreError, SubscriptionHandle
from ..database import SessionLocal
from ..models import EvolutionInstance
from ..schemas import ChangeEvent, InstanceRecord

logger = logging.getLogger(__name__)


class SqlInstanceStore(InstanceStore):
    """Reads instance rows from the service database."""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    async def fetch(self, owner_id: str) -> Optional[InstanceRecord]:
        return await asyncio.to_thread(self._fetch_sync, owner_id)

    def _fetch_sync(self, owner_id: str) -> Optional[InstanceRecord]:
        db = self.session_factory()
        try:
            row = (
                db.query(EvolutionInstance)
                .filter(EvolutionInstance.owner_id == owner_id)
                .first()
            )
            if row is None:
                return None
            return InstanceRecord.model_validate(row)
        except SQLAlchemyError as e:
            logger.error(f"❌ Instance lookup failed for {owner_id}: {e}")
            raise StoreError(str(e)) from e
        finally:
            db.close()


class LocalChangeFeed(ChangeFeed):
    """
    In-process change feed.

    Events published for an owner are delivered synchronously, in publish
    order, to every open subscription of that owner.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[SubscriptionHandle]] = {}

    async def subscribe(
        self, owner_id: str, on_event: Callable[[ChangeEvent], None]
    ) -> SubscriptionHandle:
        handle = SubscriptionHandle(owner_id=owner_id, channel=on_event)
        self._subscribers.setdefault(owner_id, []).append(handle)
        logger.info(f"📡 Local feed subscribed: {owner_id}")
        return handle

    async def close(self, handle: SubscriptionHandle) -> None:
        handles = self._subscribers.get(handle.owner_id, [])
        if handle in handles:
            handles.remove(handle)
        if not handles:
            self._subscribers.pop(handle.owner_id, None)
        logger.info(f"📴 Local feed closed: {handle.owner_id}")

    def subscriber_count(self, owner_id: str) -> int:
        return len(self._subscribers.get(owner_id, []))

    def publish(self, owner_id: str, event: ChangeEvent) -> int:
        """Deliver an event; returns how many subscribers received it."""
        handles = list(self._subscribers.get(owner_id, []))
        for handle in handles:
            handle.channel(event)
        return len(handles)

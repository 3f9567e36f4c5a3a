"""
Supabase Instance Backend Adapter.
Point reads go through PostgREST; the change feed is a Supabase Realtime
`postgres_changes` channel filtered to the owner's row.

Requires env vars: SUPABASE_URL, SUPABASE_KEY
Optional: SUPABASE_INSTANCES_TABLE (default: evolution_instances)
"""
import logging
import os
from typing import Callable, Optional

from postgrest.exceptions import APIError
from pydantic import ValidationError
from supabase import AsyncClient, acreate_client

from .base import ChangeFeed, InstanceStore, StoreError, SubscriptionHandle
from ..schemas import ChangeEvent, ChangeEventType, InstanceRecord

logger = logging.getLogger(__name__)

# PostgREST "no rows" for single-row selects
NO_ROWS_CODES = {"PGRST116", "204"}


class SupabaseInstanceBackend(InstanceStore, ChangeFeed):
    """Instance store and change feed backed by one Supabase project."""

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        table: Optional[str] = None,
    ):
        self.url = url or os.getenv("SUPABASE_URL")
        self.key = key or os.getenv("SUPABASE_KEY")
        self.table = table or os.getenv("SUPABASE_INSTANCES_TABLE", "evolution_instances")

        if not self.url or not self.key:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY environment variables must be set")

        self._client: Optional[AsyncClient] = None

    async def _get_client(self) -> AsyncClient:
        if self._client is None:
            self._client = await acreate_client(self.url, self.key)
            logger.info("✅ Supabase client initialized")
        return self._client

    async def fetch(self, owner_id: str) -> Optional[InstanceRecord]:
        client = await self._get_client()
        try:
            response = await (
                client.table(self.table)
                .select("*")
                .eq("owner_id", owner_id)
                .maybe_single()
                .execute()
            )
        except APIError as e:
            if str(e.code) in NO_ROWS_CODES:
                return None
            logger.error(f"❌ Supabase instance lookup failed for {owner_id}: {e.message}")
            raise StoreError(e.message or str(e)) from e

        if response is None or not response.data:
            return None

        try:
            return InstanceRecord.model_validate(response.data)
        except ValidationError as e:
            raise StoreError(f"Malformed instance row: {e}") from e

    async def subscribe(
        self, owner_id: str, on_event: Callable[[ChangeEvent], None]
    ) -> SubscriptionHandle:
        client = await self._get_client()
        channel = client.channel(f"evolution-instance-{owner_id}")

        def _on_change(payload):
            event = decode_change_payload(payload)
            if event is None:
                logger.warning(f"⚠️ Dropping undecodable realtime payload for {owner_id}")
                return
            on_event(event)

        def _on_status(status, error=None):
            if error:
                logger.error(f"❌ Realtime subscription {owner_id}: {status} ({error})")
            else:
                logger.info(f"📡 Realtime subscription {owner_id}: {status}")

        channel.on_postgres_changes(
            "*",
            schema="public",
            table=self.table,
            filter=f"owner_id=eq.{owner_id}",
            callback=_on_change,
        )
        await channel.subscribe(_on_status)
        return SubscriptionHandle(owner_id=owner_id, channel=channel)

    async def close(self, handle: SubscriptionHandle) -> None:
        client = await self._get_client()
        await client.remove_channel(handle.channel)
        logger.info(f"📴 Realtime channel removed: {handle.owner_id}")


def decode_change_payload(payload) -> Optional[ChangeEvent]:
    """
    Decode a Realtime `postgres_changes` payload into a ChangeEvent.

    Accepts both the nested shape (`{"data": {"type", "record",
    "old_record"}}`) and the flat one (`{"eventType", "new", "old"}`).
    Returns None when the payload cannot be understood.
    """
    if not isinstance(payload, dict):
        return None

    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    event_type = str(data.get("type") or data.get("eventType") or "").upper()

    try:
        if event_type == "DELETE":
            old = data.get("old_record") or data.get("old")
            record = None
            if isinstance(old, dict) and old.get("owner_id"):
                record = InstanceRecord.model_validate(old)
            return ChangeEvent(event_type=ChangeEventType.DELETE, record=record)

        if event_type in ("INSERT", "UPDATE"):
            new = data.get("record") or data.get("new")
            if not isinstance(new, dict):
                return None
            return ChangeEvent(
                event_type=ChangeEventType.UPSERT,
                record=InstanceRecord.model_validate(new),
            )
    except ValidationError as e:
        logger.warning(f"⚠️ Realtime record failed validation: {e}")
        return None

    return None

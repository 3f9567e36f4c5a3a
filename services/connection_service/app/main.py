"""
Connection Service - WhatsApp Bridge Instance Management API.
Tracks each owner's WhatsApp bridge instance (create -> QR pairing ->
connected -> disconnected/error), reconciling bridge manager replies with
the instance store and its live change feed.
"""
import asyncio
import os

from fastapi import FastAPI, HTTPException, Depends, WebSocket, WebSocketDisconnect
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.orm import Session
import logging

from .database import engine, get_db, Base
from .models import EvolutionInstance
from .schemas import (
    ChangeEvent,
    ChangeEventType,
    InstanceRecord,
    InstanceRecordUpdate,
    InstanceSnapshot,
)
from .adapters.n8n_gateway import N8nActionGateway, DEFAULT_TIMEOUT_SECONDS
from .adapters.sql_store import LocalChangeFeed, SqlInstanceStore
from .reconciler import InstanceReconciler
from .registry import ReconcilerRegistry

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"


# =============================================================================
# Backend Factory
# =============================================================================

_registry = None  # Singleton


def get_instance_backend():
    """
    Build the (store, feed) pair named by the INSTANCE_BACKEND env var.
    'supabase' uses PostgREST + Realtime; anything else uses the service
    database with the in-process feed.
    """
    provider = os.getenv("INSTANCE_BACKEND", "sql").lower()

    if provider == "supabase":
        try:
            from .adapters.supabase_store import SupabaseInstanceBackend
            backend = SupabaseInstanceBackend()
            logger.info("✅ Supabase instance backend ready")
            return backend, backend
        except Exception as e:
            logger.error(f"❌ Failed to init Supabase backend, using SQL store: {e}")

    logger.info("ℹ️ Using SQL instance store with in-process change feed")
    return SqlInstanceStore(), LocalChangeFeed()


def get_registry() -> ReconcilerRegistry:
    global _registry
    if _registry is not None:
        return _registry

    store, feed = get_instance_backend()
    timeout = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS))
    _registry = ReconcilerRegistry(
        N8nActionGateway(timeout=timeout),
        store,
        feed,
        fetch_timeout=timeout,
    )
    return _registry


# =============================================================================
# FastAPI App
# =============================================================================

# Create tables on startup
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Connection Service",
    description="WhatsApp bridge instance lifecycle: creation, QR pairing, live status",
    version=SERVICE_VERSION,
)

# Prometheus metrics
Instrumentator().instrument(app).expose(app)


@app.on_event("startup")
async def startup_event():
    """Log backend and gateway configuration on startup."""
    provider = os.getenv("INSTANCE_BACKEND", "sql")
    logger.info(f"🗄️ Instance backend configured: {provider}")
    if os.getenv("N8N_MANAGER_URL"):
        logger.info("✅ Bridge manager URL configured")
    else:
        logger.info("ℹ️ N8N_MANAGER_URL not set, instance actions will fail with CONFIG_ERROR")


@app.on_event("shutdown")
async def shutdown_event():
    """Tear down every open reconciler and its change-feed subscription."""
    if _registry is not None:
        await _registry.close_all()


# =============================================================================
# Health
# =============================================================================

@app.get("/health")
async def health_check(registry: ReconcilerRegistry = Depends(get_registry)):
    """Health check with backend and gateway status."""
    return {
        "status": "ok",
        "service": "connection",
        "version": SERVICE_VERSION,
        "backend": "sql" if isinstance(registry.feed, LocalChangeFeed) else "supabase",
        "gateway_configured": bool(getattr(registry.gateway, "configured", False)),
        "active_owners": len(registry),
    }


# =============================================================================
# Instance State Endpoints
# =============================================================================

@app.get("/instances/{owner_id}", response_model=InstanceSnapshot)
async def get_instance(owner_id: str, registry: ReconcilerRegistry = Depends(get_registry)):
    """Current connection state; activates live tracking on first call."""
    reconciler = await registry.acquire(owner_id)
    return reconciler.snapshot()


@app.post("/instances/{owner_id}/refresh", response_model=InstanceSnapshot)
async def refresh_instance(owner_id: str, registry: ReconcilerRegistry = Depends(get_registry)):
    """Reload the instance record from the store."""
    reconciler = await registry.acquire(owner_id)
    await reconciler.refresh()
    return reconciler.snapshot()


@app.post("/instances/{owner_id}/create", response_model=InstanceSnapshot)
async def create_instance(owner_id: str, registry: ReconcilerRegistry = Depends(get_registry)):
    """Create a new instance and generate a QR code."""
    reconciler = await registry.acquire(owner_id)
    await reconciler.create()
    return reconciler.snapshot()


@app.post("/instances/{owner_id}/qr", response_model=InstanceSnapshot)
async def request_qr(owner_id: str, registry: ReconcilerRegistry = Depends(get_registry)):
    """Generate a new QR code for the existing instance."""
    reconciler = await registry.acquire(owner_id)
    await reconciler.request_qr()
    return reconciler.snapshot()


@app.post("/instances/{owner_id}/reconnect", response_model=InstanceSnapshot)
async def reconnect_instance(owner_id: str, registry: ReconcilerRegistry = Depends(get_registry)):
    """Reconnect a disconnected instance."""
    reconciler = await registry.acquire(owner_id)
    await reconciler.reconnect()
    return reconciler.snapshot()


@app.post("/instances/{owner_id}/disconnect", response_model=InstanceSnapshot)
async def disconnect_instance(owner_id: str, registry: ReconcilerRegistry = Depends(get_registry)):
    """Disconnect and delete the instance."""
    reconciler = await registry.acquire(owner_id)
    await reconciler.disconnect()
    return reconciler.snapshot()


@app.post("/instances/{owner_id}/status-check", response_model=InstanceSnapshot)
async def check_instance_status(owner_id: str, registry: ReconcilerRegistry = Depends(get_registry)):
    """Ask the bridge manager to re-check the instance status."""
    reconciler = await registry.acquire(owner_id)
    await reconciler.check_status()
    return reconciler.snapshot()


@app.post("/instances/{owner_id}/clear-error", response_model=InstanceSnapshot)
async def clear_instance_error(owner_id: str, registry: ReconcilerRegistry = Depends(get_registry)):
    """Dismiss the current error."""
    reconciler = registry.get(owner_id)
    if reconciler is None:
        raise HTTPException(status_code=404, detail="No active session for this owner")
    reconciler.clear_error()
    return reconciler.snapshot()


@app.delete("/instances/{owner_id}/session", status_code=204)
async def release_session(owner_id: str, registry: ReconcilerRegistry = Depends(get_registry)):
    """Stop live tracking for an owner (e.g. on sign-out)."""
    if not await registry.release(owner_id):
        raise HTTPException(status_code=404, detail="No active session for this owner")
    logger.info(f"🗑️ Released session: {owner_id}")
    return None


# =============================================================================
# Record Write Endpoints (SQL backend)
# =============================================================================

def _local_feed(registry: ReconcilerRegistry) -> LocalChangeFeed:
    if not isinstance(registry.feed, LocalChangeFeed):
        raise HTTPException(
            status_code=409,
            detail="Instance records are managed by Supabase for this deployment",
        )
    return registry.feed


@app.put("/instances/{owner_id}/record", response_model=InstanceRecord)
async def upsert_record(
    owner_id: str,
    update: InstanceRecordUpdate,
    db: Session = Depends(get_db),
    registry: ReconcilerRegistry = Depends(get_registry),
):
    """
    Write the owner's instance row (used by the bridge manager when the
    SQL backend is active) and publish the new row on the change feed.
    """
    feed = _local_feed(registry)

    row = db.query(EvolutionInstance).filter(EvolutionInstance.owner_id == owner_id).first()
    if row is None:
        row = EvolutionInstance(owner_id=owner_id)
        db.add(row)

    for field, value in update.model_dump(exclude_unset=True).items():
        setattr(row, field, value)

    try:
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error writing instance for {owner_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    db.refresh(row)

    record = InstanceRecord.model_validate(row)
    delivered = feed.publish(owner_id, ChangeEvent(event_type=ChangeEventType.UPSERT, record=record))
    logger.info(f"✅ Instance row written for {owner_id} (delivered to {delivered})")
    return record


@app.delete("/instances/{owner_id}/record", status_code=204)
async def delete_record(
    owner_id: str,
    db: Session = Depends(get_db),
    registry: ReconcilerRegistry = Depends(get_registry),
):
    """Delete the owner's instance row and publish a delete event."""
    feed = _local_feed(registry)

    row = db.query(EvolutionInstance).filter(EvolutionInstance.owner_id == owner_id).first()
    if row is None:
        raise HTTPException(status_code=404, detail="Instance not found")

    record = InstanceRecord.model_validate(row)
    db.delete(row)
    db.commit()

    feed.publish(owner_id, ChangeEvent(event_type=ChangeEventType.DELETE, record=record))
    logger.info(f"🗑️ Deleted instance row: {owner_id}")
    return None


# =============================================================================
# Live Updates
# =============================================================================

async def stream_snapshots(websocket: WebSocket, reconciler: InstanceReconciler) -> None:
    """
    Send the current snapshot, then one per state change, until either the
    client goes away or a send fails. "refresh" from the client forces a
    point read.

    Whichever side stops first ends the stream; its exception is re-raised
    after the other side has been cancelled and collected.
    """
    queue: asyncio.Queue = asyncio.Queue()
    remove_listener = reconciler.add_listener(queue.put_nowait)

    async def forward_snapshots():
        while True:
            snapshot = await queue.get()
            await websocket.send_json(snapshot.model_dump(mode="json"))

    async def receive_commands():
        while True:
            message = await websocket.receive_text()
            if message.strip().lower() == "refresh":
                await reconciler.refresh()

    tasks = []
    try:
        await websocket.send_json(reconciler.snapshot().model_dump(mode="json"))
        tasks = [
            asyncio.create_task(forward_snapshots()),
            asyncio.create_task(receive_commands()),
        ]
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            task.result()
    finally:
        remove_listener()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


@app.websocket("/ws/instances/{owner_id}")
async def instance_updates(
    websocket: WebSocket,
    owner_id: str,
    registry: ReconcilerRegistry = Depends(get_registry),
):
    """
    Push the owner's snapshot on connect and again after every change.

    The client may send "refresh" to force a point read.
    """
    await websocket.accept()
    reconciler = await registry.acquire(owner_id)
    print(f"🔌 Live updates connected: {owner_id}")

    try:
        await stream_snapshots(websocket, reconciler)
    except WebSocketDisconnect:
        print(f"Live updates disconnected: {owner_id}")
    except Exception as e:
        print(f"An error occurred: {e}")
        await websocket.close(code=1011, reason="An internal error occurred.")


# =============================================================================
# Root Info
# =============================================================================

@app.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "Connection Service",
        "version": SERVICE_VERSION,
        "endpoints": {
            "/health": "Health check (includes backend status)",
            "/instances/{owner_id}": "GET - Current connection state",
            "/instances/{owner_id}/refresh": "POST - Reload from the store",
            "/instances/{owner_id}/create": "POST - Create instance and QR code",
            "/instances/{owner_id}/qr": "POST - New QR code",
            "/instances/{owner_id}/reconnect": "POST - Reconnect instance",
            "/instances/{owner_id}/disconnect": "POST - Disconnect instance",
            "/instances/{owner_id}/status-check": "POST - Re-check status",
            "/instances/{owner_id}/clear-error": "POST - Dismiss current error",
            "/instances/{owner_id}/session": "DELETE - Stop live tracking",
            "/instances/{owner_id}/record": "PUT/DELETE - Write instance row (SQL backend)",
            "/ws/instances/{owner_id}": "WebSocket - Live snapshots",
        },
    }

"""
Instance State Reconciler.

Keeps one owner's view of their WhatsApp bridge instance consistent while
updates arrive from three independent places:

- point reads of the instance store (`refresh`)
- the store's change feed (`handle_event`)
- QR payloads returned directly by bridge manager commands

The UI-facing status is derived on every read from the cached record and
the immediate QR override; nothing derived is stored.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from .adapters.base import ActionGateway, ChangeFeed, InstanceStore, StoreError, SubscriptionHandle
from .adapters.n8n_gateway import DEFAULT_TIMEOUT_SECONDS
from .formatting import format_phone_number
from .models import ConnectionState, InstanceStatus
from .schemas import (
    ChangeEvent,
    ChangeEventType,
    ErrorCode,
    ErrorInfo,
    GatewayAction,
    GatewayErr,
    GatewayResult,
    InstanceRecord,
    InstanceSnapshot,
    UIStatus,
)

logger = logging.getLogger(__name__)


def derive_status(record: Optional[InstanceRecord], immediate_qr: Optional[str]) -> UIStatus:
    """
    Map the cached record plus the immediate QR override to a UI status.

    Rule order matters: a fresh QR from an action wins unless the record
    is already open; connection state is checked before pairing material,
    pairing material before error flags, error flags before the default.
    """
    state = record.connection_state if record else None

    if immediate_qr and state != ConnectionState.OPEN:
        return UIStatus.AWAITING_QR

    if record is None:
        return UIStatus.NO_INSTANCE
    if state == ConnectionState.OPEN:
        return UIStatus.CONNECTED
    if state == ConnectionState.CONNECTING:
        return UIStatus.CONNECTING
    if record.qr_base64 and state == ConnectionState.CLOSE:
        return UIStatus.AWAITING_QR
    if record.status == InstanceStatus.ERROR or record.last_error:
        return UIStatus.ERROR
    return UIStatus.DISCONNECTED


class InstanceReconciler:
    """
    Reconciled connection state for one owner.

    Public actions never raise: failures land in `last_error`. `busy` is
    set and cleared by every action independently, so with overlapping
    actions the last one to finish decides its value.
    """

    def __init__(
        self,
        owner_id: str,
        gateway: ActionGateway,
        store: InstanceStore,
        feed: ChangeFeed,
        fetch_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.owner_id = owner_id
        self.gateway = gateway
        self.store = store
        self.feed = feed
        self.fetch_timeout = fetch_timeout

        self.cached_record: Optional[InstanceRecord] = None
        self.immediate_qr: Optional[str] = None
        self.busy = False
        self.last_error: Optional[ErrorInfo] = None
        self.initial_load_done = False

        self._handle: Optional[SubscriptionHandle] = None
        self._refresh_task: Optional[asyncio.Future] = None
        self._listeners: List[Callable[[InstanceSnapshot], None]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Run the initial point read and open the change feed, concurrently.

        A subscription failure is applied after the first read settles so a
        successful read cannot clear it.
        """
        _, subscribe_error = await asyncio.gather(self.refresh(), self._subscribe())
        if subscribe_error is not None and not self._closed:
            self.last_error = subscribe_error
            self._notify()

    async def _subscribe(self) -> Optional[ErrorInfo]:
        try:
            handle = await self.feed.subscribe(self.owner_id, self.handle_event)
        except Exception as e:
            logger.error(f"❌ Change feed subscription failed for {self.owner_id}: {e}")
            return ErrorInfo(message="Live updates are unavailable", code=ErrorCode.SUBSCRIPTION_ERROR)

        if self._closed:
            # close() ran while the subscription was being opened
            await self.feed.close(handle)
            return None
        self._handle = handle
        return None

    async def close(self) -> None:
        """Tear down the subscription; later events and results are ignored."""
        if self._closed:
            return
        self._closed = True
        self._listeners.clear()
        handle, self._handle = self._handle, None
        if handle is not None:
            await self.feed.close(handle)
        logger.info(f"🛑 Reconciler closed: {self.owner_id}")

    # =========================================================================
    # Point read
    # =========================================================================

    async def refresh(self) -> None:
        """
        Reload the record from the store.

        A call made while a read is in flight joins that read instead of
        starting another one.
        """
        if self._closed:
            return
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._fetch())
        await asyncio.shield(self._refresh_task)

    async def _fetch(self) -> None:
        error = None
        record = None
        try:
            record = await asyncio.wait_for(
                self.store.fetch(self.owner_id), timeout=self.fetch_timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"❌ Instance read timed out after {self.fetch_timeout}s: {self.owner_id}")
            error = ErrorInfo(
                message="Timed out loading instance data",
                code=ErrorCode.TIMEOUT_ERROR,
            )
        except StoreError as e:
            logger.error(f"❌ Error loading instance for {self.owner_id}: {e}")
            error = ErrorInfo(message="Error loading instance data", code=ErrorCode.FETCH_ERROR)
        except Exception as e:
            logger.exception(f"❌ Unexpected error loading instance for {self.owner_id}: {e}")
            error = ErrorInfo(message="Unexpected error loading data", code=ErrorCode.UNEXPECTED_ERROR)

        if self._closed:
            return

        if error is None:
            self.cached_record = record
            self.last_error = None
        else:
            self.last_error = error
        self.initial_load_done = True
        self._notify()

    # =========================================================================
    # Change feed
    # =========================================================================

    def handle_event(self, event: ChangeEvent) -> None:
        """Apply one change-feed event, last applied wins."""
        if self._closed:
            return

        logger.info(f"🔄 Realtime {event.event_type.value} for {self.owner_id}")

        if event.event_type == ChangeEventType.DELETE:
            self.cached_record = None
            self.immediate_qr = None
        else:
            record = event.record
            self.cached_record = record
            if record is not None and (
                record.qr_base64 or record.connection_state == ConnectionState.OPEN
            ):
                self.immediate_qr = None

        self.last_error = None
        self._notify()

    # =========================================================================
    # Actions
    # =========================================================================

    async def create(self) -> None:
        """Create a new instance and generate a QR code."""
        await self._dispatch(
            GatewayAction.CREATE,
            lambda: self.gateway.create(self.owner_id),
            "Error creating instance",
            ErrorCode.CREATE_ERROR,
        )

    async def request_qr(self) -> None:
        """Generate a new QR code for the existing instance."""
        await self._dispatch(
            GatewayAction.CONNECT,
            lambda: self.gateway.connect(self.owner_id),
            "Error generating QR code",
            ErrorCode.QRCODE_ERROR,
        )

    async def reconnect(self) -> None:
        """Reconnect a disconnected instance."""
        await self._dispatch(
            GatewayAction.RECONNECT,
            lambda: self.gateway.reconnect(self.owner_id),
            "Error reconnecting",
            ErrorCode.RECONNECT_ERROR,
        )

    async def check_status(self) -> None:
        """Ask the bridge manager to re-check and write back the status."""
        await self._dispatch(
            GatewayAction.STATUS,
            lambda: self.gateway.get_status(self.owner_id),
            "Error checking status",
            ErrorCode.STATUS_ERROR,
        )

    async def disconnect(self) -> None:
        """Disconnect and delete the instance; needs a known instance name."""
        record = self.cached_record
        if not self.owner_id or record is None or not record.instance_name:
            self._set_error("Instance not found", ErrorCode.NO_INSTANCE)
            self._notify()
            return
        instance_name = record.instance_name
        await self._dispatch(
            GatewayAction.DELETE,
            lambda: self.gateway.disconnect(self.owner_id, instance_name),
            "Error disconnecting",
            ErrorCode.DISCONNECT_ERROR,
        )

    def clear_error(self) -> None:
        self.last_error = None
        self._notify()

    async def _dispatch(
        self,
        action: GatewayAction,
        call: Callable[[], Awaitable[GatewayResult]],
        fallback_message: str,
        fallback_code: str,
    ) -> None:
        if self._closed:
            return
        if not self.owner_id:
            self._set_error("User is not authenticated", ErrorCode.AUTH_ERROR)
            self._notify()
            return

        self.busy = True
        self.last_error = None
        self._notify()

        try:
            result = await call()
            if self._closed:
                return
            if isinstance(result, GatewayErr):
                self._set_error(result.message, result.code)
            elif result.qr_code_base64:
                self.immediate_qr = result.qr_code_base64
        except Exception as e:
            logger.exception(f"❌ '{action.value}' failed for {self.owner_id}: {e}")
            if not self._closed:
                self._set_error(fallback_message, fallback_code)
        finally:
            if not self._closed:
                self.busy = False
                self._notify()

    def _set_error(self, message: str, code: str) -> None:
        self.last_error = ErrorInfo(message=message, code=code)

    # =========================================================================
    # Derived view
    # =========================================================================

    @property
    def status(self) -> UIStatus:
        return derive_status(self.cached_record, self.immediate_qr)

    @property
    def qr_code(self) -> Optional[str]:
        if self.immediate_qr:
            return self.immediate_qr
        return self.cached_record.qr_base64 if self.cached_record else None

    def snapshot(self) -> InstanceSnapshot:
        record = self.cached_record
        return InstanceSnapshot(
            owner_id=self.owner_id,
            status=self.status,
            qr_code=self.qr_code,
            pairing_code=record.qr_pairing_code if record else None,
            connected_number=format_phone_number(record.connected_number if record else None),
            profile_name=record.profile_name if record else None,
            loading=self.busy or not self.initial_load_done,
            busy=self.busy,
            initial_load_done=self.initial_load_done,
            error=self.last_error.message if self.last_error else None,
            error_code=self.last_error.code if self.last_error else None,
            instance=record,
        )

    def add_listener(self, listener: Callable[[InstanceSnapshot], None]) -> Callable[[], None]:
        """Call `listener` with a fresh snapshot after every state change."""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"❌ Snapshot listener failed for {self.owner_id}: {e}")

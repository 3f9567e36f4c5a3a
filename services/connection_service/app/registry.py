"""
One reconciler per signed-in owner.
"""
import logging
from typing import Dict, Optional

from .adapters.base import ActionGateway, ChangeFeed, InstanceStore
from .adapters.n8n_gateway import DEFAULT_TIMEOUT_SECONDS
from .reconciler import InstanceReconciler

logger = logging.getLogger(__name__)


class ReconcilerRegistry:
    """Creates, hands out and tears down reconcilers keyed by owner id."""

    def __init__(
        self,
        gateway: ActionGateway,
        store: InstanceStore,
        feed: ChangeFeed,
        fetch_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.gateway = gateway
        self.store = store
        self.feed = feed
        self.fetch_timeout = fetch_timeout
        self._reconcilers: Dict[str, InstanceReconciler] = {}

    def __len__(self):
        return len(self._reconcilers)

    def get(self, owner_id: str) -> Optional[InstanceReconciler]:
        return self._reconcilers.get(owner_id)

    async def acquire(self, owner_id: str) -> InstanceReconciler:
        """Return the owner's reconciler, activating a new one if needed."""
        reconciler = self._reconcilers.get(owner_id)
        if reconciler is not None:
            return reconciler

        reconciler = InstanceReconciler(
            owner_id,
            self.gateway,
            self.store,
            self.feed,
            fetch_timeout=self.fetch_timeout,
        )
        # Registered before start() so concurrent callers share it
        self._reconcilers[owner_id] = reconciler
        logger.info(f"🟢 Activating reconciler for {owner_id}")
        await reconciler.start()
        return reconciler

    async def release(self, owner_id: str) -> bool:
        reconciler = self._reconcilers.pop(owner_id, None)
        if reconciler is None:
            return False
        await reconciler.close()
        return True

    async def close_all(self) -> None:
        for owner_id in list(self._reconcilers):
            await self.release(owner_id)

"""
Abstract adapters the instance reconciler talks to.
The bridge manager, the instance store and its change feed are swapped
through these interfaces without touching the reconciler.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..schemas import ChangeEvent, GatewayAction, GatewayResult, InstanceRecord


class StoreError(Exception):
    """The persistent store could not answer a read."""


class ActionGateway(ABC):
    """
    Sends commands to the external WhatsApp bridge manager.

    Implementations decode the reply once and return a tagged result
    (`GatewayOk` or `GatewayErr`) instead of raising for known failures.
    """

    @abstractmethod
    async def send(
        self,
        owner_id: str,
        action: Any,
        instance_id: Optional[str] = None,
    ) -> GatewayResult:
        """
        Dispatch one command.

        Args:
            owner_id: Owner identity the instance belongs to.
            action: A `GatewayAction` (or its string value).
            instance_id: Instance name, required by `delete`.
        """
        ...

    async def create(self, owner_id: str) -> GatewayResult:
        """Create a new instance and generate a QR code."""
        return await self.send(owner_id, GatewayAction.CREATE)

    async def connect(self, owner_id: str) -> GatewayResult:
        """Generate a new QR code for an existing instance."""
        return await self.send(owner_id, GatewayAction.CONNECT)

    async def reconnect(self, owner_id: str) -> GatewayResult:
        """Reconnect a disconnected instance."""
        return await self.send(owner_id, GatewayAction.RECONNECT)

    async def disconnect(self, owner_id: str, instance_name: str) -> GatewayResult:
        """Disconnect and delete the instance."""
        return await self.send(owner_id, GatewayAction.DELETE, instance_id=instance_name)

    async def get_status(self, owner_id: str) -> GatewayResult:
        """Ask the manager to re-check the instance status."""
        return await self.send(owner_id, GatewayAction.STATUS)


class InstanceStore(ABC):
    """Point reads of the instance record."""

    @abstractmethod
    async def fetch(self, owner_id: str) -> Optional[InstanceRecord]:
        """
        Read the owner's instance record.

        Returns:
            The record, or None when the owner has no instance.

        Raises:
            StoreError when the store could not be queried.
        """
        ...


@dataclass
class SubscriptionHandle:
    """Opaque token returned by `ChangeFeed.subscribe`."""

    owner_id: str
    channel: Any = None


class ChangeFeed(ABC):
    """Push-based stream of row-level events, scoped to one owner."""

    @abstractmethod
    async def subscribe(
        self, owner_id: str, on_event: Callable[[ChangeEvent], None]
    ) -> SubscriptionHandle:
        """Start delivering the owner's events to `on_event`, in commit order."""
        ...

    @abstractmethod
    async def close(self, handle: SubscriptionHandle) -> None:
        """Stop delivery for a handle returned by `subscribe`."""
        ...

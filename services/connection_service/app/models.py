"""
WhatsApp bridge instance model.
"""
from datetime import datetime
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, Enum as SQLEnum
import enum

from .database import Base


class InstanceStatus(str, enum.Enum):
    """Coarse lifecycle label set by the bridge manager."""

    CREATED = "created"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    DELETED = "deleted"


class ConnectionState(str, enum.Enum):
    """Live transport-level state reported by the bridge."""

    OPEN = "open"
    CLOSE = "close"
    CONNECTING = "connecting"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class EvolutionInstance(Base):
    """One WhatsApp bridge instance per owner."""

    __tablename__ = "evolution_instances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(64), unique=True, nullable=False, index=True)
    instance_name = Column(String(255), nullable=True)
    instance_id = Column(String(255), nullable=True)
    status = Column(
        SQLEnum(InstanceStatus, name="instance_status", values_callable=_enum_values),
        default=InstanceStatus.CREATED,
        nullable=False,
    )
    connection_state = Column(
        SQLEnum(ConnectionState, name="connection_state", values_callable=_enum_values),
        default=ConnectionState.CLOSE,
        nullable=False,
    )

    # Pairing material, void once the connection is open
    qr_base64 = Column(Text, nullable=True)
    qr_pairing_code = Column(String(64), nullable=True)
    qr_generated_at = Column(DateTime, nullable=True)
    qr_expires_at = Column(DateTime, nullable=True)

    connected_number = Column(String(50), nullable=True)
    profile_name = Column(String(255), nullable=True)
    profile_photo_url = Column(Text, nullable=True)

    webhook_url = Column(Text, nullable=True)
    active = Column(Boolean, default=True, nullable=False)

    last_error = Column(Text, nullable=True)
    last_error_at = Column(DateTime, nullable=True)

    connected_at = Column(DateTime, nullable=True)
    disconnected_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    def __repr__(self):
        return (
            f"<EvolutionInstance(owner_id='{self.owner_id}', "
            f"instance_name='{self.instance_name}', state='{self.connection_state}')>"
        )

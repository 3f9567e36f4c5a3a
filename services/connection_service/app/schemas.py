"""
Pydantic schemas for instance records, gateway results and UI snapshots.
"""
import enum
from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

from .models import ConnectionState, InstanceStatus


class ErrorCode:
    """Error codes surfaced through `ErrorInfo.code`."""

    CONFIG_ERROR = "CONFIG_ERROR"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    INVALID_ACTION = "INVALID_ACTION"
    API_ERROR = "API_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    OPERATION_FAILED = "OPERATION_FAILED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"

    FETCH_ERROR = "FETCH_ERROR"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"
    SUBSCRIPTION_ERROR = "SUBSCRIPTION_ERROR"

    NO_INSTANCE = "NO_INSTANCE"
    AUTH_ERROR = "AUTH_ERROR"

    CREATE_ERROR = "CREATE_ERROR"
    QRCODE_ERROR = "QRCODE_ERROR"
    RECONNECT_ERROR = "RECONNECT_ERROR"
    DISCONNECT_ERROR = "DISCONNECT_ERROR"
    STATUS_ERROR = "STATUS_ERROR"


class ErrorInfo(BaseModel):
    """An error as shown to the dashboard."""

    message: str
    code: str


# --- Instance record ---

class InstanceRecord(BaseModel):
    """Full snapshot of an `evolution_instances` row."""

    id: Optional[int] = None
    owner_id: str
    instance_name: Optional[str] = None
    instance_id: Optional[str] = None
    status: InstanceStatus = InstanceStatus.CREATED
    connection_state: ConnectionState = ConnectionState.CLOSE

    qr_base64: Optional[str] = None
    qr_pairing_code: Optional[str] = None
    qr_generated_at: Optional[datetime] = None
    qr_expires_at: Optional[datetime] = None

    connected_number: Optional[str] = None
    profile_name: Optional[str] = None
    profile_photo_url: Optional[str] = None

    webhook_url: Optional[str] = None
    active: bool = True

    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class InstanceRecordUpdate(BaseModel):
    """Fields accepted when writing an instance row (SQL backend)."""

    instance_name: Optional[str] = Field(default=None, max_length=255)
    instance_id: Optional[str] = Field(default=None, max_length=255)
    status: Optional[InstanceStatus] = None
    connection_state: Optional[ConnectionState] = None
    qr_base64: Optional[str] = None
    qr_pairing_code: Optional[str] = Field(default=None, max_length=64)
    qr_generated_at: Optional[datetime] = None
    qr_expires_at: Optional[datetime] = None
    connected_number: Optional[str] = Field(default=None, max_length=50)
    profile_name: Optional[str] = Field(default=None, max_length=255)
    profile_photo_url: Optional[str] = None
    webhook_url: Optional[str] = None
    active: Optional[bool] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None

    class Config:
        json_schema_extra = {
            "example": {
                "instance_name": "agent-5f1c",
                "status": "connected",
                "connection_state": "open",
                "connected_number": "5511987654321",
                "profile_name": "Loja Centro",
            }
        }


# --- Change feed ---

class ChangeEventType(str, enum.Enum):
    UPSERT = "upsert"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """Row-level event delivered by a change feed."""

    event_type: ChangeEventType
    record: Optional[InstanceRecord] = None


# --- Remote action gateway ---

class GatewayAction(str, enum.Enum):
    """Commands understood by the bridge manager webhook."""

    CREATE = "create"
    CONNECT = "connect"
    RECONNECT = "reconnect"
    DELETE = "delete"
    STATUS = "status"


class GatewayData(BaseModel):
    instance_name: Optional[str] = None
    phone_number: Optional[str] = None
    action: Optional[str] = None
    timestamp: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def numbers_as_text(cls, value):
        # The manager echoes phone numbers and epoch timestamps as JSON numbers
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class GatewayOk(BaseModel):
    """Accepted command."""

    success: bool = True
    message: str = ""
    instance_name: Optional[str] = None
    qr_code_base64: Optional[str] = None
    qr_code: Optional[str] = None
    data: Optional[GatewayData] = None

    @field_validator("message", mode="before")
    @classmethod
    def message_or_empty(cls, value):
        return "" if value is None else str(value)


class GatewayErr(BaseModel):
    """Rejected or failed command, classified at the gateway boundary."""

    success: bool = False
    message: str
    code: str
    status_code: Optional[int] = None


GatewayResult = Union[GatewayOk, GatewayErr]


# --- UI snapshot ---

class UIStatus(str, enum.Enum):
    NO_INSTANCE = "no_instance"
    AWAITING_QR = "awaiting_qr"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class InstanceSnapshot(BaseModel):
    """Everything the connection screen renders, derived from reconciler state."""

    owner_id: str
    status: UIStatus
    qr_code: Optional[str] = None
    pairing_code: Optional[str] = None
    connected_number: Optional[str] = None
    profile_name: Optional[str] = None
    loading: bool
    busy: bool
    initial_load_done: bool
    error: Optional[str] = None
    error_code: Optional[str] = None
    instance: Optional[InstanceRecord] = None

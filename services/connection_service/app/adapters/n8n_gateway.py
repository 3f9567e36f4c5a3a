"""
n8n Bridge Manager Adapter.
Posts commands to the n8n "Evolution manager" webhook, which drives the
Evolution API (WhatsApp bridge) and writes the resulting instance row.
"""
import asyncio
import json
import logging
import os
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from .base import ActionGateway
from ..schemas import ErrorCode, GatewayAction, GatewayErr, GatewayOk, GatewayResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class N8nActionGateway(ActionGateway):
    """
    Bridge manager adapter over HTTP.

    Reads N8N_MANAGER_URL, GATEWAY_TIMEOUT_SECONDS and INSTANCE_WEBHOOK_URL
    when the matching arguments are not given.
    """

    def __init__(
        self,
        manager_url: Optional[str] = None,
        timeout: Optional[float] = None,
        webhook_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.manager_url = manager_url if manager_url is not None else os.getenv("N8N_MANAGER_URL")
        if timeout is None:
            timeout = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS))
        self.timeout = timeout
        self.webhook_url = webhook_url if webhook_url is not None else os.getenv("INSTANCE_WEBHOOK_URL")
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.manager_url and self.manager_url.strip())

    async def send(
        self,
        owner_id: str,
        action: Any,
        instance_id: Optional[str] = None,
    ) -> GatewayResult:
        """
        POST `{owner_id, action, instance_id?, webhook_url?}` to the manager.

        Configuration and payload problems are reported without touching
        the network. Transport failures are classified into
        API_ERROR / INVALID_RESPONSE / NETWORK_ERROR / TIMEOUT_ERROR.
        """
        if not self.configured:
            return GatewayErr(
                message="Bridge manager URL is not configured. Check N8N_MANAGER_URL.",
                code=ErrorCode.CONFIG_ERROR,
            )

        invalid = _validate(owner_id, action)
        if invalid:
            return invalid

        payload = {"owner_id": owner_id, "action": GatewayAction(action).value}
        if instance_id:
            payload["instance_id"] = instance_id
        if self.webhook_url:
            payload["webhook_url"] = self.webhook_url

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await asyncio.wait_for(
                    client.post(self.manager_url, json=payload),
                    timeout=self.timeout,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.error(f"❌ Bridge manager timed out after {self.timeout}s (action={payload['action']})")
            return GatewayErr(
                message="Timeout: the server took too long to respond",
                code=ErrorCode.TIMEOUT_ERROR,
            )
        except (httpx.ConnectError, httpx.NetworkError) as e:
            logger.error(f"❌ Bridge manager unreachable: {e}")
            return GatewayErr(
                message="Connection error. Check your network.",
                code=ErrorCode.NETWORK_ERROR,
            )
        except httpx.HTTPError as e:
            logger.error(f"❌ Bridge manager request failed: {e}")
            return GatewayErr(message=str(e) or "Unknown error", code=ErrorCode.UNKNOWN_ERROR)

        result = _decode_response(response)
        if isinstance(result, GatewayErr):
            logger.warning(f"⚠️ Bridge manager rejected '{payload['action']}': {result.code} {result.message}")
        else:
            logger.info(f"✅ Bridge manager accepted '{payload['action']}' for {owner_id}")
        return result


def _validate(owner_id: str, action: Any) -> Optional[GatewayErr]:
    if not owner_id or not str(owner_id).strip():
        return GatewayErr(message="owner_id is required", code=ErrorCode.INVALID_PAYLOAD)

    if not action:
        return GatewayErr(message="action is required", code=ErrorCode.INVALID_PAYLOAD)

    try:
        GatewayAction(action)
    except ValueError:
        valid = ", ".join(a.value for a in GatewayAction)
        return GatewayErr(
            message=f"Invalid action: {action}. Valid actions: {valid}",
            code=ErrorCode.INVALID_ACTION,
        )
    return None


def _decode_response(response: httpx.Response) -> GatewayResult:
    """Turn an HTTP response into GatewayOk / GatewayErr."""
    text = response.text
    status = response.status_code

    try:
        data = json.loads(text)
    except ValueError:
        if not response.is_success:
            return GatewayErr(
                message=f"Error {status}: {text[:200]}",
                code=ErrorCode.API_ERROR,
                status_code=status,
            )
        return GatewayErr(
            message="Invalid response from server (not JSON)",
            code=ErrorCode.INVALID_RESPONSE,
        )

    if not isinstance(data, dict):
        if not response.is_success:
            return GatewayErr(message=f"Error {status}", code=ErrorCode.API_ERROR, status_code=status)
        return GatewayErr(
            message="Invalid response from server (expected an object)",
            code=ErrorCode.INVALID_RESPONSE,
        )

    if not response.is_success:
        return GatewayErr(
            message=str(data.get("message") or f"Error {status}"),
            code=str(data.get("code") or ErrorCode.API_ERROR),
            status_code=status,
        )

    if data.get("success") is False:
        return GatewayErr(
            message=str(data.get("message") or "Operation failed"),
            code=str(data.get("code") or ErrorCode.OPERATION_FAILED),
        )

    try:
        return GatewayOk.model_validate(data)
    except ValidationError as e:
        logger.error(f"❌ Unexpected bridge manager response shape: {e}")
        return GatewayErr(
            message="Invalid response from server",
            code=ErrorCode.INVALID_RESPONSE,
        )

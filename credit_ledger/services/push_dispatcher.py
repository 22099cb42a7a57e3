"""
Push Fan-out Dispatcher - silent balance-sync messages over FCM HTTP v1.

NO DICTIONARIES - outcomes are typed dataclasses; the FCM request body is
the only JSON built here.

Fan-out never raises and never blocks the request that triggered it: callers
use `dispatch()` which schedules the send as a background task.
"""

import asyncio
import uuid
from enum import Enum
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from credit_ledger.exceptions import InvalidDeviceTokenError, ProviderError
from credit_ledger.models.api import BalanceEvent, DevicePlatform
from credit_ledger.models.domain import BalanceChange, DeviceTarget, FanoutResult
from credit_ledger.observability.metrics import metrics
from credit_ledger.services.ledger_store import LedgerStore
from credit_ledger.services.token_cache import FIREBASE_MESSAGING_SCOPE, TokenCache

logger = get_logger(__name__)

# FCM error codes meaning the registration token can never succeed again
PERMANENT_TOKEN_ERRORS = frozenset({"UNREGISTERED", "INVALID_ARGUMENT", "SENDER_ID_MISMATCH"})


class SendOutcome(str, Enum):
    OK = "ok"
    INVALID_TOKEN = "invalid_token"
    TRANSIENT_ERROR = "transient_error"


def build_balance_message(
    device: DeviceTarget,
    event: BalanceEvent,
    delta: int,
    new_balance: int,
    correlation_id: str,
) -> dict[str, Any]:
    """
    Build a data-only FCM v1 message.

    Data values must be strings. There is never a `notification` block: the
    client updates its balance silently.
    """
    message: dict[str, Any] = {
        "token": device.device_token,
        "data": {
            "event": event.value,
            "delta": str(delta),
            "newBalance": str(new_balance),
            "correlationId": correlation_id,
        },
    }
    if device.platform == DevicePlatform.ANDROID.value:
        message["android"] = {"priority": "high"}
    elif device.platform == DevicePlatform.IOS.value:
        message["apns"] = {
            "headers": {"apns-push-type": "background", "apns-priority": "5"},
            "payload": {"aps": {"content-available": 1}},
        }
    else:
        message["webpush"] = {"headers": {"Urgency": "high"}}
    return {"message": message}


def _fcm_error_code(response: httpx.Response) -> str | None:
    """Extract the FcmError errorCode (or the google.rpc status) from an error body."""
    try:
        error = response.json().get("error", {})
    except ValueError:
        return None
    for detail in error.get("details", []) or []:
        if isinstance(detail, dict) and detail.get("errorCode"):
            return str(detail["errorCode"])
    status = error.get("status")
    return str(status) if status else None


class PushDispatcher:
    """Sends balance-change pushes to a user's active devices."""

    FCM_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        token_cache: TokenCache | None,
        http_client: httpx.AsyncClient,
        project_id: str,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.session_factory = session_factory
        self.token_cache = token_cache
        self.http_client = http_client
        self.project_id = project_id
        self.timeout_seconds = timeout_seconds
        self._tasks: set[asyncio.Task[FanoutResult]] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.project_id and self.token_cache is not None)

    def dispatch(self, change: BalanceChange) -> None:
        """Schedule a fan-out without waiting for it."""
        task = asyncio.create_task(
            self.notify_balance_change(
                uid=change.uid,
                exclude_device_id=change.exclude_device_id,
                event=change.event,
                delta=change.delta,
                new_balance=change.new_balance,
                correlation_id=change.correlation_id,
            )
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for in-flight fan-outs (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def notify_balance_change(
        self,
        uid: str,
        exclude_device_id: str | None,
        event: BalanceEvent,
        delta: int,
        new_balance: int,
        correlation_id: str | None = None,
    ) -> FanoutResult:
        """
        Push a silent balance update to every active device of `uid` except
        the one that caused the change. Never raises.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        if not self.enabled:
            logger.debug("push_fanout_disabled", uid=uid, fanout_event=event.value)
            return FanoutResult()

        try:
            async with self.session_factory() as session:
                devices = await LedgerStore(session).list_active_devices(uid, exclude_device_id)
        except Exception:
            logger.exception("push_device_lookup_failed", uid=uid, fanout_event=event.value)
            metrics.record_push(event.value, "lookup_error")
            return FanoutResult()

        if not devices:
            return FanoutResult()

        outcomes = await asyncio.gather(
            *(
                self._send_safely(
                    device, build_balance_message(device, event, delta, new_balance, correlation_id)
                )
                for device in devices
            )
        )

        deactivated = 0
        invalid = [d for d, o in zip(devices, outcomes) if o == SendOutcome.INVALID_TOKEN]
        if invalid:
            deactivated = await self._deactivate(invalid)

        for outcome in outcomes:
            metrics.record_push(event.value, outcome.value)

        result = FanoutResult(
            attempted=len(devices),
            succeeded=sum(1 for o in outcomes if o == SendOutcome.OK),
            failed=sum(1 for o in outcomes if o != SendOutcome.OK),
            deactivated=deactivated,
        )
        logger.info(
            "push_fanout_completed",
            uid=uid,
            fanout_event=event.value,
            correlation_id=correlation_id,
            attempted=result.attempted,
            succeeded=result.succeeded,
            failed=result.failed,
            deactivated=result.deactivated,
        )
        return result

    async def _send_safely(self, device: DeviceTarget, body: dict[str, Any]) -> SendOutcome:
        try:
            await asyncio.wait_for(self.send(body), timeout=self.timeout_seconds)
            return SendOutcome.OK
        except InvalidDeviceTokenError:
            return SendOutcome.INVALID_TOKEN
        except (ProviderError, asyncio.TimeoutError, httpx.HTTPError) as exc:
            logger.warning("push_send_failed", platform=device.platform, error=str(exc))
            return SendOutcome.TRANSIENT_ERROR
        except Exception:
            logger.exception("push_send_unexpected_error", platform=device.platform)
            return SendOutcome.TRANSIENT_ERROR

    async def send(self, body: dict[str, Any]) -> None:
        """
        POST one message to FCM, refreshing the access token once on 401.

        Raises:
            InvalidDeviceTokenError: The registration token is permanently invalid
            ProviderError: Any other failure
        """
        assert self.token_cache is not None
        url = self.FCM_URL.format(project_id=self.project_id)
        for attempt in (1, 2):
            token = await self.token_cache.get_token(FIREBASE_MESSAGING_SCOPE)
            response = await self.http_client.post(
                url,
                json=body,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout_seconds,
            )
            if response.status_code == 401 and attempt == 1:
                await self.token_cache.invalidate(FIREBASE_MESSAGING_SCOPE)
                continue
            break

        if response.status_code == 200:
            return
        error_code = _fcm_error_code(response)
        if response.status_code == 404 or error_code in PERMANENT_TOKEN_ERRORS:
            raise InvalidDeviceTokenError(
                f"Registration token rejected: {error_code}", status_code=response.status_code
            )
        raise ProviderError(
            f"FCM send failed: {response.status_code} {error_code}",
            status_code=response.status_code,
        )

    async def _deactivate(self, devices: list[DeviceTarget]) -> int:
        try:
            async with self.session_factory() as session:
                store = LedgerStore(session)
                count = 0
                for device in devices:
                    if await store.deactivate_device(device.device_token):
                        count += 1
                await session.commit()
        except Exception:
            logger.exception("push_device_deactivation_failed", count=len(devices))
            return 0
        logger.info("push_devices_deactivated", count=count)
        return count

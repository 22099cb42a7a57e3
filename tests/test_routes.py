"""
Tests for API Routes.

Drives the FastAPI app through TestClient with the ledger services replaced
by AsyncMocks via dependency overrides.
"""

from collections.abc import Generator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from credit_ledger.api.dependencies import (
    get_generation_client,
    get_operation_ledger,
    get_purchase_verifier,
    get_webhook_reconciler,
)
from credit_ledger.config import settings
from credit_ledger.db.session import get_db
from credit_ledger.exceptions import (
    InsufficientCreditsError,
    InvalidPurchaseError,
    OperationFailedError,
    ProviderUnavailableError,
    RateLimitedError,
    ValidationError,
    WriteVerificationError,
)
from credit_ledger.main import app
from credit_ledger.models.api import LedgerStatus
from credit_ledger.models.domain import (
    AckDecision,
    OperationData,
    OperationResult,
    PurchaseData,
    PurchaseResult,
)
from credit_ledger.services.operation_ledger import PROVIDER_TIMEOUT

PURCHASE_BODY = {
    "uid": "user-1",
    "purchase_token": "purchase-token-0001",
    "sku_id": "credits_100",
    "order_id": "GPA.1111-2222-3333-44444",
}
OPERATION_BODY = {
    "uid": "user-1",
    "req_id": "req-00000001",
    "cost": 5,
    "params": {"action": "generate", "preset_id": "noir"},
}


def operation_result(
    status: LedgerStatus,
    replayed: bool = False,
    processing: bool = False,
    error_code: str | None = None,
    new_balance: int | None = 15,
) -> OperationResult:
    return OperationResult(
        operation=OperationData(
            req_id="req-00000001",
            uid="user-1",
            cost=5,
            status=status,
            result_ref="https://cdn.example.com/out.png" if status == LedgerStatus.COMPLETED else None,
            error_code=error_code,
            error_message="upstream failed" if error_code else None,
            duration_ms=120,
        ),
        new_balance=new_balance,
        replayed=replayed,
        processing=processing,
    )


def purchase_result(already_processed: bool) -> PurchaseResult:
    return PurchaseResult(
        purchase=PurchaseData(
            order_id="GPA.1111-2222-3333-44444",
            purchase_token="purchase-token-0001",
            uid="user-1",
            sku_id="credits_100",
            amount=100,
            bonus=20,
            status=LedgerStatus.COMPLETED,
            acknowledged=True,
        ),
        new_balance=120,
        already_processed=already_processed,
    )


@pytest.fixture
def verifier() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def ledger() -> MagicMock:
    ledger = MagicMock()
    ledger.timeout_seconds = 30.0
    ledger.execute = AsyncMock()
    ledger.get_status = AsyncMock()
    return ledger


@pytest.fixture
def generation_client() -> AsyncMock:
    client = AsyncMock()
    client.invoke.return_value = "https://cdn.example.com/out.png"
    return client


@pytest.fixture
def reconciler() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def client(
    verifier: AsyncMock,
    ledger: MagicMock,
    generation_client: AsyncMock,
    reconciler: AsyncMock,
) -> Generator[TestClient, None, None]:
    app.dependency_overrides[get_purchase_verifier] = lambda: verifier
    app.dependency_overrides[get_operation_ledger] = lambda: ledger
    app.dependency_overrides[get_generation_client] = lambda: generation_client
    app.dependency_overrides[get_webhook_reconciler] = lambda: reconciler
    yield TestClient(app)
    app.dependency_overrides.clear()


# ============================================================================
# Authentication
# ============================================================================


class TestApiKey:
    """Tests for the X-API-Key dependency."""

    def test_missing_key_is_rejected(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(settings, "api_key", "service-secret")
        response = client.post("/v1/purchases/verify", json=PURCHASE_BODY)
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "ApiKey"

    def test_wrong_key_is_rejected(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(settings, "api_key", "service-secret")
        response = client.get("/v1/operations/req-00000001", headers={"X-API-Key": "nope"})
        assert response.status_code == 401

    def test_correct_key_is_accepted(
        self,
        client: TestClient,
        verifier: AsyncMock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(settings, "api_key", "service-secret")
        verifier.verify_and_credit.return_value = purchase_result(already_processed=False)
        response = client.post(
            "/v1/purchases/verify", json=PURCHASE_BODY, headers={"X-API-Key": "service-secret"}
        )
        assert response.status_code == 200


# ============================================================================
# Purchases
# ============================================================================


class TestVerifyPurchaseRoute:
    """Tests for POST /v1/purchases/verify."""

    def test_fresh_grant_returns_200(self, client: TestClient, verifier: AsyncMock) -> None:
        verifier.verify_and_credit.return_value = purchase_result(already_processed=False)

        response = client.post(
            "/v1/purchases/verify", json=PURCHASE_BODY, headers={"X-Device-Id": "dev-A"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "granted"
        assert body["credits_added"] == 100
        assert body["bonus"] == 20
        assert body["new_balance"] == 120
        assert verifier.verify_and_credit.call_args.kwargs["exclude_device_id"] == "dev-A"

    def test_duplicate_returns_409_with_stored_result(
        self, client: TestClient, verifier: AsyncMock
    ) -> None:
        verifier.verify_and_credit.return_value = purchase_result(already_processed=True)

        response = client.post("/v1/purchases/verify", json=PURCHASE_BODY)

        assert response.status_code == 409
        assert response.json()["status"] == "duplicate"
        assert response.json()["already_processed"] is True

    @pytest.mark.parametrize(
        ("error", "status_code"),
        [
            (InvalidPurchaseError("already consumed"), 400),
            (ValidationError("unknown sku"), 400),
            (ProviderUnavailableError("down", status_code=503), 503),
            (WriteVerificationError("rowcount 0"), 500),
        ],
    )
    def test_errors_are_mapped(
        self,
        client: TestClient,
        verifier: AsyncMock,
        error: Exception,
        status_code: int,
    ) -> None:
        verifier.verify_and_credit.side_effect = error
        response = client.post("/v1/purchases/verify", json=PURCHASE_BODY)
        assert response.status_code == status_code

    def test_rate_limit_sets_retry_after(self, client: TestClient, verifier: AsyncMock) -> None:
        verifier.verify_and_credit.side_effect = RateLimitedError("slow down", retry_after=30)
        response = client.post("/v1/purchases/verify", json=PURCHASE_BODY)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "30"

    def test_short_token_fails_validation(self, client: TestClient, verifier: AsyncMock) -> None:
        response = client.post(
            "/v1/purchases/verify", json={**PURCHASE_BODY, "purchase_token": "short"}
        )
        assert response.status_code == 422
        verifier.verify_and_credit.assert_not_called()


# ============================================================================
# Operations
# ============================================================================


class TestExecuteOperationRoute:
    """Tests for POST /v1/operations."""

    def test_completed_returns_200(
        self,
        client: TestClient,
        ledger: MagicMock,
        generation_client: AsyncMock,
    ) -> None:
        """The route hands the ledger a callable that runs the generation."""

        async def execute(**kwargs: Any) -> OperationResult:
            assert await kwargs["run_external_operation"]() == "https://cdn.example.com/out.png"
            return operation_result(LedgerStatus.COMPLETED)

        ledger.execute.side_effect = execute

        response = client.post("/v1/operations", json=OPERATION_BODY)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "COMPLETED"
        assert body["result_ref"] == "https://cdn.example.com/out.png"
        assert body["new_balance"] == 15
        generation_client.invoke.assert_awaited_once()
        assert generation_client.invoke.call_args.args[1] == 30.0

    def test_replayed_completed_has_same_status(
        self, client: TestClient, ledger: MagicMock
    ) -> None:
        ledger.execute.return_value = operation_result(LedgerStatus.COMPLETED, replayed=True)
        response = client.post("/v1/operations", json=OPERATION_BODY)
        assert response.status_code == 200
        assert response.json()["replayed"] is True

    def test_pending_replay_returns_202(self, client: TestClient, ledger: MagicMock) -> None:
        ledger.execute.return_value = operation_result(
            LedgerStatus.PENDING, replayed=True, processing=True, new_balance=None
        )
        response = client.post("/v1/operations", json=OPERATION_BODY)
        assert response.status_code == 202
        assert response.json()["status"] == "processing"

    @pytest.mark.parametrize(
        ("error_code", "status_code"),
        [("PROVIDER_ERROR", 502), (PROVIDER_TIMEOUT, 504)],
    )
    def test_refunded_replay_maps_by_error_code(
        self,
        client: TestClient,
        ledger: MagicMock,
        error_code: str,
        status_code: int,
    ) -> None:
        ledger.execute.return_value = operation_result(
            LedgerStatus.REFUNDED, replayed=True, error_code=error_code
        )
        response = client.post("/v1/operations", json=OPERATION_BODY)
        assert response.status_code == status_code
        assert response.json()["credits_refunded"] == 5

    def test_compensated_failure_returns_refund_details(
        self, client: TestClient, ledger: MagicMock
    ) -> None:
        ledger.execute.side_effect = OperationFailedError(
            req_id="req-00000001",
            credits_refunded=5,
            error_code=PROVIDER_TIMEOUT,
            message="Operation exceeded 30.0s",
            new_balance=20,
        )

        response = client.post("/v1/operations", json=OPERATION_BODY)

        assert response.status_code == 504
        body = response.json()
        assert body["status"] == "REFUNDED"
        assert body["credits_refunded"] == 5
        assert body["new_balance"] == 20

    def test_insufficient_credits_returns_402(
        self, client: TestClient, ledger: MagicMock
    ) -> None:
        ledger.execute.side_effect = InsufficientCreditsError(required=5, available=2)

        response = client.post("/v1/operations", json=OPERATION_BODY)

        assert response.status_code == 402
        assert response.json()["required"] == 5
        assert response.json()["available"] == 2

    def test_reused_req_id_is_400(self, client: TestClient, ledger: MagicMock) -> None:
        ledger.execute.side_effect = ValidationError("req_id belongs to another account")
        response = client.post("/v1/operations", json=OPERATION_BODY)
        assert response.status_code == 400

    def test_non_positive_cost_fails_validation(
        self, client: TestClient, ledger: MagicMock
    ) -> None:
        response = client.post("/v1/operations", json={**OPERATION_BODY, "cost": 0})
        assert response.status_code == 422
        ledger.execute.assert_not_called()


class TestGetOperationRoute:
    """Tests for GET /v1/operations/{req_id}."""

    def test_known_operation_is_returned(self, client: TestClient, ledger: MagicMock) -> None:
        ledger.get_status.return_value = operation_result(
            LedgerStatus.REFUNDED, error_code=PROVIDER_TIMEOUT
        )
        response = client.get("/v1/operations/req-00000001")
        assert response.status_code == 200
        assert response.json()["status"] == "REFUNDED"
        assert response.json()["credits_refunded"] == 5

    def test_unknown_operation_is_404(self, client: TestClient, ledger: MagicMock) -> None:
        ledger.get_status.return_value = None
        response = client.get("/v1/operations/req-unknown1")
        assert response.status_code == 404


# ============================================================================
# Webhooks
# ============================================================================


class TestGooglePlayWebhookRoute:
    """Tests for POST /v1/webhooks/google-play."""

    def test_refund_is_acknowledged(self, client: TestClient, reconciler: AsyncMock) -> None:
        reconciler.handle_provider_notification.return_value = AckDecision(
            status_code=200, status="refunded", notification_type="purchase_voided"
        )

        response = client.post(
            "/v1/webhooks/google-play",
            json={"message": {"data": "e30="}},
            headers={"Authorization": "Bearer signed.jwt"},
        )

        assert response.status_code == 200
        assert response.json() == {"status": "refunded", "notification_type": "purchase_voided"}
        envelope, authorization = reconciler.handle_provider_notification.call_args.args
        assert envelope == {"message": {"data": "e30="}}
        assert authorization == "Bearer signed.jwt"

    def test_webhook_does_not_require_api_key(
        self,
        client: TestClient,
        reconciler: AsyncMock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(settings, "api_key", "service-secret")
        reconciler.handle_provider_notification.return_value = AckDecision(200, "noop")
        response = client.post("/v1/webhooks/google-play", json={})
        assert response.status_code == 200

    def test_non_json_body_is_passed_as_empty_envelope(
        self, client: TestClient, reconciler: AsyncMock
    ) -> None:
        reconciler.handle_provider_notification.return_value = AckDecision(200, "ignored")
        response = client.post("/v1/webhooks/google-play", content=b"not json")
        assert response.status_code == 200
        assert reconciler.handle_provider_notification.call_args.args[0] == {}

    def test_unauthorized_push_is_401(self, client: TestClient, reconciler: AsyncMock) -> None:
        reconciler.handle_provider_notification.return_value = AckDecision(401, "unauthorized")
        response = client.post("/v1/webhooks/google-play", json={})
        assert response.status_code == 401

    def test_database_error_is_500(self, client: TestClient, reconciler: AsyncMock) -> None:
        reconciler.handle_provider_notification.return_value = AckDecision(500, "error")
        response = client.post("/v1/webhooks/google-play", json={})
        assert response.status_code == 500


# ============================================================================
# Devices and Health
# ============================================================================


class TestDeviceAndHealthRoutes:
    """Tests for routes that use the request-scoped session."""

    @pytest.fixture
    def db(self) -> AsyncMock:
        return AsyncMock()

    @pytest.fixture
    def db_client(self, client: TestClient, db: AsyncMock) -> TestClient:
        async def override_db():  # type: ignore[no-untyped-def]
            yield db

        app.dependency_overrides[get_db] = override_db
        return client

    def test_register_device(self, db_client: TestClient, db: AsyncMock) -> None:
        device = MagicMock(device_token="fcm-token-000001", uid="user-1", active=True)
        upsert = AsyncMock(return_value=device)

        with pytest.MonkeyPatch.context() as mp:
            mp.setattr("credit_ledger.api.routes.LedgerStore.upsert_device", upsert)
            response = db_client.post(
                "/v1/devices",
                json={"uid": "user-1", "device_token": "fcm-token-000001", "platform": "ios"},
            )

        assert response.status_code == 200
        assert response.json() == {
            "device_token": "fcm-token-000001",
            "uid": "user-1",
            "platform": "ios",
            "active": True,
        }
        db.commit.assert_awaited_once()

    def test_unknown_platform_fails_validation(self, db_client: TestClient) -> None:
        response = db_client.post(
            "/v1/devices",
            json={"uid": "user-1", "device_token": "fcm-token-000001", "platform": "symbian"},
        )
        assert response.status_code == 422

    def test_health_reports_database(self, db_client: TestClient) -> None:
        response = db_client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    def test_health_reports_database_outage(self, db_client: TestClient, db: AsyncMock) -> None:
        db.execute.side_effect = ConnectionError("refused")
        response = db_client.get("/health")
        assert response.status_code == 503


class TestUnconfiguredServices:
    def test_missing_service_is_503(self) -> None:
        """Without the lifespan, services are absent and routes answer 503."""
        app.dependency_overrides.clear()
        app.state.purchase_verifier = None
        response = TestClient(app).post("/v1/purchases/verify", json=PURCHASE_BODY)
        assert response.status_code == 503

"""
Tests for request models and the credit pack catalog.
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError as PydanticValidationError

from credit_ledger.exceptions import ValidationError
from credit_ledger.models.api import ExecuteOperationRequest, LedgerStatus, VerifyPurchaseRequest
from credit_ledger.services.product_catalog import CREDIT_PACKS, CreditPack, get_pack


class TestCreditPacks:
    """Tests for SKU -> credits mapping."""

    @pytest.mark.parametrize(
        ("sku_id", "credits", "bonus"),
        [
            ("credits_10", 10, 0),
            ("credits_50", 50, 5),
            ("credits_100", 100, 20),
            ("credits_500", 500, 150),
        ],
    )
    def test_pack_contents(self, sku_id: str, credits: int, bonus: int):
        pack = get_pack(sku_id)
        assert pack.credits == credits
        assert pack.bonus == bonus
        assert pack.total_credits == credits + bonus

    def test_unknown_sku(self):
        with pytest.raises(ValidationError, match="Unknown SKU"):
            get_pack("credits_1000000")

    def test_invalid_pack_rejected(self):
        with pytest.raises(ValueError):
            CreditPack(sku_id="broken", credits=0, bonus=0, name="Broken")

    def test_catalog_keys_match_sku_ids(self):
        assert all(key == pack.sku_id for key, pack in CREDIT_PACKS.items())


class TestLedgerStatus:
    def test_terminal_states(self):
        assert not LedgerStatus.PENDING.is_terminal
        assert LedgerStatus.COMPLETED.is_terminal
        assert LedgerStatus.REFUNDED.is_terminal


class TestExecuteOperationRequest:
    """Tests for operation request validation."""

    def _body(self, **overrides: object) -> dict:
        body: dict = {
            "uid": "user-1",
            "req_id": "req-00000001",
            "cost": 5,
            "params": {"action": "generate"},
        }
        body.update(overrides)
        return body

    def test_valid_request(self):
        request = ExecuteOperationRequest(**self._body())
        assert request.params.action == "generate"
        assert request.params.selfie_ids == []

    @given(cost=st.integers(max_value=0))
    def test_non_positive_cost_rejected(self, cost: int):
        with pytest.raises(PydanticValidationError):
            ExecuteOperationRequest(**self._body(cost=cost))

    @pytest.mark.parametrize("req_id", ["short", "req 00000001", " req-00000001"])
    def test_bad_req_id_rejected(self, req_id: str):
        with pytest.raises(PydanticValidationError):
            ExecuteOperationRequest(**self._body(req_id=req_id))


class TestVerifyPurchaseRequest:
    def test_empty_uid_rejected(self):
        with pytest.raises(PydanticValidationError):
            VerifyPurchaseRequest(
                uid="",
                purchase_token="purchase-token-0001",
                sku_id="credits_100",
                order_id="GPA.1",
            )

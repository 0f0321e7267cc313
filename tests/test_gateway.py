"""Tests for gateway adapters."""

from decimal import Decimal

import httpx
import pytest

from motolease.config import Settings
from motolease.gateway import StubGateway, build_gateway
from motolease.gateway.base import (
    GatewayAuthError,
    GatewayError,
    GatewayUnavailableError,
    PaymentSnapshot,
)
from motolease.gateway.mercadopago import MercadoPagoGateway

PAYMENT_BODY = {
    "id": 1234567890,
    "status": "approved",
    "status_detail": "accredited",
    "external_reference": "contrato:ctr-1",
    "payment_method_id": "master",
    "payment_type_id": "credit_card",
    "transaction_amount": 120000,
    "transaction_details": {"net_received_amount": 113500.5},
    "fee_details": [
        {"type": "mercadopago_fee", "amount": 5499.5},
        {"type": "financing_fee", "amount": 1000},
    ],
}


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite+aiosqlite:///:memory:",
        host="127.0.0.1",
        port=8000,
        debug=False,
        log_level="INFO",
        gateway_provider="mercadopago",
        mercado_pago_access_token="TEST-token",
        mercado_pago_base_url="https://api.mercadopago.test",
        mercado_pago_timeout=2.0,
        system_actor="system",
    )
    values.update(overrides)
    return Settings(**values)


def mercadopago_with(handler) -> MercadoPagoGateway:
    client = httpx.AsyncClient(
        base_url="https://api.mercadopago.test",
        transport=httpx.MockTransport(handler),
    )
    return MercadoPagoGateway(make_settings(), client=client)


class TestPaymentSnapshot:
    """Test payload parsing."""

    def test_from_payload(self):
        snapshot = PaymentSnapshot.from_payload("1234567890", PAYMENT_BODY)

        assert snapshot.payment_id == "1234567890"
        assert snapshot.status == "approved"
        assert snapshot.external_reference == "contrato:ctr-1"
        assert snapshot.transaction_amount == Decimal("120000")
        assert snapshot.net_received_amount == Decimal("113500.5")
        assert snapshot.fee_total == Decimal("6499.5")

    def test_missing_fields(self):
        snapshot = PaymentSnapshot.from_payload("42", {"status": "pending"})

        assert snapshot.payment_id == "42"
        assert snapshot.external_reference == ""
        assert snapshot.transaction_amount == Decimal("0")
        assert snapshot.net_received_amount is None
        assert snapshot.fee_total is None

    def test_fee_without_amount_is_skipped(self):
        snapshot = PaymentSnapshot.from_payload(
            "x",
            {"status": "approved", "fee_details": [{"type": "mercadopago_fee", "amount": None},
                                                  {"type": "financing_fee", "amount": 12.5}]},
        )

        assert snapshot.fee_amounts == (Decimal("12.5"),)
        assert snapshot.fee_total == Decimal("12.5")

    def test_all_fees_without_amount(self):
        snapshot = PaymentSnapshot.from_payload("x", {"fee_details": [{"amount": None}]})

        assert snapshot.fee_total is None


class TestMercadoPagoGateway:
    """Test the HTTP adapter against a mock transport."""

    async def test_get_payment(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=PAYMENT_BODY)

        gateway = mercadopago_with(handler)
        snapshot = await gateway.get_payment("1234567890")
        await gateway.aclose()

        assert requests[0].url.path == "/v1/payments/1234567890"
        assert snapshot.status == "approved"
        assert snapshot.payment_method_id == "master"

    async def test_not_found_returns_none(self):
        gateway = mercadopago_with(lambda request: httpx.Response(404, json={"message": "not found"}))

        assert await gateway.get_payment("missing") is None

    async def test_unauthorized(self):
        gateway = mercadopago_with(lambda request: httpx.Response(401))

        with pytest.raises(GatewayAuthError):
            await gateway.get_payment("1")

    async def test_server_error_is_unavailable(self):
        gateway = mercadopago_with(lambda request: httpx.Response(503))

        with pytest.raises(GatewayUnavailableError):
            await gateway.get_payment("1")

    async def test_client_error(self):
        gateway = mercadopago_with(lambda request: httpx.Response(400, json={"message": "bad"}))

        with pytest.raises(GatewayError) as exc_info:
            await gateway.get_payment("1")

        assert exc_info.value.error_code == "HTTP_ERROR"

    async def test_timeout_is_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        gateway = mercadopago_with(handler)

        with pytest.raises(GatewayUnavailableError):
            await gateway.get_payment("1")

    async def test_connection_error_is_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        gateway = mercadopago_with(handler)

        with pytest.raises(GatewayUnavailableError):
            await gateway.get_payment("1")

    async def test_get_preapproval(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/preapproval/pre-1"
            return httpx.Response(
                200, json={"id": "pre-1", "status": "authorized", "external_reference": "contrato:c"}
            )

        gateway = mercadopago_with(handler)
        preapproval = await gateway.get_preapproval("pre-1")

        assert preapproval.status == "authorized"
        assert preapproval.external_reference == "contrato:c"


class TestStubGateway:
    """Test the in-memory stub."""

    async def test_registered_payment(self):
        gateway = StubGateway()
        gateway.register_payment(
            "mp-1", external_reference="pedido:o1", transaction_amount="10.50", fees=["0.50"]
        )

        snapshot = await gateway.get_payment("mp-1")

        assert snapshot.transaction_amount == Decimal("10.50")
        assert snapshot.fee_total == Decimal("0.50")
        assert gateway.fetch_count["mp-1"] == 1

    async def test_unknown_payment(self):
        assert await StubGateway().get_payment("nope") is None

    async def test_failure_injection(self):
        gateway = StubGateway()
        gateway.fail_with("mp-1", GatewayUnavailableError("down"))

        with pytest.raises(GatewayUnavailableError):
            await gateway.get_payment("mp-1")


class TestBuildGateway:
    """Test provider selection."""

    def test_stub(self):
        assert isinstance(build_gateway(make_settings(gateway_provider="stub")), StubGateway)

    def test_mercadopago(self):
        assert isinstance(build_gateway(make_settings()), MercadoPagoGateway)

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            build_gateway(make_settings(gateway_provider="paypal"))

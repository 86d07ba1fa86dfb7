import asyncio
import json

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from checkout.database import get_db, init_db
from checkout.main import (
    app,
    get_checkout_timings,
    get_order_recorder,
    get_session_registry,
)
from checkout.services.orchestrator import CheckoutTimings
from checkout.services.orders import OrderRecorder
from checkout.services.payment import AuthorizationError, GatewayError, get_payment_gateway
from checkout.services.sessions import SessionRegistry

from conftest import ScriptedGateway, tx


def checkout_payload(**payment):
    payment.setdefault("operator", "mpesa")
    payment.setdefault("phone_number", "081 234 5678")
    payment.setdefault("country_code", "DRC")
    return {
        "restaurant_id": "resto_001",
        "restaurant_name": "Chez Maman Colonel",
        "customer_name": "Grace Mbuyi",
        "delivery_address": "12 Avenue de la Paix, Gombe",
        "city": "Kinshasa",
        "items": [
            {"id": "dish_01", "name": "Poulet Mayo", "quantity": 2, "unit_price": 7500},
            {"id": "dish_06", "name": "Jus de Bissap", "quantity": 1, "unit_price": 2500},
        ],
        "delivery_fee": 3000,
        "discount_amount": 1000,
        "payment": payment,
    }


class Harness:
    def __init__(self, client, registry, gateway):
        self.client = client
        self.registry = registry
        self.gateway = gateway

    async def settle(self, session_id):
        return await self.registry.get(session_id).wait(timeout=2)


@pytest_asyncio.fixture
async def session_maker():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(bind=engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def api(session_maker, fast_timings):
    gateway = ScriptedGateway(statuses=[tx("pending"), tx("completed")])
    registry = SessionRegistry(retention_seconds=60)

    async def override_get_db():
        async with session_maker() as db:
            yield db

    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_session_registry] = lambda: registry
    app.dependency_overrides[get_order_recorder] = lambda: OrderRecorder(session_maker)
    app.dependency_overrides[get_checkout_timings] = lambda: fast_timings
    app.dependency_overrides[get_db] = override_get_db

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield Harness(client, registry, gateway)

    registry.shutdown()
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_mobile_money_checkout_records_paid_order(api):
    response = await api.client.post("/api/checkout", json=checkout_payload())
    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "waiting_confirmation"
    assert body["phone_number"] == "+243812345678"
    assert body["amount"] == 19500
    assert body["transaction_id"] == "tx1"

    await api.settle(body["session_id"])

    response = await api.client.get(f"/api/checkout/{body['session_id']}")
    assert response.json()["finalized"] is True
    assert response.json()["verification_status"] == "paid"

    response = await api.client.get("/api/orders")
    data = response.json()
    assert data["total"] == 1
    order = data["orders"][0]
    assert order["payment_session_id"] == body["session_id"]
    assert order["payment_method"] == "M-Pesa"
    assert order["payment_reference"] == "tx1"
    assert order["payment_status"] == "paid"
    assert order["status"] == "pending"
    assert order["subtotal"] == 17500
    assert order["total_amount"] == 19500
    assert order["currency"] == "CDF"
    assert len(json.loads(order["items"])) == 2

    response = await api.client.get(f"/api/orders/{order['id']}")
    assert response.status_code == 200
    assert response.json()["customer_name"] == "Grace Mbuyi"


@pytest.mark.asyncio
async def test_manual_confirmation_records_order_for_reconciliation(api):
    api.gateway.status_script = [AuthorizationError("Unauthorized", status_code=401)]

    response = await api.client.post("/api/checkout", json=checkout_payload(operator="orange"))
    session_id = response.json()["session_id"]

    for _ in range(100):
        response = await api.client.get(f"/api/checkout/{session_id}")
        if response.json()["status_checks_blocked"]:
            break
        await asyncio.sleep(0.01)
    assert response.json()["manual_override_eligible"] is True

    response = await api.client.post(f"/api/checkout/{session_id}/manual-confirmation")
    assert response.status_code == 200
    assert response.json()["state"] == "completed"
    assert response.json()["verification_status"] == "manual_check"

    await api.settle(session_id)

    response = await api.client.get("/api/orders", params={"payment_status": "manual_check"})
    orders = response.json()["orders"]
    assert len(orders) == 1
    assert orders[0]["payment_method"] == "Orange Money"

    response = await api.client.get("/api/orders", params={"payment_status": "paid"})
    assert response.json()["total"] == 0


@pytest.mark.asyncio
async def test_manual_confirmation_before_grace_period_conflicts(api):
    app.dependency_overrides[get_checkout_timings] = lambda: CheckoutTimings(manual_override_grace=5)
    api.gateway.status_script = [tx("pending")]
    response = await api.client.post("/api/checkout", json=checkout_payload())
    session_id = response.json()["session_id"]

    response = await api.client.post(f"/api/checkout/{session_id}/manual-confirmation")
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_cancelled_checkout_records_nothing(api):
    api.gateway.status_script = [tx("pending")]
    response = await api.client.post("/api/checkout", json=checkout_payload())
    session_id = response.json()["session_id"]

    response = await api.client.delete(f"/api/checkout/{session_id}")
    assert response.status_code == 200
    assert response.json()["cancelled"] is True

    await asyncio.sleep(0.1)
    response = await api.client.get("/api/orders")
    assert response.json()["total"] == 0


@pytest.mark.asyncio
async def test_cancel_during_finalization_conflicts(api):
    app.dependency_overrides[get_checkout_timings] = lambda: CheckoutTimings(finalize_delay=0.3)
    api.gateway.initiate_script = [tx("completed")]
    response = await api.client.post("/api/checkout", json=checkout_payload())
    session_id = response.json()["session_id"]
    assert response.json()["state"] == "completed"

    response = await api.client.delete(f"/api/checkout/{session_id}")
    assert response.status_code == 409

    await api.settle(session_id)
    response = await api.client.get("/api/orders")
    assert response.json()["total"] == 1


@pytest.mark.asyncio
async def test_failed_payment_records_nothing(api):
    api.gateway.status_script = [tx("failed", failure_reason="Insufficient balance")]
    response = await api.client.post("/api/checkout", json=checkout_payload())
    session_id = response.json()["session_id"]

    await api.settle(session_id)
    response = await api.client.get(f"/api/checkout/{session_id}")
    assert response.json()["state"] == "error"
    assert response.json()["error_message"] == "Insufficient balance"

    response = await api.client.get("/api/orders")
    assert response.json()["total"] == 0


@pytest.mark.asyncio
async def test_card_checkout(api):
    payload = checkout_payload(
        operator="visa",
        phone_number=None,
        card_number="4242 4242 4242 4242",
        expiry="12/28",
        cvc="123",
    )
    response = await api.client.post("/api/checkout", json=payload)
    assert response.status_code == 200
    assert response.json()["state"] == "processing"

    await api.settle(response.json()["session_id"])
    order = (await api.client.get("/api/orders")).json()["orders"][0]
    assert order["payment_method"] == "Visa / MasterCard"
    assert order["payment_phone"] == "Card **** 4242"
    assert api.gateway.initiated == []


@pytest.mark.asyncio
async def test_invalid_phone_is_a_bad_request(api):
    response = await api.client.post("/api/checkout", json=checkout_payload(phone_number=""))
    assert response.status_code == 400
    assert response.json()["detail"] == "Please enter your phone number"
    assert api.gateway.initiated == []
    assert api.registry.active_count() == 0


@pytest.mark.asyncio
async def test_provider_rejection_is_a_bad_gateway(api):
    api.gateway.initiate_script = [GatewayError("Invalid phone number", status_code=400)]
    response = await api.client.post("/api/checkout", json=checkout_payload())
    assert response.status_code == 502
    assert response.json()["detail"] == "Invalid phone number"


@pytest.mark.asyncio
async def test_unknown_session_and_order(api):
    assert (await api.client.get("/api/checkout/nope")).status_code == 404
    assert (await api.client.delete("/api/checkout/nope")).status_code == 404
    assert (await api.client.post("/api/checkout/nope/manual-confirmation")).status_code == 404
    assert (await api.client.get("/api/orders/999")).status_code == 404


@pytest.mark.asyncio
async def test_invalid_order_filters(api):
    response = await api.client.get("/api/orders", params={"status": "lost"})
    assert response.status_code == 400
    response = await api.client.get("/api/orders", params={"payment_status": "maybe"})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_health(api):
    response = await api.client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "operational"
    assert body["database"] == "healthy"
    assert body["active_sessions"] == 0


@pytest.mark.asyncio
async def test_infinite_price_is_rejected(api):
    body = json.dumps(checkout_payload()).replace('"unit_price": 7500', '"unit_price": 1e400')
    response = await api.client.post(
        "/api/checkout",
        content=body,
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 422
    assert api.gateway.initiated == []


@pytest.mark.asyncio
async def test_overflowing_total_is_a_bad_request(api):
    payload = checkout_payload()
    payload["items"] = [{"id": "dish_01", "name": "Poulet Mayo", "quantity": 99, "unit_price": 1e308}]

    response = await api.client.post("/api/checkout", json=payload)
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid amount"
    assert api.gateway.initiated == []
    assert list(api.registry) == []


@pytest.mark.asyncio
async def test_checkout_can_be_cancelled_while_initiate_is_in_flight(api):
    api.gateway.initiate_release = asyncio.Event()
    start = asyncio.create_task(api.client.post("/api/checkout", json=checkout_payload()))
    await asyncio.wait_for(api.gateway.initiate_requested.wait(), 1)

    [orchestrator] = list(api.registry)
    response = await api.client.get(f"/api/checkout/{orchestrator.session_id}")
    assert response.json()["state"] == "processing"

    response = await api.client.delete(f"/api/checkout/{orchestrator.session_id}")
    assert response.status_code == 200
    assert response.json()["cancelled"] is True

    api.gateway.initiate_release.set()
    response = await start
    assert response.status_code == 200
    assert response.json()["cancelled"] is True
    assert response.json()["transaction_id"] is None

    await asyncio.sleep(0.1)
    assert api.gateway.status_checks == []
    assert (await api.client.get("/api/orders")).json()["total"] == 0


@pytest.mark.asyncio
async def test_failed_start_is_not_kept_in_registry(api):
    api.gateway.initiate_script = [GatewayError("Invalid phone number", status_code=400)]
    response = await api.client.post("/api/checkout", json=checkout_payload())
    assert response.status_code == 502
    assert list(api.registry) == []


@pytest.mark.asyncio
async def test_health_reports_blocked_sessions(api):
    api.gateway.status_script = [AuthorizationError("Unauthorized", status_code=401)]
    response = await api.client.post("/api/checkout", json=checkout_payload())
    session_id = response.json()["session_id"]

    for _ in range(100):
        if api.registry.get(session_id).session.status_checks_blocked:
            break
        await asyncio.sleep(0.01)

    body = (await api.client.get("/health")).json()
    assert body["active_sessions"] == 1
    assert body["blocked_sessions"] == 1

"""Shared fixtures: SQLite database, mocked Payd, wired service context."""
import json
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
from sqlalchemy import func, select

from shared.config import Settings
from shared.database import Database
from services.payment_service.context import build_context
from services.payment_service.models import Fulfilment, Payment, Product, Seller
from services.payment_service.orders import CartLine
from services.payment_service.provider import PaydClient
from services.payment_service.webhooks import sign_payload

WEBHOOK_SECRET = "test-secret"
BUYER = {
    "buyer_name": "Wanjiku Kamau",
    "buyer_email": "wanjiku@example.com",
    "buyer_phone": "0712345678",
}


class FakePayd:
    """httpx.MockTransport handler standing in for the Payd API."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.payment_responses: List[Any] = []
        self.payout_responses: List[Any] = []
        self.statuses: Dict[str, Any] = {}
        self._counter = 0

    def _next(self, queue: List[Any], default: Dict[str, Any]):
        item = queue.pop(0) if queue else default
        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        return httpx.Response(200, json=item)

    def calls(self, method: str, path_suffix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path.endswith(path_suffix)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self._counter += 1
        path = request.url.path

        if request.method == "POST" and path.endswith("/payments"):
            return self._next(
                self.payment_responses,
                {"success": True, "transaction_reference": f"PAYD-{self._counter}"},
            )
        if request.method == "POST" and path.endswith("/withdrawal"):
            return self._next(
                self.payout_responses,
                {"success": True, "correlator_id": f"COR-{self._counter}"},
            )

        match = re.search(r"/transactions/(?P<ref>[^/]+)$", path)
        if request.method == "GET" and match:
            status = self.statuses.get(match.group("ref"), {"status": "PENDING"})
            if isinstance(status, Exception):
                raise status
            if isinstance(status, httpx.Response):
                return status
            return httpx.Response(200, json=status)

        return httpx.Response(404, json={"message": "not found"})


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        environment="test",
        database_dsn=f"sqlite+aiosqlite:///{tmp_path}/payments.db",
        backend_url="https://shop.example.com",
        payd_username="merchant",
        payd_password="secret",
        webhook_secret=WEBHOOK_SECRET,
        provider_backoff_seconds=0,
        provider_max_attempts=3,
        sse_heartbeat_seconds=0.05,
        sse_max_duration_seconds=1,
    )


@pytest.fixture
def payd() -> FakePayd:
    return FakePayd()


@pytest.fixture
async def ctx(settings, payd):
    database = Database(settings.database_url)
    await database.create_tables()
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(payd))
    provider = PaydClient(settings, http_client=http_client)

    context = build_context(settings, database=database, provider=provider)
    yield context

    await context.broadcaster.close()
    await http_client.aclose()
    await database.close()


@pytest.fixture
def make_seller(ctx):
    async def _make(balance: str = "0", name: str = "Duka Bora") -> Seller:
        async with ctx.database.session_factory() as session:
            seller = Seller(name=name, phone="0711000000", balance=Decimal(balance))
            session.add(seller)
            await session.commit()
            return seller
    return _make


@pytest.fixture
def make_product(ctx):
    async def _make(seller: Seller, price: str = "1500.00", fulfilment: Fulfilment = Fulfilment.PHYSICAL,
                    active: bool = True, name: str = "Kiondo bag") -> Product:
        async with ctx.database.session_factory() as session:
            product = Product(
                seller_id=seller.id,
                name=name,
                price=Decimal(price),
                fulfilment=fulfilment.value,
                active=active,
            )
            session.add(product)
            await session.commit()
            return product
    return _make


@pytest.fixture
def checkout(ctx, make_seller, make_product):
    """Create a seller, a product and a pending intent for it."""
    async def _checkout(price: str = "1500.00", fulfilment: Fulfilment = Fulfilment.PHYSICAL,
                        quantity: int = 1, **overrides):
        seller = await make_seller()
        product = await make_product(seller, price=price, fulfilment=fulfilment)
        kwargs = {**BUYER, **overrides}
        receipt = await ctx.intents.initiate(lines=[CartLine(product.id, quantity)], **kwargs)
        return seller, product, receipt
    return _checkout


@pytest.fixture
def fetch(ctx):
    """Load a fresh copy of a row by primary key."""
    async def _fetch(model, ident):
        async with ctx.database.session_factory() as session:
            return await session.get(model, ident)
    return _fetch


@pytest.fixture
def get_payment(ctx):
    async def _get(invoice_id: str) -> Optional[Payment]:
        async with ctx.database.session_factory() as session:
            result = await session.execute(select(Payment).where(Payment.invoice_id == invoice_id))
            return result.scalar_one_or_none()
    return _get


@pytest.fixture
def count_rows(ctx):
    async def _count(model, *criteria) -> int:
        async with ctx.database.session_factory() as session:
            query = select(func.count()).select_from(model)
            if criteria:
                query = query.where(*criteria)
            return (await session.execute(query)).scalar_one()
    return _count


def signed(payload: Any, secret: str = WEBHOOK_SECRET) -> Tuple[bytes, Dict[str, str]]:
    """Encode a callback body and the headers Payd would send with it."""
    body = json.dumps(payload).encode()
    return body, {"content-type": "application/json", "x-payd-signature": sign_payload(secret, body)}

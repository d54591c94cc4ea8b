"""Tests for appbase_api/routers/apps.py (profile and billing endpoints)."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import stripe
from appbase_core.state.repository import BillingCustomerRepository, PaymentLedgerRepository
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appbase_api.services.billing_service import BillingService

AUTH = "/api/v1/auth"
APPS = "/api/v1/apps"


async def _signed_in(client: AsyncClient, app_id: str = "app-a") -> str:
    resp = await client.post(
        f"{AUTH}/{app_id}/signup",
        json={"email": "ada@example.com", "password": "correct-horse", "display_name": "Ada"},
    )
    assert resp.status_code == 201
    return resp.json()["user"]["id"]


@pytest.fixture()
def mock_stripe():
    mock = MagicMock()
    mock.InvalidRequestError = stripe.InvalidRequestError
    mock.checkout.Session.create.return_value = {"id": "cs_1", "url": "https://checkout.stripe.test/cs_1"}
    mock.billing_portal.Session.create.return_value = {"url": "https://billing.stripe.test/p_1"}
    with patch.object(BillingService, "_get_stripe", return_value=mock):
        yield mock


def _price(app_id: str = "app-a") -> dict[str, Any]:
    return {
        "id": "price_1",
        "active": True,
        "unit_amount": 900,
        "currency": "usd",
        "recurring": {"interval": "month"},
        "product": {"id": "prod_1", "name": "Pro", "metadata": {"app_id": app_id}},
    }


class TestProfile:
    @pytest.mark.asyncio
    async def test_me(self, client: AsyncClient) -> None:
        subject = await _signed_in(client)
        resp = await client.get(f"{APPS}/app-a/me")
        assert resp.status_code == 200
        body = resp.json()
        assert body["id"] == subject
        assert body["display_name"] == "Ada"


class TestEntitlementEndpoint:
    @pytest.mark.asyncio
    async def test_new_user_has_no_access(self, client: AsyncClient) -> None:
        subject = await _signed_in(client)
        resp = await client.get(f"{APPS}/app-a/billing/entitlement")
        assert resp.status_code == 200
        body = resp.json()
        assert body["end_user_id"] == subject
        assert body["app_id"] == "app-a"
        assert body["billing_status"] == "cancelled"
        assert body["access_until"] is None

    @pytest.mark.asyncio
    async def test_reflects_recorded_payment(
        self, client: AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        subject = await _signed_in(client)
        paid_at = datetime.now(UTC) - timedelta(days=1)
        async with session_factory() as session:
            await PaymentLedgerRepository(session, "app-a").record(
                payment_intent_id="pi_1",
                subject_id=subject,
                amount=900,
                currency="usd",
                status="succeeded",
                source_event_id="evt_1",
                source_event_at=paid_at,
                paid_at=paid_at,
            )
            await session.commit()

        resp = await client.get(f"{APPS}/app-a/billing/entitlement")
        assert resp.json()["billing_status"] == "current"
        assert resp.json()["access_until"] is not None

    @pytest.mark.asyncio
    async def test_requires_session(self, client: AsyncClient) -> None:
        resp = await client.get(f"{APPS}/app-a/billing/entitlement")
        assert resp.status_code == 401


class TestCheckoutEndpoints:
    @pytest.mark.asyncio
    async def test_checkout(self, client: AsyncClient, mock_stripe: MagicMock) -> None:
        subject = await _signed_in(client)
        mock_stripe.Price.retrieve.return_value = _price()

        resp = await client.post(
            f"{APPS}/app-a/billing/checkout",
            json={"price_id": "price_1", "success_url": "https://app/ok", "cancel_url": "https://app/no"},
        )

        assert resp.status_code == 200
        assert resp.json()["checkout_url"] == "https://checkout.stripe.test/cs_1"
        params = mock_stripe.checkout.Session.create.call_args.kwargs
        assert params["metadata"] == {"app_id": "app-a", "end_user_id": subject}
        assert params["customer_email"] == "ada@example.com"

    @pytest.mark.asyncio
    async def test_checkout_with_foreign_price(self, client: AsyncClient, mock_stripe: MagicMock) -> None:
        await _signed_in(client)
        mock_stripe.Price.retrieve.return_value = _price(app_id="app-b")
        resp = await client.post(
            f"{APPS}/app-a/billing/checkout",
            json={"price_id": "price_1", "success_url": "https://app/ok", "cancel_url": "https://app/no"},
        )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_checkout_requires_session(self, client: AsyncClient, mock_stripe: MagicMock) -> None:
        resp = await client.post(
            f"{APPS}/app-a/billing/checkout",
            json={"price_id": "price_1", "success_url": "https://app/ok", "cancel_url": "https://app/no"},
        )
        assert resp.status_code == 401
        mock_stripe.checkout.Session.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_portal_without_customer(self, client: AsyncClient, mock_stripe: MagicMock) -> None:
        await _signed_in(client)
        resp = await client.post(f"{APPS}/app-a/billing/portal", json={"return_url": "https://app/account"})
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_portal_with_customer(
        self,
        client: AsyncClient,
        mock_stripe: MagicMock,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        subject = await _signed_in(client)
        async with session_factory() as session:
            await BillingCustomerRepository(session, "app-a").upsert(subject, "cus_1")
            await session.commit()

        resp = await client.post(f"{APPS}/app-a/billing/portal", json={"return_url": "https://app/account"})
        assert resp.status_code == 200
        assert resp.json() == {"url": "https://billing.stripe.test/p_1"}

    @pytest.mark.asyncio
    async def test_prices(self, client: AsyncClient, mock_stripe: MagicMock) -> None:
        await _signed_in(client)
        mock_stripe.Price.list.return_value = {"data": [_price(), {**_price("app-b"), "id": "price_2"}]}
        resp = await client.get(f"{APPS}/app-a/billing/prices")
        assert resp.status_code == 200
        assert [p["price_id"] for p in resp.json()] == ["price_1"]

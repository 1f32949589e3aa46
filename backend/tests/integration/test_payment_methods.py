"""Integration tests for saved cards, the billing portal and payment history."""
from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import NOW, make_account, make_payment
from edubilling.models.account import Account
from edubilling.models.payment import PaymentStatus
from edubilling.models.plan import Plan


@pytest.mark.asyncio
async def test_setup_intent_creates_the_customer_once(
    api_client: AsyncClient, db_session: AsyncSession, account: Account, fake_stripe
) -> None:
    first = await api_client.post("/v1/billing/setup-intent")
    second = await api_client.post("/v1/billing/setup-intent")

    assert first.status_code == 200
    assert first.json()["client_secret"].startswith("seti_test_")
    assert second.status_code == 200
    [customer_call] = fake_stripe.called("create_customer")
    assert customer_call["email"] == account.owner_email
    await db_session.refresh(account)
    assert account.stripe_customer_id.startswith("cus_test_")


@pytest.mark.asyncio
async def test_list_payment_methods(api_client: AsyncClient, db_session: AsyncSession, account: Account, fake_stripe) -> None:
    account.stripe_customer_id = "cus_school"
    await db_session.commit()
    fake_stripe.payment_methods = {"pm_visa": "cus_school", "pm_other": "cus_someone_else"}

    response = await api_client.get("/v1/billing/payment-methods")

    assert response.status_code == 200
    assert [method["id"] for method in response.json()] == ["pm_visa"]


@pytest.mark.asyncio
async def test_accounts_without_customer_have_no_cards(api_client: AsyncClient) -> None:
    response = await api_client.get("/v1/billing/payment-methods")

    assert response.status_code == 200
    assert response.json() == []


@pytest.mark.asyncio
async def test_set_default_and_detach_own_card(
    api_client: AsyncClient, db_session: AsyncSession, account: Account, fake_stripe
) -> None:
    account.stripe_customer_id = "cus_school"
    await db_session.commit()
    fake_stripe.payment_methods = {"pm_visa": "cus_school"}

    default = await api_client.post("/v1/billing/payment-methods/default", json={"payment_method_id": "pm_visa"})
    detached = await api_client.delete("/v1/billing/payment-methods/pm_visa")

    assert default.status_code == 200
    assert fake_stripe.called("set_default_payment_method") == [
        {"customer_id": "cus_school", "payment_method_id": "pm_visa"}
    ]
    assert detached.status_code == 204
    assert fake_stripe.payment_methods == {}


@pytest.mark.asyncio
async def test_cards_of_other_customers_are_not_found(
    api_client: AsyncClient, db_session: AsyncSession, account: Account, fake_stripe
) -> None:
    account.stripe_customer_id = "cus_school"
    await db_session.commit()
    fake_stripe.payment_methods = {"pm_other": "cus_someone_else"}

    response = await api_client.delete("/v1/billing/payment-methods/pm_other")

    assert response.status_code == 404
    assert response.json()["details"][0]["code"] == "payment_method_not_found"
    assert fake_stripe.called("detach_payment_method") == []


@pytest.mark.asyncio
async def test_billing_portal(api_client: AsyncClient, db_session: AsyncSession, account: Account) -> None:
    missing = await api_client.post("/v1/billing/billing-portal")
    account.stripe_customer_id = "cus_school"
    await db_session.commit()

    response = await api_client.post("/v1/billing/billing-portal")

    assert missing.status_code == 404
    assert response.status_code == 200
    assert response.json()["url"].endswith("/cus_school")


@pytest.mark.asyncio
async def test_payment_history_is_newest_first_and_scoped_to_account(
    api_client: AsyncClient, db_session: AsyncSession, account: Account, single_class_plan: Plan
) -> None:
    older = await make_payment(db_session, account, single_class_plan, created_at=NOW - timedelta(days=40))
    newer = await make_payment(
        db_session, account, single_class_plan, status=PaymentStatus.FAILED, created_at=NOW - timedelta(days=1)
    )
    other = await make_account(db_session)
    await make_payment(db_session, other, single_class_plan)

    response = await api_client.get("/v1/billing/payment-history")

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert [item["id"] for item in data["items"]] == [str(newer.id), str(older.id)]
    assert data["items"][0]["status"] == "failed"

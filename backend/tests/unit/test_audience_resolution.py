# backend/tests/unit/test_audience_resolution.py

from datetime import timedelta

import pytest

from cartresq.models.campaign import Campaign
from cartresq.services.campaign_service import CampaignService


def make_campaign(audience):
    return Campaign.from_document({"_id": "camp-1", "platform": "woocommerce", "targetAudience": audience})


@pytest.fixture
def service(campaigns, carts, email_scheduler, clock):
    return CampaignService(campaigns, carts, email_scheduler, clock=clock)


@pytest.mark.asyncio
async def test_abandoned_carts_without_allowlist_resolves_nobody(service, carts):
    """An empty customer selection never widens to every abandoned cart."""
    carts.add("c-1")
    carts.add("c-2")

    targets = await service.resolve_recipients(make_campaign({"type": "abandoned_carts"}))

    assert targets == []


@pytest.mark.asyncio
async def test_abandoned_carts_match_allowlist_case_insensitively(service, carts, clock):
    carts.add("old", customer_email="ana@example.com", total=50, last_activity=clock.now - timedelta(days=2))
    carts.add("new", customer_email="ANA@example.com", total=60, last_activity=clock.now - timedelta(hours=3))
    carts.add("cheap", customer_email="bob@example.com", total=5, last_activity=clock.now)
    carts.add("other", customer_email="zed@example.com", total=80, last_activity=clock.now)

    campaign = make_campaign({
        "type": "abandoned_carts",
        "filters": {"minCartValue": 10, "customerEmails": [" Ana@Example.com ", "bob@example.com"]},
    })
    targets = await service.resolve_recipients(campaign)

    assert [(t.email, t.cart_id) for t in targets] == [("ANA@example.com", "new")]


@pytest.mark.asyncio
async def test_specific_customers_without_cart_still_receive(service, carts, clock):
    carts.add("c-9", customer_email="ana@example.com", last_activity=clock.now)

    campaign = make_campaign({
        "type": "specific_customers",
        "customerEmails": ["ana@example.com", "new@example.com", "ANA@example.com", "  "],
    })
    targets = await service.resolve_recipients(campaign)

    assert [(t.email, t.cart_id) for t in targets] == [("ana@example.com", "c-9"), ("new@example.com", None)]


@pytest.mark.asyncio
@pytest.mark.parametrize("audience_type", ["all", "customer_groups"])
async def test_unresolvable_audiences_fail_closed(service, carts, audience_type):
    carts.add("c-1")

    targets = await service.resolve_recipients(make_campaign({"type": audience_type}))

    assert targets == []


@pytest.mark.asyncio
async def test_missing_audience_resolves_nobody(service):
    campaign = Campaign.from_document({"_id": "camp-1", "platform": "woocommerce"})
    assert await service.resolve_recipients(campaign) == []

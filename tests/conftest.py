"""Pytest configuration and fixtures for hookline tests."""

from __future__ import annotations

import os
from typing import Any

import pytest


@pytest.fixture(autouse=True)
def clean_hookline_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Start every test without HOOKLINE_* variables from the outer environment."""
    for name in list(os.environ):
        if name.startswith("HOOKLINE_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def ghl_payload() -> dict[str, Any]:
    """HighLevel ContactCreate delivery."""
    return {
        "type": "ContactCreate",
        "webhookId": "wh_7f3a",
        "locationId": "loc_123",
        "id": "contact_9",
        "email": "ada@example.com",
        "firstName": "Ada",
        "tags": ["lead", "vip"],
        "customFields": [{"id": "cf_source", "value": "facebook"}],
    }


@pytest.fixture
def stripe_payload() -> dict[str, Any]:
    """Stripe invoice.paid event."""
    return {
        "id": "evt_1NG8Du2eZvKYlo2C",
        "object": "event",
        "type": "invoice.paid",
        "created": 1_704_067_200,
        "livemode": False,
        "account": "acct_1032D82eZvKYlo2C",
        "data": {
            "object": {
                "id": "in_1MtHbELkdIwHu7ix",
                "object": "invoice",
                "customer": "cus_NffrFeUfNV2Hib",
                "amount_paid": 2000,
                "currency": "usd",
                "status": "paid",
            }
        },
    }


@pytest.fixture
def retell_payload() -> dict[str, Any]:
    """Retell call_ended event."""
    return {
        "event": "call_ended",
        "call": {
            "call_id": "call_a1b2",
            "agent_id": "agent_1",
            "call_type": "phone_call",
            "call_status": "ended",
            "start_timestamp": 1_704_067_200_000,
            "end_timestamp": 1_704_067_260_000,
            "from_number": "+15550001111",
            "metadata": {"tenant_id": "tenant-7", "customer_id": "cust-3"},
        },
    }


@pytest.fixture
def twilio_payload() -> dict[str, Any]:
    """Twilio message status callback."""
    return {
        "AccountSid": "AC" + "0" * 32,
        "MessageSid": "SM" + "a" * 32,
        "MessageStatus": "delivered",
        "From": "+15550002222",
        "To": "+15550003333",
    }

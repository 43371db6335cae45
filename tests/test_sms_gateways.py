import json

import anyio
import httpx
import pytest

from bulksms.services import exceptions
from bulksms.services.sms_gateways import DryRunSMSGateway, TermiiSMSGateway
from bulksms.services.sms_gateways.termii_gateway import normalize_base_url


def _gateway(handler, **kwargs):
    options = {
        "api_key": "key-123",
        "base_url": "https://termii.example/api/",
        "sender_id": "N-Alert",
        "transport": httpx.MockTransport(handler),
    }
    options.update(kwargs)
    return TermiiSMSGateway(**options)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("https://api.ng.termii.com", "https://api.ng.termii.com"),
        ("https://api.ng.termii.com/", "https://api.ng.termii.com"),
        ("https://api.ng.termii.com/api", "https://api.ng.termii.com"),
        ("https://api.ng.termii.com/api/", "https://api.ng.termii.com"),
    ],
)
def test_normalize_base_url_strips_api_suffix(raw, expected):
    assert normalize_base_url(raw) == expected


def test_send_one_posts_plain_sms():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"message_id": "abc", "balance": 12.5})

    gateway = _gateway(handler)

    async def _send():
        return await gateway.send_one(phone="2348012345678", message="Hi Ada", channel="dnd")

    result = anyio.run(_send)

    assert captured["url"] == "https://termii.example/api/sms/send"
    assert captured["body"] == {
        "api_key": "key-123",
        "to": "2348012345678",
        "from": "N-Alert",
        "sms": "Hi Ada",
        "type": "plain",
        "channel": "dnd",
    }
    assert result.provider_message_id == "abc"
    assert result.balance == 12.5


def test_send_bulk_posts_phone_list():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"message": "Successfully Sent"})

    gateway = _gateway(handler)
    phones = ["2348012345678", "2348012345679"]

    async def _send():
        return await gateway.send_bulk(phones=phones, message="Sale today", channel="generic")

    result = anyio.run(_send)

    assert captured["url"] == "https://termii.example/api/sms/send/bulk"
    assert captured["body"]["to"] == phones
    assert captured["body"]["channel"] == "generic"
    assert result.phones == phones


def test_error_status_raises_gateway_rejection_with_provider_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"message": "Insufficient balance"})

    gateway = _gateway(handler)

    async def _send():
        await gateway.send_one(phone="2348012345678", message="x", channel="dnd")

    with pytest.raises(exceptions.GatewayRejection) as excinfo:
        anyio.run(_send)
    assert str(excinfo.value) == "Termii API error: Insufficient balance"
    assert excinfo.value.status_code == 400


def test_error_status_without_json_uses_reason_phrase():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="upstream down")

    gateway = _gateway(handler)

    async def _send():
        await gateway.send_bulk(phones=["2348012345678"], message="x", channel="dnd")

    with pytest.raises(exceptions.GatewayRejection, match="Bad Gateway"):
        anyio.run(_send)


def test_connection_failure_raises_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    gateway = _gateway(handler)

    async def _send():
        await gateway.send_one(phone="2348012345678", message="x", channel="dnd")

    with pytest.raises(exceptions.TransportError, match="connection refused"):
        anyio.run(_send)


def test_missing_api_key_is_a_configuration_error():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    gateway = _gateway(handler, api_key="  ")

    with pytest.raises(exceptions.ConfigurationError):
        gateway.ensure_configured()

    async def _send():
        await gateway.send_one(phone="2348012345678", message="x", channel="dnd")

    with pytest.raises(exceptions.ConfigurationError):
        anyio.run(_send)
    assert calls == []


def test_bulk_limit_is_enforced_before_sending():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    gateway = _gateway(handler, bulk_limit=2)

    async def _send():
        await gateway.send_bulk(phones=["1", "2", "3"], message="x", channel="dnd")

    with pytest.raises(exceptions.BulkLimitExceeded, match="Maximum 2 phone numbers per batch"):
        anyio.run(_send)
    assert calls == []


def test_dry_run_gateway_records_messages():
    gateway = DryRunSMSGateway(bulk_limit=3)

    async def _send():
        await gateway.send_one(phone="2348012345678", message="Hi", channel="dnd")
        await gateway.send_bulk(phones=["a", "b"], message="All", channel="dnd")

    anyio.run(_send)

    assert [result.phones for result in gateway.sent] == [["2348012345678"], ["a", "b"]]
    assert gateway.sent[0].provider == "dry-run"

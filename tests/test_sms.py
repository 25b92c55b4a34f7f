import logging
from datetime import datetime

import httpx
import pytest

from app.config import settings
from app.core.exceptions import ConfigurationError, SmsDeliveryError
from app.models.message_queue import MessageKind, MessageStatus
from app.models.shop import AppSetting
from app.services.sms import (
    SmsChannel,
    SmsConfig,
    SmsProvider,
    enqueue_device_sms,
    load_sms_config,
    load_sms_templates,
    normalize_phone_number,
    parse_custom_headers,
    reset_sms_templates,
    save_sms_templates,
    send_test_sms,
)
from app.services.sms_templates import (
    TEMPLATE_KINDS,
    DeviceInfo,
    default_templates,
    format_currency,
    render_template,
    render_ready_for_pickup,
    render_registration,
    render_status_update,
)
from tests.fakes import FakeSmsChannel

CONFIG = SmsConfig(account_sid="AC123", auth_token="secret", from_number="+15005550006")
DEVICE = DeviceInfo(
    id="d1", receipt_number="RCP-1", customer_name="Almaz", customer_phone="0912345678",
    device_type="Laptop", brand="Lenovo", model="T14", problem_description="Cracked screen",
    status="waiting_parts", total_cost="2500",
)


@pytest.mark.parametrize("raw, expected", [
    ("0912345678", "+251912345678"),
    ("912345678", "+251912345678"),
    ("251912345678", "+251912345678"),
    ("+251912345678", "+251912345678"),
    ("(555) 123-4567", "+15551234567"),
    ("15551234567", "+15551234567"),
    (" +44 20 7946 0958 ", "+44 20 7946 0958"),
])
def test_normalize_phone_number(raw, expected):
    assert normalize_phone_number(raw) == expected

@pytest.mark.parametrize("raw", ["0912345678", "912345678", "5551234567", "+251912345678", "123"])
def test_normalize_phone_number_is_idempotent(raw):
    once = normalize_phone_number(raw)
    assert normalize_phone_number(once) == once

def test_normalize_phone_number_without_digits():
    assert normalize_phone_number("n/a") == "n/a"
    assert normalize_phone_number("") == ""

def test_format_currency():
    assert format_currency(1234) == "ETB 1,234.00"
    assert format_currency("99.5") == "ETB 99.50"
    assert format_currency(None) == "ETB 0.00"
    assert format_currency("abc") == "ETB 0.00"

def test_render_template_blanks_missing_placeholders():
    assert render_template("Hi {customer_name}, ref {receipt_number}", {"customer_name": "Almaz"}) == "Hi Almaz, ref "

def test_render_template_only_substitutes_plain_names():
    context = {"title": "Low stock", "items": ["screen"]}
    rendered = render_template("{title}|{title.__class__}|{items[0]}|{title!r:>20}|{{literal}}", context)
    assert rendered == "Low stock|||Low stock|{literal}"

def test_device_renderers():
    device = DeviceInfo(
        id="d1", receipt_number="RCP-1", customer_name="Almaz", customer_phone="0912345678",
        device_type="Laptop", brand="Lenovo", model="T14", problem_description="Cracked screen",
        status="waiting_parts", total_cost="2500",
    )
    update = render_status_update(device)
    assert "Dear Almaz" in update
    assert "waiting for parts" in update
    assert "Total Cost: ETB 2,500.00" in update

    pickup = render_ready_for_pickup(device)
    assert "ready for pickup" in pickup
    assert "Tracking Number: RCP-1" in pickup

@pytest.mark.asyncio
async def test_send_posts_to_gateway(mocker):
    mock_response = mocker.Mock()
    mock_response.status_code = 201
    mock_post = mocker.patch("httpx.AsyncClient.post", return_value=mock_response)

    channel = SmsChannel(CONFIG, base_url="https://sms.example.com/2010-04-01")
    assert await channel.send("0912345678", "hello") is True

    args, kwargs = mock_post.call_args
    assert args[0] == "https://sms.example.com/2010-04-01/Accounts/AC123/Messages.json"
    assert kwargs["data"] == {"To": "+251912345678", "From": "+15005550006", "Body": "hello"}
    assert kwargs["auth"] == ("AC123", "secret")

@pytest.mark.asyncio
async def test_send_raises_on_gateway_rejection(mocker):
    mock_response = mocker.Mock()
    mock_response.status_code = 400
    mock_response.json.return_value = {"message": "Invalid 'To' number"}
    mocker.patch("httpx.AsyncClient.post", return_value=mock_response)

    channel = SmsChannel(CONFIG)
    with pytest.raises(SmsDeliveryError) as exc_info:
        await channel.send("+251912345678", "hello")
    assert exc_info.value.status_code == 400
    assert "Invalid 'To' number" in str(exc_info.value)

@pytest.mark.asyncio
async def test_send_raises_when_gateway_unreachable(mocker):
    mocker.patch("httpx.AsyncClient.post", side_effect=httpx.ConnectError("connection refused"))

    with pytest.raises(SmsDeliveryError, match="unreachable"):
        await SmsChannel(CONFIG).send("+251912345678", "hello")

@pytest.mark.asyncio
async def test_disabled_channel_reports_success_without_calling_gateway(mocker, caplog):
    mock_post = mocker.patch("httpx.AsyncClient.post")
    channel = SmsChannel(SmsConfig())

    with caplog.at_level(logging.INFO):
        assert channel.is_enabled() is False
        assert await channel.send("+251912345678", "hello") is True
    mock_post.assert_not_called()
    assert "SMS channel disabled" in caplog.text

@pytest.mark.asyncio
async def test_load_sms_config_prefers_complete_stored_settings(session_factory):
    async with session_factory() as session:
        session.add_all([
            AppSetting(key="sms.account_sid", value="ACdb"),
            AppSetting(key="sms.auth_token", value="db-token"),
            AppSetting(key="sms.from_number", value="+251900000000"),
        ])
        await session.commit()

    config = await load_sms_config(session_factory)
    assert config == SmsConfig("ACdb", "db-token", "+251900000000", source="database")

@pytest.mark.asyncio
async def test_load_sms_config_falls_back_to_environment(session_factory, mocker):
    mocker.patch("app.services.sms.settings.SMS_ACCOUNT_SID", "ACenv")
    mocker.patch("app.services.sms.settings.SMS_AUTH_TOKEN", "env-token")
    mocker.patch("app.services.sms.settings.SMS_FROM_NUMBER", "+15550001111")
    async with session_factory() as session:
        session.add(AppSetting(key="sms.account_sid", value="ACdb"))
        await session.commit()

    config = await load_sms_config(session_factory)
    assert config.source == "environment"
    assert config.account_sid == "ACenv"
    assert config.is_complete

@pytest.mark.asyncio
async def test_load_sms_config_survives_unreadable_settings(mocker):
    broken_factory = mocker.Mock(side_effect=RuntimeError("no database"))
    config = await load_sms_config(broken_factory)
    assert config.source == "environment"

@pytest.mark.asyncio
async def test_enqueue_device_sms(queue_store):
    device = DeviceInfo(
        id="d1", receipt_number="RCP-1", customer_name="Almaz", customer_phone="0912345678",
        device_type="Laptop", brand="Lenovo", model="T14", problem_description="Cracked screen",
        status="registered",
    )
    message = await enqueue_device_sms(queue_store, SmsChannel(CONFIG), device, MessageKind.DEVICE_REGISTRATION)

    stored = await queue_store.get(message.id)
    assert stored.destination == "+251912345678"
    assert stored.status == MessageStatus.PENDING
    assert stored.message_kind == MessageKind.DEVICE_REGISTRATION
    assert stored.context == {"device_id": "d1", "receipt_number": "RCP-1"}
    assert "Device Registration Confirmed" in stored.body

    with pytest.raises(ValueError):
        await enqueue_device_sms(queue_store, SmsChannel(CONFIG), device, "unknown")

@pytest.mark.parametrize("config, complete", [
    (SmsConfig(provider=SmsProvider.AFRICAS_TALKING, api_key="at-key"), True),
    (SmsConfig(provider=SmsProvider.AFRICAS_TALKING), False),
    (SmsConfig(provider=SmsProvider.BULKSMS, api_key="bulk-key"), True),
    (SmsConfig(provider=SmsProvider.LOCAL_AGGREGATOR, api_key="agg-key"), True),
    (SmsConfig(provider=SmsProvider.ETHIO_TELECOM, username="shop"), False),
    (SmsConfig(provider=SmsProvider.ETHIO_TELECOM, username="shop", password="pw"), True),
    (SmsConfig(provider=SmsProvider.CUSTOM, custom_endpoint="https://gw.example.com/send"), True),
    (SmsConfig(provider="carrier_pigeon", api_key="x"), False),
])
def test_provider_credentials(config, complete):
    assert config.is_complete is complete
    assert SmsChannel(config).is_enabled() is complete

@pytest.mark.asyncio
async def test_africas_talking_request(mocker):
    mock_response = mocker.Mock()
    mock_response.status_code = 201
    mock_post = mocker.patch("httpx.AsyncClient.post", return_value=mock_response)
    config = SmsConfig(provider=SmsProvider.AFRICAS_TALKING, api_key="at-key", sender_id="Shop",
                       custom_headers={"X-Trace": "1"})

    assert await SmsChannel(config).send("0912345678", "hello") is True

    args, kwargs = mock_post.call_args
    assert args[0] == "https://api.africastalking.com/version1/messaging"
    assert kwargs["data"] == {"username": "sandbox", "to": "+251912345678", "message": "hello", "from": "Shop"}
    assert kwargs["headers"]["apiKey"] == "at-key"
    assert kwargs["headers"]["X-Trace"] == "1"

@pytest.mark.asyncio
async def test_ethio_telecom_request(mocker):
    mock_response = mocker.Mock()
    mock_response.status_code = 200
    mock_post = mocker.patch("httpx.AsyncClient.post", return_value=mock_response)
    config = SmsConfig(provider=SmsProvider.ETHIO_TELECOM, username="shop", password="pw",
                       base_url="https://sms.example.et/api/send/")

    await SmsChannel(config).send("912345678", "selam")

    args, kwargs = mock_post.call_args
    assert args[0] == "https://sms.example.et/api/send"
    assert kwargs["json"]["phone"] == "+251912345678"
    assert kwargs["json"]["username"] == "shop"
    assert kwargs["json"]["password"] == "pw"
    assert kwargs["json"]["encoding"] == "UTF-8"
    assert kwargs["json"]["sender_id"] == settings.SMS_SENDER_ID

@pytest.mark.asyncio
@pytest.mark.parametrize("provider, url", [
    (SmsProvider.BULKSMS, "https://api.bulksms.com/v1/messages"),
    (SmsProvider.LOCAL_AGGREGATOR, "https://api.ethiopiansms.com/send"),
])
async def test_api_key_providers_post_json(mocker, provider, url):
    mock_response = mocker.Mock()
    mock_response.status_code = 200
    mock_post = mocker.patch("httpx.AsyncClient.post", return_value=mock_response)

    await SmsChannel(SmsConfig(provider=provider, api_key="key", sender_id="Shop")).send("+251912345678", "hi")

    args, kwargs = mock_post.call_args
    assert args[0] == url
    assert kwargs["json"] == {"api_key": "key", "sender_id": "Shop", "phone": "+251912345678", "message": "hi"}

@pytest.mark.asyncio
async def test_custom_provider_rejection(mocker):
    mock_response = mocker.Mock()
    mock_response.status_code = 503
    mock_response.json.side_effect = ValueError("not json")
    mock_response.text = "maintenance"
    mock_post = mocker.patch("httpx.AsyncClient.post", return_value=mock_response)
    config = SmsConfig(provider=SmsProvider.CUSTOM, custom_endpoint="https://gw.example.com/send")

    with pytest.raises(SmsDeliveryError, match="maintenance") as exc_info:
        await SmsChannel(config).send("+251912345678", "hi")
    assert exc_info.value.status_code == 503
    args, kwargs = mock_post.call_args
    assert args[0] == "https://gw.example.com/send"
    assert kwargs["json"]["to"] == "+251912345678"

@pytest.mark.asyncio
async def test_load_sms_config_selects_stored_provider(session_factory):
    async with session_factory() as session:
        session.add_all([
            AppSetting(key="sms.provider", value="ethio_telecom"),
            AppSetting(key="sms.username", value="shop"),
            AppSetting(key="sms.password", value="pw"),
            AppSetting(key="sms.custom_headers", value='{"X-Region": "AA"}'),
        ])
        await session.commit()

    config = await load_sms_config(session_factory)
    assert config.source == "database"
    assert config.provider == SmsProvider.ETHIO_TELECOM
    assert config.custom_headers == {"X-Region": "AA"}

def test_malformed_custom_headers_are_ignored(caplog):
    with caplog.at_level(logging.WARNING):
        assert parse_custom_headers("{not json") == {}
        assert parse_custom_headers('["a", "b"]') == {}
    assert "Ignoring" in caplog.text

@pytest.mark.asyncio
async def test_templates_default_to_builtin_english(settings_store):
    template_set = await load_sms_templates(settings_store)
    assert template_set.language == "english"
    assert set(template_set.templates) == set(TEMPLATE_KINDS)
    assert template_set.render(MessageKind.DEVICE_REGISTRATION, DEVICE) == render_registration(DEVICE)

@pytest.mark.asyncio
async def test_saved_template_overrides_default(settings_store, queue_store):
    await save_sms_templates(settings_store, {"ready_for_pickup": "Hi {customer_name}, {receipt_number} is ready"})
    template_set = await load_sms_templates(settings_store)

    message = await enqueue_device_sms(queue_store, SmsChannel(CONFIG), DEVICE, MessageKind.READY_FOR_PICKUP,
                                       templates=template_set)
    assert (await queue_store.get(message.id)).body == "Hi Almaz, RCP-1 is ready"
    # Untouched kinds keep the default text
    assert template_set.templates["delivered"] == default_templates()["delivered"]

@pytest.mark.asyncio
async def test_invalid_templates_are_rejected(settings_store):
    with pytest.raises(ValueError, match="Unknown SMS template"):
        await save_sms_templates(settings_store, {"birthday": "Happy birthday"})
    with pytest.raises(ValueError, match="Invalid status_update template"):
        await save_sms_templates(settings_store, {"status_update": "Dear {customer_name"})
    with pytest.raises(ValueError):
        await save_sms_templates(settings_store, {}, language="klingon")
    assert await settings_store.get_many(["sms_template.status_update"]) == {}

@pytest.mark.asyncio
async def test_reset_switches_language_and_drops_overrides(settings_store):
    await save_sms_templates(settings_store, {"status_update": "custom"})

    template_set = await reset_sms_templates(settings_store, "amharic")

    assert template_set.language == "amharic"
    assert template_set.templates["status_update"] != "custom"
    update = template_set.render(MessageKind.STATUS_UPDATE, DEVICE)
    assert "ውድ Almaz" in update
    assert "የጥገና ክፍሎች" in update
    assert "ETB 2,500.00" in update
    # No Amharic delivery text, so the English one stays
    assert "Device Successfully Delivered" in template_set.render(MessageKind.DELIVERED, DEVICE)

@pytest.mark.asyncio
async def test_send_test_sms_uses_registration_text():
    channel = FakeSmsChannel()
    destination = await send_test_sms(channel, "0911000000")

    assert destination == "+251911000000"
    [(to, body)] = channel.sent
    assert to == "0911000000"
    assert "Device Registration Confirmed" in body
    assert "TEST123" in body

@pytest.mark.asyncio
async def test_send_test_sms_needs_configured_channel_and_number(mocker):
    mocker.patch("app.services.sms.settings.SMS_TEST_NUMBER", "")
    with pytest.raises(ValueError):
        await send_test_sms(FakeSmsChannel())
    with pytest.raises(ConfigurationError):
        await send_test_sms(SmsChannel(SmsConfig()), "0911000000")
    with pytest.raises(SmsDeliveryError):
        await send_test_sms(FakeSmsChannel([False]), "0911000000")

def test_status_update_text_layout():
    device = DeviceInfo(
        id="d1", receipt_number="RCP-1", customer_name="Almaz", customer_phone="0912345678",
        device_type="Laptop", brand="Lenovo", model="T14", problem_description="Cracked screen",
        status="repainting", total_cost="2500", estimated_completion_date=datetime(2026, 3, 1),
    )
    assert render_status_update(device) == (
        "Device Status Update\n\n"
        "Dear Almaz,\n\n"
        "Your device status has been updated.\n\n"
        "Tracking Number: RCP-1\n"
        "Device: Laptop Lenovo T14\n"
        "Total Cost: ETB 2,500.00\n"
        "Estimated Completion: 2026-03-01\n\n"
        "Thank you for your patience!"
    )

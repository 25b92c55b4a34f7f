"""SMS delivery channel over the HTTP APIs of the supported gateways."""
import json
import re
from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Any, Tuple

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import settings
from app.core.exceptions import ConfigurationError, SmsDeliveryError
from app.core.logging import logger
from app.models.message_queue import MessageKind, QueuedMessage
from app.models.shop import AppSetting
from app.repositories.app_settings import SettingsStore
from app.repositories.message_queue import MessageQueueStore
from app.services.sms_templates import (
    BUILTIN_TEMPLATES,
    ENGLISH,
    LANGUAGES,
    TEMPLATE_KINDS,
    DeviceInfo,
    SmsTemplateSet,
    default_templates,
    validate_template,
)


class SmsProvider:
    TWILIO = "twilio"
    AFRICAS_TALKING = "africas_talking"
    BULKSMS = "bulksms"
    ETHIO_TELECOM = "ethio_telecom"
    LOCAL_AGGREGATOR = "local_aggregator"
    CUSTOM = "custom"
    ALL = (TWILIO, AFRICAS_TALKING, BULKSMS, ETHIO_TELECOM, LOCAL_AGGREGATOR, CUSTOM)


DEFAULT_BASE_URLS = {
    SmsProvider.AFRICAS_TALKING: "https://api.africastalking.com/version1/messaging",
    SmsProvider.BULKSMS: "https://api.bulksms.com/v1/messages",
    SmsProvider.ETHIO_TELECOM: "https://sms.ethiotelecom.et/api/send",
    SmsProvider.LOCAL_AGGREGATOR: "https://api.ethiopiansms.com/send",
}

SETTING_KEYS = (
    "sms.provider",
    "sms.account_sid",
    "sms.auth_token",
    "sms.from_number",
    "sms.api_key",
    "sms.username",
    "sms.password",
    "sms.sender_id",
    "sms.base_url",
    "sms.custom_endpoint",
    "sms.custom_headers",
)

TEMPLATE_LANGUAGE_KEY = "sms_template.language"

_NON_DIGITS = re.compile(r"\D")


def normalize_phone_number(
    phone: str,
    default_country_code: str = "1",
    regional_country_code: str = "251",
    mobile_prefix: str = "9",
) -> str:
    """Return ``phone`` in ``+<country><number>`` form.

    Every result starts with ``+`` and ``+`` numbers are returned as given, so
    normalizing twice is the same as normalizing once.
    """
    phone = (phone or "").strip()
    if phone.startswith("+"):
        return phone

    digits = _NON_DIGITS.sub("", phone)
    if not digits:
        return phone

    if len(digits) == 9 + len(regional_country_code) and digits.startswith(regional_country_code):
        return f"+{digits}"
    # Local number with trunk zero, e.g. 0912345678
    if len(digits) == 10 and digits.startswith("0" + mobile_prefix):
        return f"+{regional_country_code}{digits[1:]}"
    if len(digits) == 9 and digits.startswith(mobile_prefix):
        return f"+{regional_country_code}{digits}"
    if len(digits) == 10:
        return f"+{default_country_code}{digits}"
    if len(digits) == 10 + len(default_country_code) and digits.startswith(default_country_code):
        return f"+{digits}"
    return f"+{default_country_code}{digits}"


@dataclass(frozen=True)
class SmsConfig:
    account_sid: str = ""
    auth_token: str = ""
    from_number: str = ""
    source: str = "environment"
    provider: str = SmsProvider.TWILIO
    api_key: str = ""
    username: str = ""
    password: str = ""
    sender_id: str = ""
    base_url: str = ""
    custom_endpoint: str = ""
    custom_headers: Dict[str, str] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        """Whether the selected provider has the credentials it needs."""
        if self.provider == SmsProvider.TWILIO:
            return bool(self.account_sid and self.auth_token and self.from_number)
        if self.provider in (SmsProvider.AFRICAS_TALKING, SmsProvider.BULKSMS, SmsProvider.LOCAL_AGGREGATOR):
            return bool(self.api_key)
        if self.provider == SmsProvider.ETHIO_TELECOM:
            return bool(self.username and self.password)
        if self.provider == SmsProvider.CUSTOM:
            return bool(self.custom_endpoint)
        return False


def parse_custom_headers(raw: Optional[str]) -> Dict[str, str]:
    """Decode the JSON object of extra gateway headers; anything else is ignored with a warning."""
    if not raw:
        return {}
    try:
        headers = json.loads(raw)
    except ValueError as e:
        logger.warning("Ignoring malformed SMS custom headers", error=str(e))
        return {}
    if not isinstance(headers, dict):
        logger.warning("Ignoring SMS custom headers that are not a JSON object")
        return {}
    return {str(k): str(v) for k, v in headers.items()}


def sms_config_from_env() -> SmsConfig:
    return SmsConfig(
        account_sid=settings.SMS_ACCOUNT_SID,
        auth_token=settings.SMS_AUTH_TOKEN,
        from_number=settings.SMS_FROM_NUMBER,
        provider=settings.SMS_PROVIDER,
        api_key=settings.SMS_API_KEY,
        username=settings.SMS_USERNAME,
        password=settings.SMS_PASSWORD,
        sender_id=settings.SMS_SENDER_ID,
        base_url=settings.SMS_PROVIDER_BASE_URL,
        custom_endpoint=settings.SMS_CUSTOM_ENDPOINT,
        custom_headers=parse_custom_headers(settings.SMS_CUSTOM_HEADERS),
    )


async def load_sms_config(session_factory: async_sessionmaker) -> SmsConfig:
    """Read gateway settings from app_settings, falling back to the environment.

    ``sms.provider`` selects the gateway (Twilio when unset). The stored
    settings are only used when they hold everything that provider needs.
    """
    try:
        async with session_factory() as session:
            result = await session.execute(select(AppSetting).where(AppSetting.key.in_(SETTING_KEYS)))
            stored = {row.key: row.value for row in result.scalars().all()}
    except Exception as e:
        logger.warning("Could not read SMS settings, using environment", error=str(e))
        return sms_config_from_env()

    config = SmsConfig(
        account_sid=stored.get("sms.account_sid") or "",
        auth_token=stored.get("sms.auth_token") or "",
        from_number=stored.get("sms.from_number") or "",
        source="database",
        provider=stored.get("sms.provider") or SmsProvider.TWILIO,
        api_key=stored.get("sms.api_key") or "",
        username=stored.get("sms.username") or "",
        password=stored.get("sms.password") or "",
        sender_id=stored.get("sms.sender_id") or "",
        base_url=stored.get("sms.base_url") or "",
        custom_endpoint=stored.get("sms.custom_endpoint") or "",
        custom_headers=parse_custom_headers(stored.get("sms.custom_headers")),
    )
    if config.is_complete:
        logger.info("Using stored SMS settings", provider=config.provider)
        return config

    logger.info("Stored SMS settings incomplete, using environment", provider=config.provider)
    return sms_config_from_env()


class SmsChannel:
    """Sends one text message per call; knows nothing about the queue."""

    def __init__(self, config: SmsConfig, base_url: str = None, timeout: float = None):
        self.config = config
        self.base_url = (base_url or config.base_url or self._default_base_url()).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.SMS_TIMEOUT_SECONDS
        if config.provider not in SmsProvider.ALL:
            logger.warning("SMS channel disabled: unknown provider", provider=config.provider, source=config.source)
        elif not self.is_enabled():
            logger.warning("SMS channel disabled: gateway credentials are incomplete",
                           provider=config.provider, source=config.source)

    @property
    def provider(self) -> str:
        return self.config.provider

    def _default_base_url(self) -> str:
        if self.config.provider == SmsProvider.TWILIO:
            return settings.SMS_API_BASE_URL
        if self.config.provider == SmsProvider.CUSTOM:
            return self.config.custom_endpoint
        return DEFAULT_BASE_URLS.get(self.config.provider, "")

    def is_enabled(self) -> bool:
        return self.config.is_complete

    def normalize(self, phone: str) -> str:
        return normalize_phone_number(
            phone,
            default_country_code=settings.SMS_DEFAULT_COUNTRY_CODE,
            regional_country_code=settings.SMS_REGIONAL_COUNTRY_CODE,
            mobile_prefix=settings.SMS_REGIONAL_MOBILE_PREFIX,
        )

    def _build_request(self, to: str, body: str) -> Tuple[str, Dict[str, Any]]:
        """URL and ``httpx`` keyword arguments for the configured gateway."""
        config = self.config
        sender = config.sender_id or settings.SMS_SENDER_ID
        headers = dict(config.custom_headers)

        if config.provider == SmsProvider.TWILIO:
            return f"{self.base_url}/Accounts/{config.account_sid}/Messages.json", {
                "data": {"To": to, "From": config.from_number, "Body": body},
                "auth": (config.account_sid, config.auth_token),
            }
        if config.provider == SmsProvider.AFRICAS_TALKING:
            headers = {"apiKey": config.api_key, "Accept": "application/json", **headers}
            return self.base_url, {
                "data": {"username": config.username or "sandbox", "to": to, "message": body, "from": sender},
                "headers": headers,
            }
        if config.provider == SmsProvider.ETHIO_TELECOM:
            return self.base_url, {
                "json": {
                    "username": config.username,
                    "password": config.password,
                    "sender_id": sender,
                    "phone": to,
                    "message": body,
                    "message_type": "text",
                    "encoding": "UTF-8",
                },
                "headers": headers,
            }
        if config.provider in (SmsProvider.BULKSMS, SmsProvider.LOCAL_AGGREGATOR):
            return self.base_url, {
                "json": {"api_key": config.api_key, "sender_id": sender, "phone": to, "message": body},
                "headers": headers,
            }
        if config.provider == SmsProvider.CUSTOM:
            return self.base_url, {
                "json": {"to": to, "message": body, "from": sender},
                "headers": headers,
            }
        raise ConfigurationError(f"Unknown SMS provider: {config.provider}")

    async def send(self, destination: str, body: str) -> bool:
        if not self.is_enabled():
            # Unconfigured environments should not accumulate failed messages
            logger.info("SMS channel disabled, message not sent", destination=destination)
            return True

        to = self.normalize(destination)
        url, request_kwargs = self._build_request(to, body)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, **request_kwargs)
        except httpx.RequestError as e:
            raise SmsDeliveryError(f"SMS gateway unreachable: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("message") or response.text
            except (ValueError, AttributeError):
                detail = response.text
            raise SmsDeliveryError(f"SMS gateway rejected message ({response.status_code}): {detail}",
                                   status_code=response.status_code)

        logger.info("SMS accepted by gateway", destination=to, provider=self.provider,
                    status_code=response.status_code)
        return True


# Editable device texts

def _template_key(kind: str) -> str:
    return f"sms_template.{kind}"


async def load_sms_templates(store: SettingsStore) -> SmsTemplateSet:
    """The device texts in effect: stored overrides on top of the chosen language's defaults."""
    stored = await store.get_many([TEMPLATE_LANGUAGE_KEY, *(_template_key(k) for k in TEMPLATE_KINDS)])
    language = stored.get(TEMPLATE_LANGUAGE_KEY) or ENGLISH
    if language not in LANGUAGES:
        logger.warning("Unknown SMS template language, using English", language=language)
        language = ENGLISH

    templates = default_templates(language)
    for kind in TEMPLATE_KINDS:
        if _template_key(kind) in stored:
            templates[kind] = stored[_template_key(kind)]
    return SmsTemplateSet(language=language, templates=templates)


async def save_sms_templates(store: SettingsStore, templates: Dict[str, str],
                             language: Optional[str] = None) -> SmsTemplateSet:
    """Store replacement texts. Raises ``ValueError`` before writing anything invalid."""
    unknown = set(templates) - set(TEMPLATE_KINDS)
    if unknown:
        raise ValueError(f"Unknown SMS template: {', '.join(sorted(unknown))}")
    if language is not None and language not in LANGUAGES:
        raise ValueError(f"Unsupported template language: {language}")
    for kind, template in templates.items():
        try:
            validate_template(template)
        except ValueError as e:
            raise ValueError(f"Invalid {kind} template: {e}") from e

    values = {_template_key(kind): template for kind, template in templates.items()}
    if language is not None:
        values[TEMPLATE_LANGUAGE_KEY] = language
    await store.set_many(values)
    logger.info("SMS templates updated", kinds=sorted(templates), language=language)
    return await load_sms_templates(store)


async def reset_sms_templates(store: SettingsStore, language: str = ENGLISH) -> SmsTemplateSet:
    """Drop stored texts and switch to the defaults of ``language``."""
    default_templates(language)
    await store.delete_many([_template_key(k) for k in TEMPLATE_KINDS])
    await store.set_many({TEMPLATE_LANGUAGE_KEY: language})
    logger.info("SMS templates reset", language=language)
    return await load_sms_templates(store)


TEST_DEVICE = DeviceInfo(
    id="test-device",
    receipt_number="TEST123",
    customer_name="Test Customer",
    customer_phone="",
    device_type="Test Device",
    brand="Test Brand",
    model="Test Model",
    problem_description="Test problem description",
    status="registered",
)


async def send_test_sms(channel: SmsChannel, phone: Optional[str] = None,
                        templates: Optional[SmsTemplateSet] = None) -> str:
    """Send the registration text for a sample device straight through the gateway.

    Bypasses the queue. Returns the normalized destination.
    """
    destination = phone or settings.SMS_TEST_NUMBER
    if not destination:
        raise ValueError("No destination number for the test SMS")
    if not channel.is_enabled():
        raise ConfigurationError("SMS service is not configured")

    device = replace(TEST_DEVICE, customer_phone=destination)
    body = (templates or BUILTIN_TEMPLATES).render(MessageKind.DEVICE_REGISTRATION, device)
    if not await channel.send(destination, body):
        raise SmsDeliveryError("SMS gateway reported failure")

    normalized = channel.normalize(destination)
    logger.info("Test SMS sent", destination=normalized, provider=channel.provider)
    return normalized


async def enqueue_device_sms(store: MessageQueueStore, channel: SmsChannel, device: DeviceInfo, kind: str,
                             context: Optional[Dict[str, Any]] = None,
                             templates: Optional[SmsTemplateSet] = None) -> QueuedMessage:
    """Queue the customer SMS for a device lifecycle event."""
    if kind not in TEMPLATE_KINDS:
        raise ValueError(f"Unknown device message kind: {kind}")

    message = await store.enqueue(
        destination=channel.normalize(device.customer_phone),
        body=(templates or BUILTIN_TEMPLATES).render(kind, device),
        message_kind=kind,
        context={"device_id": device.id, "receipt_number": device.receipt_number, **(context or {})},
    )
    logger.info("Device SMS queued", sms_id=str(message.id), kind=kind, device_id=device.id)
    return message

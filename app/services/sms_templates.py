"""Customer-facing SMS texts for the device repair lifecycle.

Every renderer is a pure function of a :class:`DeviceInfo`. The texts are
``{placeholder}`` templates so that the shop can replace them; the built-in
English set is what the renderers use when nothing else is given.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from string import Formatter
from typing import Optional, Union, Dict, Any

from app.models.message_queue import MessageKind

CURRENCY_SYMBOL = "ETB"

ENGLISH = "english"
AMHARIC = "amharic"
LANGUAGES = (ENGLISH, AMHARIC)

DEVICE_REGISTRATION = MessageKind.DEVICE_REGISTRATION
STATUS_UPDATE = MessageKind.STATUS_UPDATE
READY_FOR_PICKUP = MessageKind.READY_FOR_PICKUP
DELIVERED = MessageKind.DELIVERED
TEMPLATE_KINDS = (DEVICE_REGISTRATION, STATUS_UPDATE, READY_FOR_PICKUP, DELIVERED)

STATUS_MESSAGES = {
    ENGLISH: {
        "diagnosed": "Your device has been diagnosed and we're preparing the repair plan.",
        "in_progress": "We're now working on your device repair.",
        "waiting_parts": "We're waiting for parts to arrive to complete your repair.",
        "completed": "Your device repair has been completed successfully!",
        "ready_for_pickup": "Your device is ready for pickup! Please visit us to collect it.",
        "delivered": "Your device has been delivered. Thank you for choosing our service!",
        "cancelled": "Your device repair has been cancelled. Please contact us for more information.",
    },
    AMHARIC: {
        "diagnosed": "የእርስዎ መሣሪያ ተሰምሯል እና የጥገና እቅዱን እያዘጋጅን ነው።",
        "in_progress": "በእርስዎ መሣሪያ ላይ እያሰራን ነው።",
        "waiting_parts": "የጥገና ክፍሎች እስኪመጡ ድረስ እያጠበን ነው።",
        "completed": "የእርስዎ መሣሪያ ጥገና በተሳካተ ሁኔታ ተጠናቅቋል!",
        "ready_for_pickup": "የእርስዎ መሣሪያ ለመውሰድ ዝግጁ ነው! እባክዎ እንድትመጡ እንጠይቃለን።",
        "delivered": "የእርስዎ መሣሪያ ተላክቷል። አገልግሎታችንን ስለመረጡ እናመሰግናለን!",
        "cancelled": "የእርስዎ መሣሪያ ጥገና ተሰርዟል። ለተጨማሪ መረጃ እባክዎ ያግኙን።",
    },
}
DEFAULT_STATUS_MESSAGE = {
    ENGLISH: "Your device status has been updated.",
    AMHARIC: "የመሣሪያዎ ሁኔታ ተዘምኗል።",
}

# Optional lines, only present when the device carries the value
_COST_LINE = {ENGLISH: "\nTotal Cost: {}", AMHARIC: "\nአጠቃላይ ወጪ፦ {}"}
_COMPLETION_LINE = {ENGLISH: "\nEstimated Completion: {}", AMHARIC: "\nየተገመተ የመጨረሻ ቀን፦ {}"}

DEFAULT_TEMPLATES = {
    ENGLISH: {
        DEVICE_REGISTRATION: (
            "Device Registration Confirmed\n\n"
            "Dear {customer_name},\n\n"
            "Your device has been successfully registered for repair service.\n\n"
            "Device Details:\n"
            "- Type: {device_type}\n"
            "- Brand: {brand}\n"
            "- Model: {model}\n"
            "- Problem: {problem_description}\n\n"
            "Tracking Number: {receipt_number}\n\n"
            "We'll keep you updated on the repair progress. You can track your device "
            "status using the tracking number above.\n\n"
            "Thank you for choosing our service!"
        ),
        STATUS_UPDATE: (
            "Device Status Update\n\n"
            "Dear {customer_name},\n\n"
            "{status_message}\n\n"
            "Tracking Number: {receipt_number}\n"
            "Device: {device_type} {brand} {model}{cost_info}{completion_info}\n\n"
            "Thank you for your patience!"
        ),
        READY_FOR_PICKUP: (
            "Device Ready for Pickup!\n\n"
            "Dear {customer_name},\n\n"
            "Your device repair is complete and ready for pickup!\n\n"
            "Device: {device_type} {brand} {model}\n"
            "Tracking Number: {receipt_number}{cost_info}\n\n"
            "Please bring your tracking number when picking up your device.\n\n"
            "We look forward to seeing you!"
        ),
        DELIVERED: (
            "Device Successfully Delivered\n\n"
            "Dear {customer_name},\n\n"
            "Your device has been successfully delivered!\n\n"
            "Device: {device_type} {brand} {model}\n"
            "Tracking Number: {receipt_number}\n\n"
            "Thank you for choosing our service. We hope you're satisfied with the repair!\n\n"
            "Please consider leaving us a review."
        ),
    },
    # No Amharic delivery text; the English one is used for that kind
    AMHARIC: {
        DEVICE_REGISTRATION: (
            "መሣሪያ ምዝገባ የተረጋገጠ ነው\n\n"
            "ውድ {customer_name}፣\n\n"
            "የእርስዎ መሣሪያ ለጥገና አገልግሎት በተሳካተ ሁኔታ ተመዝግቧል።\n\n"
            "የመሣሪያ ዝርዝር፦\n"
            "• አይነት፦ {device_type}\n"
            "• የምርት ስም፦ {brand}\n"
            "• ሞዴል፦ {model}\n"
            "• ችግር፦ {problem_description}\n\n"
            "የመከታተል ቁጥር፦ {receipt_number}\n\n"
            "የጥገና ሂደቱን እንደቀጥለን እንወቃለን። የመከታተል ቁጥሩን በመጠቀም የመሣሪያዎን ሁኔታ መከታተል ይችላሉ።\n\n"
            "አገልግሎታችንን ስለመረጡ እናመሰግናለን!"
        ),
        STATUS_UPDATE: (
            "የመሣሪያ ሁኔታ ዝመና\n\n"
            "ውድ {customer_name}፣\n\n"
            "{status_message}\n\n"
            "የመከታተል ቁጥር፦ {receipt_number}\n"
            "መሣሪያ፦ {device_type} {brand} {model}{cost_info}{completion_info}\n\n"
            "እባክዎ ትዕግስት ያድርጉ!"
        ),
        READY_FOR_PICKUP: (
            "መሣሪያ ለመውሰድ ዝግጁ ነው!\n\n"
            "ውድ {customer_name}፣\n\n"
            "የእርስዎ መሣሪያ ጥገና ተጠናቅቋል እና ለመውሰድ ዝግጁ ነው!\n\n"
            "መሣሪያ፦ {device_type} {brand} {model}\n"
            "የመከታተል ቁጥር፦ {receipt_number}{cost_info}\n\n"
            "እባክዎ መሣሪያዎን ሲወስዱ የመከታተል ቁጥሩን ያመጡ።\n\n"
            "እርስዎን እንድናይ እንጠብቃለን!"
        ),
    },
}


@dataclass(frozen=True)
class DeviceInfo:
    id: str
    receipt_number: str
    customer_name: str
    customer_phone: str
    device_type: str
    brand: str
    model: str
    problem_description: str
    status: str
    total_cost: Optional[Union[str, Decimal, float]] = None
    estimated_completion_date: Optional[datetime] = None


def format_currency(amount) -> str:
    if amount is None or amount == "":
        return f"{CURRENCY_SYMBOL} 0.00"
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        return f"{CURRENCY_SYMBOL} 0.00"
    return f"{CURRENCY_SYMBOL} {value:,.2f}"


def status_phrase(status: str, language: str = ENGLISH) -> str:
    return STATUS_MESSAGES[language].get(status, DEFAULT_STATUS_MESSAGE[language])


def default_templates(language: str = ENGLISH) -> Dict[str, str]:
    if language not in LANGUAGES:
        raise ValueError(f"Unsupported template language: {language}")
    return {**DEFAULT_TEMPLATES[ENGLISH], **DEFAULT_TEMPLATES[language]}


def device_context(device: DeviceInfo, language: str = ENGLISH) -> Dict[str, Any]:
    """Placeholder values available to every device template."""
    cost_info = ""
    if device.total_cost:
        cost_info = _COST_LINE[language].format(format_currency(device.total_cost))
    completion = ""
    completion_info = ""
    if device.estimated_completion_date:
        completion = f"{device.estimated_completion_date:%Y-%m-%d}"
        completion_info = _COMPLETION_LINE[language].format(completion)
    return {
        "customer_name": device.customer_name,
        "customer_phone": device.customer_phone,
        "device_type": device.device_type,
        "brand": device.brand,
        "model": device.model,
        "problem_description": device.problem_description,
        "receipt_number": device.receipt_number,
        "status": device.status,
        "status_message": status_phrase(device.status, language),
        "total_cost": format_currency(device.total_cost) if device.total_cost else "",
        "cost_info": cost_info,
        "estimated_completion_date": completion,
        "completion_info": completion_info,
    }


_formatter = Formatter()


def validate_template(template: str) -> None:
    """Raise ``ValueError`` for unbalanced braces."""
    for _ in _formatter.parse(template):
        pass


def render_template(template: str, context: dict) -> str:
    """Fill ``{placeholder}`` fields from ``context``.

    Only bare names are substituted. Unknown placeholders, attribute or index
    lookups (``{title.__class__}``, ``{data[0]}``) render empty and format specs
    are ignored, so stored templates cannot reach into the values they are given.
    """
    context = context or {}
    parts = []
    for literal, field_name, _spec, _conversion in _formatter.parse(template):
        parts.append(literal)
        if field_name is None:
            continue
        value = context.get(field_name) if field_name.isidentifier() else None
        parts.append("" if value is None else str(value))
    return "".join(parts)


@dataclass(frozen=True)
class SmsTemplateSet:
    """The device texts in effect: a language plus one template per kind."""
    language: str = ENGLISH
    templates: Dict[str, str] = field(default_factory=lambda: default_templates(ENGLISH))

    def render(self, kind: str, device: DeviceInfo) -> str:
        template = self.templates.get(kind)
        if template is None:
            raise ValueError(f"Unknown device message kind: {kind}")
        return render_template(template, device_context(device, self.language))


BUILTIN_TEMPLATES = SmsTemplateSet()


def render_registration(device: DeviceInfo) -> str:
    return BUILTIN_TEMPLATES.render(DEVICE_REGISTRATION, device)


def render_status_update(device: DeviceInfo) -> str:
    return BUILTIN_TEMPLATES.render(STATUS_UPDATE, device)


def render_ready_for_pickup(device: DeviceInfo) -> str:
    return BUILTIN_TEMPLATES.render(READY_FOR_PICKUP, device)


def render_delivered(device: DeviceInfo) -> str:
    return BUILTIN_TEMPLATES.render(DELIVERED, device)

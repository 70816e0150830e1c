"""Map provider payloads onto one canonical event shape.

Each provider gets an adapter that understands both its webhook body and
the records its REST list API returns. Adapters are pure: no database, no
network, no clock.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from .errors import NormalizationError
from .models import STATUS_RANK
from .timeutils import parse_timestamp

logger = logging.getLogger(__name__)


@dataclass
class NormalizedEvent:
    provider: str
    provider_event_id: str
    kind: str  # "call" or "sms"
    status: str
    raw_payload: dict
    direction: str = None
    from_number: str = None
    to_number: str = None
    started_at: object = None
    ended_at: object = None
    ended_reason: str = None
    duration_seconds: int = None
    cost_amount: Decimal = None
    cost_currency: str = None
    body: str = None
    parent_ref: str = None
    correlation_id: str = None
    event_timestamp: object = None
    extra: dict = field(default_factory=dict)

    @property
    def event_type(self):
        return f"{self.kind}.{self.status}"

    @property
    def status_rank(self):
        return STATUS_RANK.get(self.status, -1)


def _first(mapping, *keys):
    for key in keys:
        value = mapping.get(key)
        if value not in (None, ""):
            return value
    return None


def _to_int(value):
    if value in (None, ""):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def parse_cost(value, divisor=1):
    """Parse a provider cost to a non-negative Decimal, or None."""
    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    if divisor != 1:
        amount = amount / Decimal(divisor)
    return abs(amount)


def _direction(value):
    if not value:
        return None
    value = str(value).lower()
    if value.startswith("inbound") or value in ("incoming",):
        return "inbound"
    if value.startswith("outbound") or value in ("outgoing",):
        return "outbound"
    return value


class ProviderAdapter:
    """Base class for per-provider payload mapping."""

    provider = None

    def normalize(self, raw):
        raise NotImplementedError

    def fail(self, raw, reason, provider_event_id=None):
        raise NormalizationError(self.provider, raw, reason, provider_event_id)

    def finish(self, event):
        """Fill derived fields shared by every provider."""
        if event.started_at and event.ended_at:
            seconds = int((event.ended_at - event.started_at).total_seconds())
            if seconds >= 0:
                event.duration_seconds = seconds
        if event.cost_amount is not None and not event.cost_currency:
            event.cost_currency = "USD"
        if event.event_timestamp is None:
            event.event_timestamp = event.ended_at or event.started_at
        if event.extra:
            event.extra = {k: v for k, v in event.extra.items() if v not in (None, "")}
        return event


class TwilioAdapter(ProviderAdapter):
    """Status callbacks (form-encoded) and REST Calls/Messages records."""

    provider = "twilio"

    CALL_STATUS_MAP = {
        "queued": "started",
        "initiated": "started",
        "ringing": "ringing",
        "in-progress": "answered",
        "answered": "answered",
        "completed": "ended",
        "busy": "ended",
        "failed": "ended",
        "no-answer": "ended",
        "canceled": "ended",
    }
    SMS_STATUS_MAP = {
        "accepted": "sent",
        "scheduled": "sent",
        "queued": "sent",
        "sending": "sent",
        "sent": "sent",
        "delivered": "delivered",
        "read": "delivered",
        "receiving": "received",
        "received": "received",
        "failed": "failed",
        "undelivered": "failed",
    }

    def normalize(self, raw):
        call_sid = _first(raw, "CallSid", "call_sid")
        message_sid = _first(raw, "MessageSid", "SmsSid", "message_sid")
        sid = raw.get("sid")
        if not call_sid and not message_sid and sid:
            if sid.startswith("CA"):
                call_sid = sid
            elif sid.startswith(("SM", "MM")):
                message_sid = sid
        # Recording or transcription callbacks carry a CallSid too.
        if message_sid:
            return self._message(raw, message_sid)
        if call_sid:
            return self._call(raw, call_sid)
        self.fail(raw, "missing CallSid/MessageSid")

    def _call(self, raw, call_sid):
        provider_status = _first(raw, "CallStatus", "status")
        status = self.CALL_STATUS_MAP.get(str(provider_status).lower()) if provider_status else None
        if status is None:
            self.fail(raw, f"unrecognized call status {provider_status!r}", call_sid)

        event = NormalizedEvent(
            provider=self.provider,
            provider_event_id=call_sid,
            kind="call",
            status=status,
            raw_payload=raw,
            direction=_direction(_first(raw, "Direction", "direction")),
            from_number=_first(raw, "From", "from"),
            to_number=_first(raw, "To", "to"),
            started_at=parse_timestamp(_first(raw, "StartTime", "start_time")),
            ended_at=parse_timestamp(_first(raw, "EndTime", "end_time")),
            duration_seconds=_to_int(_first(raw, "CallDuration", "duration")),
            cost_amount=parse_cost(_first(raw, "Price", "price")),
            cost_currency=(_first(raw, "PriceUnit", "price_unit") or "").upper() or None,
            parent_ref=_first(raw, "ParentCallSid", "parent_call_sid"),
            event_timestamp=parse_timestamp(
                _first(raw, "Timestamp", "date_updated", "date_created")
            ),
            extra={
                "answered_by": _first(raw, "AnsweredBy", "answered_by"),
                "recording_url": _first(raw, "RecordingUrl"),
            },
        )
        if status == "ended":
            event.ended_reason = str(provider_status).lower()
        return self.finish(event)

    def _message(self, raw, message_sid):
        provider_status = _first(raw, "MessageStatus", "SmsStatus", "status")
        status = self.SMS_STATUS_MAP.get(str(provider_status).lower()) if provider_status else None
        if status is None:
            self.fail(raw, f"unrecognized message status {provider_status!r}", message_sid)

        event = NormalizedEvent(
            provider=self.provider,
            provider_event_id=message_sid,
            kind="sms",
            status=status,
            raw_payload=raw,
            direction=_direction(_first(raw, "Direction", "direction"))
            or ("inbound" if status == "received" else "outbound"),
            from_number=_first(raw, "From", "from"),
            to_number=_first(raw, "To", "to"),
            body=_first(raw, "Body", "body"),
            cost_amount=parse_cost(_first(raw, "Price", "price")),
            cost_currency=(_first(raw, "PriceUnit", "price_unit") or "").upper() or None,
            event_timestamp=parse_timestamp(
                _first(raw, "Timestamp", "date_sent", "date_updated", "date_created")
            ),
            extra={
                "num_segments": _first(raw, "NumSegments", "num_segments"),
                "error_code": _first(raw, "ErrorCode", "error_code"),
            },
        )
        return self.finish(event)


class TelnyxAdapter(ProviderAdapter):
    """Call Control / messaging webhooks and /v2/calls records."""

    provider = "telnyx"

    STATE_MAP = {
        "parked": "started",
        "bridging": "started",
        "initiated": "started",
        "ringing": "ringing",
        "answered": "answered",
        "active": "answered",
        "bridged": "answered",
        "hangup": "ended",
        "completed": "ended",
        "ended": "ended",
    }
    EVENT_MAP = {
        "call.initiated": "started",
        "call.ringing": "ringing",
        "call.answered": "answered",
        "call.bridged": "answered",
        "call.hangup": "ended",
    }
    MESSAGE_STATUS_MAP = {
        "queued": "sent",
        "sending": "sent",
        "sent": "sent",
        "delivered": "delivered",
        "received": "received",
        "webhook_delivered": "received",
        "sending_failed": "failed",
        "delivery_failed": "failed",
        "delivery_unconfirmed": "sent",
        "failed": "failed",
    }

    def normalize(self, raw):
        data = raw.get("data") if isinstance(raw.get("data"), dict) else None
        if data is not None:
            event_type = data.get("event_type") or ""
            payload = data.get("payload") or {}
            occurred_at = parse_timestamp(data.get("occurred_at"))
            if event_type.startswith("message."):
                return self._message(raw, payload, event_type, occurred_at)
            return self._call(raw, payload, event_type, occurred_at, data.get("id"))

        record_type = (raw.get("record_type") or "call").lower()
        if record_type.startswith("messag"):
            return self._message(raw, raw, "", parse_timestamp(raw.get("updated_at")))
        return self._call(raw, raw, "", parse_timestamp(raw.get("updated_at")), raw.get("id"))

    def _call(self, raw, payload, event_type, occurred_at, fallback_id):
        provider_event_id = _first(payload, "call_control_id", "call_leg_id") or fallback_id
        if not provider_event_id:
            self.fail(raw, "missing call_control_id")

        state = _first(payload, "state", "status")
        status = self.STATE_MAP.get(str(state).lower()) if state else None
        status = status or self.EVENT_MAP.get(event_type)
        if status is None:
            self.fail(
                raw, f"unrecognized event {event_type or state!r}", provider_event_id
            )

        hangup_cause = _first(payload, "hangup_cause")
        event = NormalizedEvent(
            provider=self.provider,
            provider_event_id=provider_event_id,
            kind="call",
            status=status,
            raw_payload=raw,
            direction=_direction(_first(payload, "direction")),
            from_number=_first(payload, "from"),
            to_number=_first(payload, "to"),
            started_at=parse_timestamp(_first(payload, "start_time", "started_at")),
            ended_at=parse_timestamp(_first(payload, "end_time", "ended_at")),
            ended_reason=hangup_cause,
            duration_seconds=_to_int(_first(payload, "duration_secs", "call_duration")),
            cost_amount=parse_cost(_first(payload, "cost")),
            cost_currency=_first(payload, "cost_currency", "currency"),
            parent_ref=_first(payload, "parent_call_control_id", "parent_call_leg_id"),
            correlation_id=_first(payload, "call_session_id"),
            event_timestamp=occurred_at or parse_timestamp(_first(payload, "created_at")),
            extra={"recording_url": _first(payload, "recording_url")},
        )
        if status == "ended" and not event.ended_reason:
            event.ended_reason = "hangup"
        return self.finish(event)

    def _message(self, raw, payload, event_type, occurred_at):
        provider_event_id = _first(payload, "id")
        if not provider_event_id:
            self.fail(raw, "missing message id")

        recipients = payload.get("to")
        to_number = None
        delivery_status = None
        if isinstance(recipients, list) and recipients:
            to_number = recipients[0].get("phone_number")
            delivery_status = recipients[0].get("status")
        elif isinstance(recipients, str):
            to_number = recipients

        if event_type == "message.received":
            delivery_status = "received"
        delivery_status = delivery_status or _first(payload, "status")
        status = self.MESSAGE_STATUS_MAP.get(str(delivery_status).lower()) if delivery_status else None
        if status is None:
            self.fail(
                raw, f"unrecognized message status {delivery_status!r}", provider_event_id
            )

        sender = payload.get("from")
        if isinstance(sender, dict):
            sender = sender.get("phone_number")

        cost = payload.get("cost")
        cost_amount = None
        cost_currency = None
        if isinstance(cost, dict):
            cost_amount = parse_cost(cost.get("amount"))
            cost_currency = cost.get("currency")

        event = NormalizedEvent(
            provider=self.provider,
            provider_event_id=provider_event_id,
            kind="sms",
            status=status,
            raw_payload=raw,
            direction=_direction(_first(payload, "direction")),
            from_number=sender,
            to_number=to_number,
            body=_first(payload, "text"),
            cost_amount=cost_amount,
            cost_currency=cost_currency,
            event_timestamp=occurred_at
            or parse_timestamp(_first(payload, "completed_at", "sent_at", "received_at")),
            extra={"parts": _first(payload, "parts")},
        )
        return self.finish(event)


class VapiAdapter(ProviderAdapter):
    """Server messages (status-update, end-of-call-report) and /call records."""

    provider = "vapi"

    STATUS_MAP = {
        "scheduled": "started",
        "queued": "started",
        "ringing": "ringing",
        "in-progress": "answered",
        "forwarding": "answered",
        "ended": "ended",
    }
    MESSAGE_TYPE_MAP = {
        "call-started": "started",
        "call-ended": "ended",
        "end-of-call-report": "ended",
    }

    def normalize(self, raw):
        msg = raw.get("message") if isinstance(raw.get("message"), dict) else raw
        message_type = msg.get("type")
        call = msg.get("call") if isinstance(msg.get("call"), dict) else None

        if call is None:
            # A bare call object from the list API.
            call = msg
            message_type = None

        provider_event_id = call.get("id")
        if not provider_event_id:
            self.fail(raw, "missing call id")

        if message_type and message_type not in self.MESSAGE_TYPE_MAP and message_type != "status-update":
            self.fail(raw, f"unrecognized message type {message_type!r}", provider_event_id)

        provider_status = msg.get("status") if message_type == "status-update" else None
        provider_status = provider_status or call.get("status")
        status = self.MESSAGE_TYPE_MAP.get(message_type)
        if status is None and provider_status:
            status = self.STATUS_MAP.get(str(provider_status).lower())
        if status is None:
            self.fail(raw, f"unrecognized status {provider_status!r}", provider_event_id)

        call_type = call.get("type") or ""
        if call_type.startswith("inbound"):
            direction = "inbound"
        elif call_type.startswith("outbound"):
            direction = "outbound"
        else:
            direction = None

        customer = call.get("customer") or {}
        phone_number = call.get("phoneNumber") or {}
        if direction == "outbound":
            from_number, to_number = phone_number.get("number"), customer.get("number")
        else:
            from_number, to_number = customer.get("number"), phone_number.get("number")

        event = NormalizedEvent(
            provider=self.provider,
            provider_event_id=provider_event_id,
            kind="call",
            status=status,
            raw_payload=raw,
            direction=direction,
            from_number=from_number,
            to_number=to_number,
            started_at=parse_timestamp(_first(msg, "startedAt") or call.get("startedAt")),
            ended_at=parse_timestamp(_first(msg, "endedAt") or call.get("endedAt")),
            ended_reason=_first(msg, "endedReason") or call.get("endedReason"),
            duration_seconds=_to_int(_first(msg, "durationSeconds")),
            cost_amount=parse_cost(_first(msg, "cost") if "cost" in msg else call.get("cost")),
            correlation_id=call.get("phoneCallProviderId"),
            event_timestamp=parse_timestamp(
                _first(msg, "timestamp") or call.get("updatedAt") or call.get("createdAt")
            ),
            extra={
                "assistant_id": call.get("assistantId"),
                "recording_url": _first(msg, "recordingUrl") or call.get("recordingUrl"),
                "transcript": _first(msg, "transcript") or call.get("transcript"),
            },
        )
        if status == "ended" and not event.ended_reason:
            event.ended_reason = "ended"
        return self.finish(event)


class RetellAdapter(ProviderAdapter):
    """call_started / call_ended / call_analyzed webhooks and list-calls records."""

    provider = "retell"

    STATUS_MAP = {
        "registered": "started",
        "ongoing": "answered",
        "ended": "ended",
        "not_connected": "ended",
        "error": "ended",
    }
    EVENT_MAP = {
        "call_started": "answered",
        "call_ended": "ended",
        "call_analyzed": "ended",
    }

    def normalize(self, raw):
        event_name = raw.get("event")
        call = raw.get("call") if isinstance(raw.get("call"), dict) else raw

        provider_event_id = call.get("call_id")
        if not provider_event_id:
            self.fail(raw, "missing call_id")

        if event_name and event_name not in self.EVENT_MAP:
            self.fail(raw, f"unrecognized event {event_name!r}", provider_event_id)

        status = self.EVENT_MAP.get(event_name)
        call_status = call.get("call_status")
        mapped = self.STATUS_MAP.get(str(call_status).lower()) if call_status else None
        if mapped is not None and (status is None or STATUS_RANK[mapped] > STATUS_RANK[status]):
            status = mapped
        if status is None:
            self.fail(raw, f"unrecognized call_status {call_status!r}", provider_event_id)

        call_cost = call.get("call_cost") or {}
        identifiers = call.get("telephony_identifier") or {}

        event = NormalizedEvent(
            provider=self.provider,
            provider_event_id=provider_event_id,
            kind="call",
            status=status,
            raw_payload=raw,
            direction=_direction(call.get("direction")),
            from_number=call.get("from_number"),
            to_number=call.get("to_number"),
            started_at=parse_timestamp(call.get("start_timestamp")),
            ended_at=parse_timestamp(call.get("end_timestamp")),
            ended_reason=call.get("disconnection_reason"),
            duration_seconds=_to_int(call_cost.get("total_duration_seconds")),
            # Retell reports cost in cents.
            cost_amount=parse_cost(call_cost.get("combined_cost"), divisor=100),
            correlation_id=identifiers.get("twilio_call_sid"),
            event_timestamp=parse_timestamp(
                call.get("end_timestamp") or call.get("start_timestamp")
            ),
            extra={
                "agent_id": call.get("agent_id"),
                "recording_url": call.get("recording_url"),
                "transcript": call.get("transcript"),
            },
        )
        if status == "ended" and not event.ended_reason:
            event.ended_reason = call_status or "ended"
        return self.finish(event)


ADAPTERS = {
    adapter.provider: adapter
    for adapter in (TwilioAdapter(), TelnyxAdapter(), VapiAdapter(), RetellAdapter())
}


def normalize(provider, raw_payload):
    """Return a NormalizedEvent for ``raw_payload`` or raise NormalizationError."""
    adapter = ADAPTERS.get(provider)
    if adapter is None:
        raise NormalizationError(provider, raw_payload, f"unknown provider {provider!r}")
    if not isinstance(raw_payload, dict):
        raise NormalizationError(provider, raw_payload, "payload is not an object")
    return adapter.normalize(raw_payload)

"""
Side effects the agent can invoke mid-conversation.

Each tool is declared once in `TOOLS` (name, JSON schema, spoken
acknowledgment, handler). The registry is a plain mapping built from that list;
handlers return JSON text that becomes the next `function` turn.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog
from twilio.rest import Client as TwilioClient

from src.callagent.config import Config
from src.callagent.errors import ToolArgumentsError, UnknownToolError

logger = structlog.get_logger(__name__)

# Provinces and territories, by shorthand and full name.
SERVICE_REGIONS = {
    "AB": "Alberta",
    "BC": "British Columbia",
    "MB": "Manitoba",
    "NB": "New Brunswick",
    "NL": "Newfoundland and Labrador",
    "NS": "Nova Scotia",
    "ON": "Ontario",
    "PE": "Prince Edward Island",
    "QC": "Quebec",
    "SK": "Saskatchewan",
}

PRICE_PER_LEAD_USD = 10
SETUP_FEE_USD = 399


@dataclass
class ToolContext:
    """Per-call state handed to every tool handler."""

    config: Config
    call_sid: Optional[str] = None
    callbacks: list[dict[str, Any]] = field(default_factory=list)
    _twilio_client: Optional[TwilioClient] = None

    @property
    def twilio_client(self) -> Optional[TwilioClient]:
        if self._twilio_client is None and self.config.twilio_account_sid and self.config.twilio_auth_token:
            self._twilio_client = TwilioClient(
                self.config.twilio_account_sid,
                self.config.twilio_auth_token,
            )
        return self._twilio_client


ToolHandler = Callable[[dict[str, Any], ToolContext], Awaitable[str]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: dict[str, Any]
    say: str
    handler: ToolHandler

    def to_openai_schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def safe_json_dumps(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except Exception:
        return json.dumps({"ok": False, "error": "json_encode_failed"})


def parse_tool_arguments(raw: str) -> dict[str, Any]:
    """
    Parse concatenated argument shards.

    Models occasionally stream two argument objects back to back
    (`{"a":1}{"a":1}`); in that case the first object is used.

    Raises:
        ToolArgumentsError: if nothing usable can be recovered
    """
    if not raw or not raw.strip():
        return {}

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Malformed tool arguments, attempting recovery", raw=raw[:200])
        start = raw.find("{")
        end = raw.find("}")
        if start == -1 or end < start:
            raise ToolArgumentsError(raw)
        try:
            parsed = json.loads(raw[start : end + 1])
        except json.JSONDecodeError:
            raise ToolArgumentsError(raw)

    if not isinstance(parsed, dict):
        raise ToolArgumentsError(raw)
    return parsed


def _match_region(region: str) -> Optional[str]:
    key = region.strip().upper().rstrip(".")
    if key in SERVICE_REGIONS:
        return key
    lowered = region.strip().lower()
    for code, name in SERVICE_REGIONS.items():
        if name.lower() == lowered:
            return code
    return None


async def check_service_region(args: dict[str, Any], context: ToolContext) -> str:
    region = str(args.get("region") or "").strip()
    if not region:
        return safe_json_dumps({"ok": False, "error": "missing_region"})

    code = _match_region(region)
    return safe_json_dumps(
        {
            "ok": True,
            "region": region,
            "served": code is not None,
            "shorthand": code,
            "served_regions": sorted(SERVICE_REGIONS),
        }
    )


async def get_pricing(args: dict[str, Any], context: ToolContext) -> str:
    return safe_json_dumps(
        {
            "ok": True,
            "model": "pay_per_lead",
            "price_per_lead_usd": PRICE_PER_LEAD_USD,
            "setup_fee_usd": SETUP_FEE_USD,
            "monthly_fee_usd": 0,
            "notes": (
                "Setup covers account and phone setup plus lifetime Google Ads management. "
                "The client controls ad budget, schedule and volume."
            ),
        }
    )


async def schedule_callback(args: dict[str, Any], context: ToolContext) -> str:
    started = time.time()
    callback_time = str(args.get("callback_time") or "").strip()
    phone_number = str(args.get("phone_number") or "").strip()
    if not callback_time or not phone_number:
        return safe_json_dumps({"ok": False, "error": "missing_time_or_phone"})

    request = {
        "request_id": f"cb_{uuid.uuid4().hex[:10]}",
        "lead_type": str(args.get("lead_type") or "").strip() or None,
        "region": str(args.get("region") or "").strip() or None,
        "callback_time": callback_time,
        "phone_number": phone_number,
        "call_sid": context.call_sid,
    }
    context.callbacks.append(request)

    sms_sent = False
    client = context.twilio_client
    if client and context.config.twilio_phone_number:
        body = (
            f"Thanks for calling {context.config.company_name}! "
            f"Your callback is booked for {callback_time}."
        )
        try:
            await asyncio.to_thread(
                client.messages.create,
                to=phone_number,
                from_=context.config.twilio_phone_number,
                body=body,
            )
            sms_sent = True
        except Exception as e:
            logger.error("Callback confirmation SMS failed", error=str(e), call_sid=context.call_sid)

    logger.info(
        "Callback scheduled",
        request_id=request["request_id"],
        call_sid=context.call_sid,
        callback_time=callback_time,
        sms_sent=sms_sent,
        ms=int((time.time() - started) * 1000),
    )
    return safe_json_dumps({"ok": True, "status": "scheduled", "sms_sent": sms_sent, **request})


async def transfer_call(args: dict[str, Any], context: ToolContext) -> str:
    call_sid = str(args.get("call_sid") or "").strip() or context.call_sid
    if not call_sid:
        return safe_json_dumps({"ok": False, "error": "missing_call_sid"})
    if not context.config.transfer_number:
        return safe_json_dumps({"ok": False, "error": "transfer_not_configured"})

    client = context.twilio_client
    if client is None:
        return safe_json_dumps({"ok": False, "error": "twilio_not_configured"})

    twiml = f"<Response><Dial>{context.config.transfer_number}</Dial></Response>"
    await asyncio.to_thread(client.calls(call_sid).update, twiml=twiml)
    logger.info("Call transferred", call_sid=call_sid)
    return safe_json_dumps(
        {
            "ok": True,
            "status": "transferred",
            "notes": "The call was transferred successfully, say goodbye to the caller.",
        }
    )


TOOLS: list[ToolSpec] = [
    ToolSpec(
        name="check_service_region",
        description="Check whether we run lead generation campaigns in a given province or region.",
        parameters={
            "type": "object",
            "properties": {
                "region": {
                    "type": "string",
                    "description": "The province or region, e.g. Ontario or BC.",
                },
            },
            "required": ["region"],
        },
        say="Let me check if we cover that area.",
        handler=check_service_region,
    ),
    ToolSpec(
        name="get_pricing",
        description="Get our pay-per-lead pricing and setup fee.",
        parameters={"type": "object", "properties": {}},
        say="Sure, let me pull up our pricing.",
        handler=get_pricing,
    ),
    ToolSpec(
        name="schedule_callback",
        description=(
            "Book a callback with a lead generation expert and text the caller a confirmation. "
            "Only call once the caller agreed to a time and confirmed their phone number."
        ),
        parameters={
            "type": "object",
            "properties": {
                "lead_type": {"type": "string", "description": "Type of leads the caller wants."},
                "region": {"type": "string", "description": "Target region for the leads."},
                "callback_time": {
                    "type": "string",
                    "description": "Preferred date and time for the callback, or 'asap'.",
                },
                "phone_number": {"type": "string", "description": "Caller's phone number."},
            },
            "required": ["callback_time", "phone_number"],
        },
        say="Great, I'm booking that callback for you now.",
        handler=schedule_callback,
    ),
    ToolSpec(
        name="transfer_call",
        description="Transfer the caller to a live agent. Use when the caller asks for a human.",
        parameters={
            "type": "object",
            "properties": {
                "call_sid": {"type": "string", "description": "The unique identifier for the active phone call."},
            },
            "required": ["call_sid"],
        },
        say="One moment while I transfer your call.",
        handler=transfer_call,
    ),
]


class ToolRegistry:
    """Name -> tool mapping built from a static declaration list."""

    def __init__(self, tools: Optional[list[ToolSpec]] = None):
        self._tools: dict[str, ToolSpec] = {}
        for tool in TOOLS if tools is None else tools:
            if tool.name in self._tools:
                raise ValueError(f"Duplicate tool name: {tool.name}")
            self._tools[tool.name] = tool

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> ToolSpec:
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(name)
        return tool

    def openai_schema(self) -> list[dict[str, Any]]:
        """Export all tools in OpenAI Chat Completions API format."""
        return [tool.to_openai_schema() for tool in self._tools.values()]

    async def execute(self, name: str, args: dict[str, Any], context: ToolContext) -> str:
        tool = self.get(name)
        started = time.time()
        try:
            result = await tool.handler(args, context)
        except Exception as e:
            logger.exception("Tool execution failed", tool=name)
            return safe_json_dumps({"ok": False, "error": str(e)})
        logger.info("Tool executed", tool=name, ms=int((time.time() - started) * 1000))
        return result

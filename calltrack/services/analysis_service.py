"""
analysis_service.py — Speaker roles and call classification

Two LLM passes over a capped chronological sample of the transcript, each
with a deterministic keyword fallback so a result is always produced.

Business Rules:
- Role sample: "speaker{id}: text" lines for speakers 0/1 only,
  <= 60 lines, <= 200 chars per line, <= 2500 chars total (cut at last newline)
- Classification sample: lines labeled by role (or speaker{id}),
  <= 80 lines, <= 220 chars per line, <= 3000 chars total
- LLM values outside the closed enumerations are coerced to None/3
- Role fallback scores dealership phrases over the first 8 turns;
  a tie leaves both speakers "unknown"
- Heuristic precedence:
  intent: TradeIn > Finance > Credit > Appointment > Other > None
  result: NotConnected > Cancelled > Rescheduled > Booked > Requested >
          Transferred > NotInterested > Other > None
  department: Service-only > Parts-only > any Sales > Service > Parts > None
  sentiment: negative band 1/2, positive band 4/5, else 3

Called by: services/recording_pipeline.py
Depends on: utils/claude_client.py
"""

import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable

from ..models.enums import CallDepartment, CallIntent, CallResult, SpeakerRole
from ..utils.claude_client import claude_structured
from .transcription_service import Turn, normalize_text

log = logging.getLogger("calltrack.analysis")

StructuredLLM = Callable[..., Awaitable[dict | None]]

_ROLE_VALUES = [r.value for r in SpeakerRole]

ROLES_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "required": ["speaker0", "speaker1"],
    "properties": {
        "speaker0": {"type": "string", "enum": _ROLE_VALUES},
        "speaker1": {"type": "string", "enum": _ROLE_VALUES},
    },
}

INTENT_LABELS = {
    "None": CallIntent.NONE,
    "TradeIn": CallIntent.TRADE_IN,
    "Finance": CallIntent.FINANCE,
    "Credit": CallIntent.CREDIT,
    "Appointment": CallIntent.APPOINTMENT,
    "Other": CallIntent.OTHER,
}
RESULT_LABELS = {
    "None": CallResult.NONE,
    "NotConnected": CallResult.NOT_CONNECTED,
    "AppointmentRequested": CallResult.APPOINTMENT_REQUESTED,
    "AppointmentBooked": CallResult.APPOINTMENT_BOOKED,
    "AppointmentRescheduled": CallResult.APPOINTMENT_RESCHEDULED,
    "AppointmentCancelled": CallResult.APPOINTMENT_CANCELLED,
    "CallTransferred": CallResult.CALL_TRANSFERRED,
    "NotInterested": CallResult.NOT_INTERESTED,
    "FollowUp": CallResult.FOLLOW_UP,
    "Other": CallResult.OTHER,
}
DEPARTMENT_LABELS = {
    "None": CallDepartment.NONE,
    "Sales": CallDepartment.SALES,
    "Service": CallDepartment.SERVICE,
    "Parts": CallDepartment.PARTS,
    "Other": CallDepartment.OTHER,
}

CLASSIFICATION_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "required": ["intent", "sentiment", "result", "department"],
    "properties": {
        "intent": {"type": "string", "enum": list(INTENT_LABELS)},
        "sentiment": {"type": "integer", "enum": [1, 2, 3, 4, 5]},
        "result": {"type": "string", "enum": list(RESULT_LABELS)},
        "department": {"type": "string", "enum": list(DEPARTMENT_LABELS)},
    },
}

ROLES_SYSTEM = "\n".join(
    [
        'You assign roles in a two-party phone conversation for a car dealership.',
        'Decide which participant is the dealership "salesperson" and which is the "client". If you cannot tell, use "unknown".',
        'You are given chronological lines in the form "speaker0: ..." and "speaker1: ...".',
        "",
        "Signals for SALESPERSON: mentions inventory, stock, VINs, trims, test drives, appointments, trade-in evaluation;",
        "quotes prices, fees, financing or warranties; uses dealership identifiers (\"our lot\", \"we have\", \"I can schedule you\");",
        "asks qualifying questions (budget, timeline, down payment); offers next steps or transfers to finance/manager.",
        "Signals for CLIENT: asks about availability, price, payments, mileage; gives personal details or preferences;",
        "describes a current vehicle for trade-in.",
        "",
        "If both participants fit both roles, or neither fits, use \"unknown\" for the ambiguous participant(s).",
        "Do not infer from who speaks first or from tone alone.",
    ]
)

CLASSIFY_SYSTEM = "\n".join(
    [
        "You are a call QA classifier for an automotive sales/service business.",
        "Input is a transcript where each line begins with salesperson:, client:, or a speaker label.",
        "",
        "Classify the customer's PRIMARY intent, sentiment (1=very negative … 5=very positive),",
        "the call result, and the department. Base intent, sentiment and department on the CLIENT's",
        "utterances; use the final state of the call for the result.",
        'If unsure, use intent="None", result="None", department="None", sentiment=3.',
        "",
        "INTENT: TradeIn (trading in, appraisal, payoff), Finance (rates, APR,",
        "monthly payment, down payment), Credit (approval, credit score, bad/no credit), Appointment (set a",
        "visit or test drive), Other (clear but different goal), None.",
        "RESULT: NotConnected, AppointmentRequested (dealer pushes for a visit, no firm time), AppointmentBooked",
        "(specific date/time agreed), AppointmentRescheduled, AppointmentCancelled, CallTransferred, FollowUp",
        "(remote follow-up is the next step), NotInterested, Other, None.",
        "DEPARTMENT: Sales (buy/lease/sell/trade/finance a vehicle), Service (maintenance, repair, recall),",
        "Parts (parts or accessories), Other, None.",
        "",
        "Booking an appointment does not change the intent. Be conservative; classify only from what is said.",
    ]
)


@dataclass
class Classification:
    intent: str
    result: str
    department: str
    sentiment: int


# ── Samples ────────────────────────────────────────────────────────────


def _cap(lines: list[str], max_chars: int) -> str:
    out = "\n".join(lines)
    if len(out) > max_chars:
        out = out[:max_chars]
        last_nl = out.rfind("\n")
        if last_nl > 0:
            out = out[:last_nl]
    return out


def build_role_sample(
    turns: list[Turn], *, max_lines: int = 60, max_chars: int = 2500, per_line: int = 200
) -> str:
    lines = []
    for t in turns:
        if t.speaker_id not in ("0", "1"):
            continue
        text = normalize_text(t.text)[:per_line]
        if not text:
            continue
        lines.append(f"speaker{t.speaker_id}: {text}")
        if len(lines) >= max_lines:
            break
    return _cap(lines, max_chars)


def _label(t: Turn) -> str:
    if t.role in (SpeakerRole.SALESPERSON, SpeakerRole.CLIENT):
        return t.role
    if t.speaker_id in ("0", "1"):
        return f"speaker{t.speaker_id}"
    return "speaker"


def build_labeled_sample(
    turns: list[Turn], *, max_lines: int = 80, max_chars: int = 3000, per_line: int = 220
) -> str:
    lines = []
    for t in turns:
        text = normalize_text(t.text)[:per_line]
        if not text:
            continue
        lines.append(f"{_label(t)}: {text}")
        if len(lines) >= max_lines:
            break
    return _cap(lines, max_chars)


# ── Roles ──────────────────────────────────────────────────────────────

_DEALER_PHRASES = re.compile(
    r"(this is|i'?m calling from|sales|service department|how can i help|thanks for calling|our dealership)",
    re.IGNORECASE,
)


def apply_role_map(turns: list[Turn], role_map: dict) -> list[Turn]:
    for t in turns:
        if t.speaker_id == "0":
            t.role = role_map["speaker0"]
        elif t.speaker_id == "1":
            t.role = role_map["speaker1"]
        else:
            t.role = SpeakerRole.UNKNOWN.value
    return turns


def heuristic_role_map(turns: list[Turn]) -> dict:
    score = {"0": 0, "1": 0}
    for t in [t for t in turns[:8] if t.speaker_id in score]:
        if _DEALER_PHRASES.search(t.text):
            score[t.speaker_id] += 1

    if score["0"] == score["1"]:
        return {"speaker0": SpeakerRole.UNKNOWN.value, "speaker1": SpeakerRole.UNKNOWN.value}
    if score["0"] > score["1"]:
        return {"speaker0": SpeakerRole.SALESPERSON.value, "speaker1": SpeakerRole.CLIENT.value}
    return {"speaker0": SpeakerRole.CLIENT.value, "speaker1": SpeakerRole.SALESPERSON.value}


def _coerce_role(value) -> str:
    return value if value in _ROLE_VALUES else SpeakerRole.UNKNOWN.value


# ── Heuristic classification ───────────────────────────────────────────

_TRADE_IN = re.compile(r"\btrade[-\s]?in(s)?\b")
_FINANCE = re.compile(r"\b(financ(e|ing)|loan|apr|lease|rate|payment|monthly payment|pre[-\s]?approval)\b")
_CREDIT = re.compile(r"\b(credit|credit score|no credit|bad credit|credit report|credit history|approval)\b")
_APPOINTMENT = re.compile(r"\b(appointment|schedule|book|reserve|test[-\s]?drive|come in|come by)\b")

_NO_CONNECT = re.compile(
    r"\b(no answer|didn'?t answer|busy signal|line (?:was )?busy|call failed|couldn'?t reach|didn'?t pick up)\b"
)
_BOOKED = re.compile(r"\b(book(ed|ing)?|schedule(d)?|set (?:up)?|confirm(ed|ation)?|lock(ed)? in)\b")
_RESCHEDULE = re.compile(r"\b(reschedul(e|ed|ing)|move|push back|change) (?:my |the )?(appointment|appt)\b")
_CANCEL = re.compile(
    r"\b(cancel(l)?ed?|call off|won'?t make (?:it)?|can'?t make (?:it)?)(?: my| the)? (appointment|appt)?\b"
)
_TRANSFER = re.compile(r"\b(transfer(red)?|warm transfer|hand(ed)? (?:off|over)|connect(ed)? (?:to|with)|forward(ed)?)\b")
_NOT_INTERESTED = re.compile(
    r"\b(not interested|no longer interested|already bought|already purchased|bought somewhere else|don'?t call|stop calling)\b"
)
_APPT_REQUEST = re.compile(r"\b(make|set|schedule|book|looking for|want|like) (?:an )?(appointment|appt|test[-\s]?drive)\b")
_OTHER_OUTCOME = re.compile(
    r"\b(voicemail|voice mail|leave(?:t)? a message|left a message|hung up|disconnect(ed)?|no show|didn'?t show|information|info)\b"
)

_SERVICE = re.compile(
    r"\b(service|maintenance|oil change|brake(s)?|tire(s)?|alignment|diagnostic|check engine|recall|warranty (?:repair)?|inspection|service appointment)\b"
)
_PARTS = re.compile(
    r"\b(part(s)? department|order(ing)? parts?|bumper|fender|mirror|wiper(s)?|floor mat(s)?|accessor(y|ies)|filter)\b"
)
_SALES = re.compile(
    r"\b(buy|lease|purchase|test[-\s]?drive|trade[-\s]?in|finance|loan|payment|apr|down payment|vehicle|car|truck|suv|sedan|coupe|vin\b|stock number)\b"
)

_VERY_NEGATIVE = re.compile(r"\b(rude|angry|upset|frustrat|terrible|bad|horrible|awful|mad)\b")
_NEGATIVE = re.compile(r"\b(inconvenient|annoyed|not happy|disappointed)\b")
_POSITIVE = re.compile(r"\b(great|happy|thank(s| you)|awesome|perfect|excellent|appreciate it|helpful)\b")
_VERY_POSITIVE = re.compile(r"\b(amazing|fantastic|outstanding|wonderful|love you guys)\b")


def heuristic_intent(t: str) -> CallIntent:
    if _TRADE_IN.search(t):
        return CallIntent.TRADE_IN
    if _FINANCE.search(t):
        return CallIntent.FINANCE
    if _CREDIT.search(t):
        return CallIntent.CREDIT
    if _APPOINTMENT.search(t):
        return CallIntent.APPOINTMENT
    if t.strip():
        return CallIntent.OTHER
    return CallIntent.NONE


def heuristic_result(t: str) -> CallResult:
    ordered = [
        (_NO_CONNECT, CallResult.NOT_CONNECTED),
        (_CANCEL, CallResult.APPOINTMENT_CANCELLED),
        (_RESCHEDULE, CallResult.APPOINTMENT_RESCHEDULED),
        (_BOOKED, CallResult.APPOINTMENT_BOOKED),
        (_APPT_REQUEST, CallResult.APPOINTMENT_REQUESTED),
        (_TRANSFER, CallResult.CALL_TRANSFERRED),
        (_NOT_INTERESTED, CallResult.NOT_INTERESTED),
        (_OTHER_OUTCOME, CallResult.OTHER),
    ]
    for pattern, result in ordered:
        if pattern.search(t):
            return result
    return CallResult.NONE


def heuristic_department(t: str) -> CallDepartment:
    service, parts, sales = bool(_SERVICE.search(t)), bool(_PARTS.search(t)), bool(_SALES.search(t))
    if service and not sales and not parts:
        return CallDepartment.SERVICE
    if parts and not sales and not service:
        return CallDepartment.PARTS
    if sales:
        return CallDepartment.SALES
    if service:
        return CallDepartment.SERVICE
    if parts:
        return CallDepartment.PARTS
    return CallDepartment.NONE


def heuristic_sentiment(t: str) -> int:
    if _VERY_NEGATIVE.search(t):
        return 1
    if _NEGATIVE.search(t):
        return 2
    if _POSITIVE.search(t):
        return 4
    if _VERY_POSITIVE.search(t):
        return 5
    return 3


def heuristic_classification(text: str) -> Classification:
    t = (text or "").lower()
    return Classification(
        intent=heuristic_intent(t).value,
        result=heuristic_result(t).value,
        department=heuristic_department(t).value,
        sentiment=heuristic_sentiment(t),
    )


def coerce_classification(raw: dict) -> Classification:
    """Map LLM labels onto the internal enums; unknown labels fall back to None/3."""
    try:
        sentiment = int(round(float(raw.get("sentiment", 3))))
    except (TypeError, ValueError):
        sentiment = 3
    return Classification(
        intent=INTENT_LABELS.get(raw.get("intent"), CallIntent.NONE).value,
        result=RESULT_LABELS.get(raw.get("result"), CallResult.NONE).value,
        department=DEPARTMENT_LABELS.get(raw.get("department"), CallDepartment.NONE).value,
        sentiment=min(5, max(1, sentiment)),
    )


# ── Service ────────────────────────────────────────────────────────────


class CallAnalyzer:
    """LLM-backed role assignment and classification with heuristic fallback."""

    def __init__(self, llm: StructuredLLM = claude_structured):
        self.llm = llm

    async def assign_roles(self, turns: list[Turn]) -> list[Turn]:
        """Never raises; unresolved speakers stay "unknown"."""
        if not any(t.speaker_id in ("0", "1") for t in turns):
            return turns

        sample = build_role_sample(turns)
        if sample:
            try:
                raw = await self.llm(
                    f"Conversation sample:\n{sample}", ROLES_SCHEMA, system=ROLES_SYSTEM
                )
            except Exception as e:
                log.error(f"Role assignment via LLM failed: {e}")
                raw = None
            if isinstance(raw, dict) and ("speaker0" in raw or "speaker1" in raw):
                return apply_role_map(
                    turns,
                    {
                        "speaker0": _coerce_role(raw.get("speaker0")),
                        "speaker1": _coerce_role(raw.get("speaker1")),
                    },
                )

        log.info("Role assignment falling back to keyword heuristic")
        return apply_role_map(turns, heuristic_role_map(turns))

    async def classify(self, turns: list[Turn]) -> Classification:
        """Never raises; falls back to keyword heuristics over the plain text."""
        labeled = build_labeled_sample(turns)
        if labeled:
            try:
                raw = await self.llm(
                    f"Conversation:\n{labeled}", CLASSIFICATION_SCHEMA, system=CLASSIFY_SYSTEM
                )
            except Exception as e:
                log.error(f"LLM classification failed, falling back: {e}")
                raw = None
            if isinstance(raw, dict) and raw:
                return coerce_classification(raw)

        return heuristic_classification(" ".join(t.text for t in turns).strip())

"""Closed value sets stored as plain strings on the models.

Members subclass str so they compare equal to the stored column values;
always write ``.value`` when assigning to a column.
"""

import enum


class TrackingNumberStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    RELEASING = "releasing"
    RELEASED = "released"


class NumberRouteStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class CallDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class CallStatus(str, enum.Enum):
    QUEUED = "queued"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BUSY = "busy"
    FAILED = "failed"
    NO_ANSWER = "no-answer"
    CANCELED = "canceled"
    UNKNOWN = "unknown"


TERMINAL_CALL_STATUSES = frozenset(
    {
        CallStatus.COMPLETED,
        CallStatus.BUSY,
        CallStatus.FAILED,
        CallStatus.NO_ANSWER,
        CallStatus.CANCELED,
    }
)
NOT_CONNECTED_STATUSES = frozenset(
    {CallStatus.BUSY, CallStatus.FAILED, CallStatus.NO_ANSWER, CallStatus.CANCELED}
)


class CallResult(str, enum.Enum):
    NONE = "none"
    NOT_CONNECTED = "not_connected"
    APPOINTMENT_REQUESTED = "appointment_requested"
    APPOINTMENT_BOOKED = "appointment_booked"
    APPOINTMENT_RESCHEDULED = "appointment_rescheduled"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    CALL_TRANSFERRED = "call_transferred"
    NOT_INTERESTED = "not_interested"
    FOLLOW_UP = "follow_up"
    OTHER = "other"


class CallIntent(str, enum.Enum):
    NONE = "none"
    TRADE_IN = "trade_in"
    FINANCE = "finance"
    CREDIT = "credit"
    APPOINTMENT = "appointment"
    OTHER = "other"


class CallDepartment(str, enum.Enum):
    NONE = "none"
    SALES = "sales"
    SERVICE = "service"
    PARTS = "parts"
    OTHER = "other"


class SpeakerRole(str, enum.Enum):
    SALESPERSON = "salesperson"
    CLIENT = "client"
    UNKNOWN = "unknown"

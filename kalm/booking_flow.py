"""Five-step booking wizard kept in the signed session cookie."""
from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta

STEP_SERVICE = 1
STEP_THERAPIST = 2
STEP_SLOT = 3
STEP_CONFIRM = 4
STEP_PAYMENT = 5

STEP_NAMES = {
    STEP_SERVICE: "service",
    STEP_THERAPIST: "therapist",
    STEP_SLOT: "slot",
    STEP_CONFIRM: "confirmation",
    STEP_PAYMENT: "payment",
}

PENDING_SELECTION_TTL = timedelta(hours=1)

# Percentage off the session price
COUPONS = {
    "FIRST10": 10,
    "STUDENT15": 15,
    "WELCOME20": 20,
}


class BookingFlowError(Exception):
    """Raised when a wizard transition is not allowed from the current step."""


class InvalidCouponError(BookingFlowError):
    pass


def normalize_coupon(code) -> str:
    return str(code or "").strip().upper()


def coupon_discount(code: str | None, amount: int) -> int:
    """Discount for ``amount`` under ``code``, rounded half up.

    Raises InvalidCouponError for codes outside the catalogue.
    """
    percent = COUPONS.get(normalize_coupon(code))
    if percent is None:
        raise InvalidCouponError(f"invalid coupon code '{code}'")
    return (amount * percent + 50) // 100


@dataclass
class BookingFlow:
    step: int = STEP_SERVICE
    service_type: str | None = None
    service_name: str | None = None
    therapist_id: str | None = None
    session_type: str | None = None
    session_time: str | None = None
    duration: int | None = None
    amount: int | None = None
    coupon_code: str | None = None
    discount: int = 0

    @classmethod
    def start(
        cls,
        service: dict | None = None,
        therapist_id: str | None = None,
        selected_at: datetime | None = None,
        now: datetime | None = None,
    ) -> "BookingFlow":
        """Begin a flow, honouring a recent pre-selection from elsewhere in the app.

        A pre-selected therapist jumps to the slot step, a pre-selected
        service to the therapist step. Selections older than an hour are
        ignored.
        """
        flow = cls()
        if selected_at is not None and now is not None and now - selected_at > PENDING_SELECTION_TTL:
            return flow

        if service:
            flow.service_type = service.get("type")
            flow.service_name = service.get("name")
            flow.step = STEP_THERAPIST
        if therapist_id:
            flow.therapist_id = therapist_id
            flow.step = STEP_SLOT
        return flow

    @classmethod
    def from_dict(cls, data: dict | None) -> "BookingFlow":
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        flow = cls(**{key: value for key, value in data.items() if key in known})
        if flow.step not in STEP_NAMES:
            flow.step = STEP_SERVICE
        return flow

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["step_name"] = STEP_NAMES[self.step]
        data["final_amount"] = self.final_amount
        return data

    @property
    def final_amount(self) -> int | None:
        if self.amount is None:
            return None
        return max(0, self.amount - (self.discount or 0))

    def _require_step(self, *allowed: int) -> None:
        if self.step not in allowed:
            raise BookingFlowError(
                f"cannot do that from the {STEP_NAMES[self.step]} step"
            )

    def select_service(self, service_type: str, service_name: str) -> None:
        self._require_step(STEP_SERVICE)
        self.service_type = service_type
        self.service_name = service_name
        self.step = STEP_THERAPIST

    def select_therapist(self, therapist_id: str) -> None:
        self._require_step(STEP_THERAPIST)
        self.therapist_id = therapist_id
        self.step = STEP_SLOT

    def select_slot(self, session_time: str, session_type: str, duration: int, amount: int) -> None:
        """Record a slot. The caller checks that the slot is still bookable."""
        self._require_step(STEP_SLOT)
        self.session_time = session_time
        self.session_type = session_type
        self.duration = duration
        self.amount = amount
        if self.coupon_code:
            self.discount = coupon_discount(self.coupon_code, amount)
        self.step = STEP_CONFIRM

    def apply_coupon(self, code: str) -> None:
        self._require_step(STEP_CONFIRM)
        self.discount = coupon_discount(code, self.amount or 0)
        self.coupon_code = normalize_coupon(code)

    def remove_coupon(self) -> None:
        self._require_step(STEP_CONFIRM)
        self.coupon_code = None
        self.discount = 0

    def confirm(self) -> None:
        self._require_step(STEP_CONFIRM)
        self.step = STEP_PAYMENT

    def back(self) -> None:
        self.step = max(STEP_SERVICE, self.step - 1)

    def reset(self) -> None:
        for f in fields(self):
            setattr(self, f.name, f.default)

    @property
    def ready_for_payment(self) -> bool:
        return (
            self.step == STEP_PAYMENT
            and self.therapist_id is not None
            and self.session_time is not None
            and self.amount is not None
        )

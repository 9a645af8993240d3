from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, computed_field

from core.enums import PaymentMethod, VehicleType, SpotType
from .clock import utcnow
from .schemas import CashTendered, RefundIssued

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
WIDTH = 40
ZERO = Decimal("0.00")


class Receipt(BaseModel):
    """Read-only summary of one exit transaction."""

    license_plate: str
    entry_time: Optional[datetime] = None
    exit_time: Optional[datetime] = None
    duration_hours: int = 0
    parking_fee: Decimal = ZERO
    fine_amount: Decimal = ZERO
    amount_paid: Decimal = ZERO
    payment_method: Optional[PaymentMethod] = None
    spot_id: Optional[str] = None
    is_prepaid_reservation: bool = False
    is_within_grace_period: bool = False
    is_card_holder: bool = False
    vehicle_type: Optional[VehicleType] = None
    spot_type: Optional[SpotType] = None
    spot_rate: Optional[Decimal] = None
    cash_events: List[Union[CashTendered, RefundIssued]] = []
    payment_date: datetime = Field(default_factory=utcnow)
    model_config = ConfigDict(frozen=True)

    @computed_field
    @property
    def total_amount(self) -> Decimal:
        return self.parking_fee + self.fine_amount

    @computed_field
    @property
    def remaining_balance(self) -> Decimal:
        return max(ZERO, self.total_amount - self.amount_paid)

    @computed_field
    @property
    def change_amount(self) -> Decimal:
        return max(ZERO, self.amount_paid - self.total_amount)

    def notes(self) -> List[str]:
        """Extra lines printed after the payment date."""
        lines = []
        if self.is_within_grace_period:
            lines.append(f"{'Exemption':<14}: GRACE PERIOD")
        if self.is_prepaid_reservation:
            lines.append(f"{'Exemption':<14}: PREPAID RESERVATION")
        if self.is_card_holder:
            lines.append(f"{'Card Holder':<14}: YES")
        if self.cash_events:
            banner = "       GRACE PERIOD - FULL REFUND" if self.is_within_grace_period else "    PREPAID RESERVATION - FULL REFUND"
            lines += ["=" * WIDTH, banner, "=" * WIDTH]
            for event in self.cash_events:
                label = "Cash Inserted" if isinstance(event, CashTendered) else "Refund Amount"
                lines.append(f"{label:<14}: RM {event.amount:.2f}")
        return lines

    def render_text(self) -> str:
        def row(label, value):
            return f"{label:<14}: {value}"

        def money(value):
            return f"RM {value:.2f}"

        def when(value):
            return value.strftime(DATE_FORMAT) if value else "-"

        def name(value):
            return value.value if value is not None else "-"

        heavy, light = "=" * WIDTH, "-" * WIDTH
        out = [
            heavy,
            "       UNIVERSITY PARKING LOT",
            "          PAYMENT RECEIPT",
            heavy,
            "",
            row("License Plate", self.license_plate),
            row("Parking Spot", self.spot_id or "-"),
            "",
            row("Entry Time", when(self.entry_time)),
            row("Exit Time", when(self.exit_time)),
            row("Duration", f"{self.duration_hours} hour(s)"),
            "",
            light,
            row("Parking Fee", money(self.parking_fee)),
        ]
        if self.fine_amount > 0:
            out.append(row("Fines", money(self.fine_amount)))
        out += [
            light,
            row("TOTAL AMOUNT", money(self.total_amount)),
            heavy,
            "",
            row("Amount Paid", money(self.amount_paid)),
            row("Payment Method", name(self.payment_method)),
        ]
        if self.remaining_balance > 0:
            out.append(row("BALANCE DUE", money(self.remaining_balance)))
        else:
            out.append(row("Status", "PAID IN FULL"))
        out.append(row("Payment Date", when(self.payment_date)))
        # 以下为附加信息，排在支付日期之后
        if self.change_amount > 0:
            out.append(row("Change", money(self.change_amount)))
        out += [
            row("Vehicle Type", name(self.vehicle_type)),
            row("Spot Type", name(self.spot_type)),
            row("Hourly Rate", money(self.spot_rate) if self.spot_rate is not None else "-"),
        ]
        out += self.notes()
        out += [
            heavy,
            "",
            "     Thank you for parking with us!",
            "     Have a safe journey!",
            "",
        ]
        return "\n".join(out)


def _amount(value) -> Decimal:
    if value is None:
        return ZERO
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return ZERO
    return amount if amount.is_finite() else ZERO


def build_receipt(
    license_plate: str,
    entry_time: datetime | None,
    exit_time: datetime | None,
    duration_hours: int | None,
    parking_fee,
    fine_amount,
    amount_paid,
    payment_method: PaymentMethod | None,
    spot_id: str | None,
    is_prepaid_reservation: bool = False,
    is_within_grace_period: bool = False,
    is_card_holder: bool = False,
    vehicle_type: VehicleType | None = None,
    spot_type: SpotType | None = None,
    spot_rate=None,
    cash_events=None,
) -> Receipt:
    # 只做组装，金额已在结算阶段校验过
    return Receipt(
        license_plate=str(license_plate or ""),
        entry_time=entry_time,
        exit_time=exit_time,
        duration_hours=max(0, int(duration_hours or 0)),
        parking_fee=_amount(parking_fee),
        fine_amount=_amount(fine_amount),
        amount_paid=_amount(amount_paid),
        payment_method=payment_method,
        spot_id=spot_id,
        is_prepaid_reservation=bool(is_prepaid_reservation),
        is_within_grace_period=bool(is_within_grace_period),
        is_card_holder=bool(is_card_holder),
        vehicle_type=vehicle_type,
        spot_type=spot_type,
        spot_rate=None if spot_rate is None else _amount(spot_rate),
        cash_events=list(cash_events or []),
    )

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Union
from loguru import logger
from pydantic import BaseModel, ConfigDict, computed_field

from core.config import settings
from core.enums import PaymentMethod, ExitExemption
from .clock import as_utc, utcnow, elapsed_minutes
from .errors import InvalidArgumentError
from .schemas import Payment, Fine, CashTendered, RefundIssued, normalize_plate

ZERO = Decimal("0.00")


class Settlement(BaseModel):
    payment: Payment
    exemption: ExitExemption = ExitExemption.NONE
    cash_events: List[Union[CashTendered, RefundIssued]] = []
    carried_forward: Optional[Fine] = None
    model_config = ConfigDict(frozen=True)

    @computed_field
    @property
    def remaining_balance(self) -> Decimal:
        return PaymentSettlement.remaining_balance(self.payment.amount_paid, self.payment.total_amount)

    @computed_field
    @property
    def change_amount(self) -> Decimal:
        return PaymentSettlement.change_amount(self.payment.amount_paid, self.payment.total_amount)


def _money(value, field: str) -> Decimal:
    if value is None:
        raise InvalidArgumentError(f"{field} is required")
    try:
        amount = Decimal(str(value))
    except ArithmeticError as e:
        raise InvalidArgumentError(f"{field} is not a number: {value!r}") from e
    if not amount.is_finite() or amount < 0:
        raise InvalidArgumentError(f"{field} must be non-negative, got {value}")
    return amount


class PaymentSettlement:
    """Reconciles the tendered amount against parking fee plus fines at exit.

    Payment never blocks an exit: an underpayment is accepted and the
    shortfall is carried forward as an unpaid fine for the next visit.
    Two exemptions waive the parking fee (never the fines): the grace
    period and a prepaid reservation covering the stay.
    """

    def __init__(self, fine_manager=None, reservations=None, grace_period_minutes: int | None = None):
        self.fine_manager = fine_manager
        self.reservations = reservations
        if grace_period_minutes is None:
            grace_period_minutes = settings.GRACE_PERIOD_MINUTES
        self.grace_period_minutes = grace_period_minutes

    @staticmethod
    def validate_payment(amount_paid, total) -> bool:
        return Decimal(str(amount_paid)) >= Decimal(str(total))

    @staticmethod
    def remaining_balance(amount_paid, total) -> Decimal:
        return max(ZERO, Decimal(str(total)) - Decimal(str(amount_paid)))

    @staticmethod
    def change_amount(amount_paid, total) -> Decimal:
        return max(ZERO, Decimal(str(amount_paid)) - Decimal(str(total)))

    @staticmethod
    def is_valid_payment_method(method) -> bool:
        return isinstance(method, PaymentMethod)

    @staticmethod
    def compensating_cash_flow(tendered) -> List[Union[CashTendered, RefundIssued]]:
        amount = Decimal(str(tendered))
        return [CashTendered(amount=amount), RefundIssued(amount=amount)]

    def is_within_grace_period(self, entry_time: datetime | None, exit_time: datetime | None = None) -> bool:
        if entry_time is None:
            return False
        return elapsed_minutes(entry_time, exit_time or utcnow()) <= self.grace_period_minutes

    def exemption_for(self, license_plate: str, spot_id: str | None, entry_time: datetime | None, exit_time: datetime | None = None) -> ExitExemption:
        if self.is_within_grace_period(entry_time, exit_time):
            return ExitExemption.GRACE_PERIOD
        if self.reservations is not None and spot_id is not None and entry_time is not None:
            if self.reservations.find_covering(license_plate, spot_id, entry_time, exit_time or utcnow()) is not None:
                return ExitExemption.PREPAID_RESERVATION
        return ExitExemption.NONE

    def _method(self, method) -> PaymentMethod:
        if isinstance(method, str):
            try:
                method = PaymentMethod(method.upper())
            except ValueError:
                pass
        if not self.is_valid_payment_method(method):
            raise InvalidArgumentError(f"payment method must be one of {[m.value for m in PaymentMethod]}, got {method!r}")
        return method

    def settle(self, license_plate: str, parking_fee, fine_amount, amount_paid, method, exemption: ExitExemption = ExitExemption.NONE, now: datetime | None = None, cash_inserted=None) -> Settlement:
        try:
            plate = normalize_plate(license_plate)
        except ValueError as e:
            raise InvalidArgumentError(str(e)) from e
        method = self._method(method)
        parking_fee = _money(parking_fee, "parking fee")
        fine_amount = _money(fine_amount, "fine amount")
        amount_paid = _money(amount_paid, "amount paid")
        if cash_inserted is not None:
            cash_inserted = _money(cash_inserted, "cash inserted")

        cash_events = []
        if exemption != ExitExemption.NONE:
            # 免费离场只免停车费，罚款照常计入
            parking_fee = ZERO
            if fine_amount == ZERO and method == PaymentMethod.CASH:
                # 投入的现金原数退回，未单独给出面额时按所付金额
                tendered = cash_inserted if cash_inserted is not None else amount_paid
                if tendered > ZERO:
                    cash_events = self.compensating_cash_flow(tendered)
                amount_paid = ZERO

        payment = Payment(
            license_plate=plate,
            parking_fee=parking_fee,
            fine_amount=fine_amount,
            amount_paid=amount_paid,
            method=method,
            payment_date=as_utc(now) or utcnow(),
        )
        carried = None
        if not self.validate_payment(payment.amount_paid, payment.total_amount):
            shortfall = self.remaining_balance(payment.amount_paid, payment.total_amount)
            logger.info(f"underpayment by {plate}: paid RM {payment.amount_paid:.2f} of RM {payment.total_amount:.2f}")
            if self.fine_manager is not None:
                carried = self.fine_manager.carry_forward(plate, shortfall, now)
        logger.info(f"payment {plate}: fee RM {payment.parking_fee:.2f} + fines RM {payment.fine_amount:.2f}, paid RM {payment.amount_paid:.2f} by {method.value} ({exemption.value})")
        return Settlement(payment=payment, exemption=exemption, cash_events=cash_events, carried_forward=carried)

    def process_payment(self, license_plate: str, parking_fee, fine_amount, amount_paid, method, exemption: ExitExemption = ExitExemption.NONE, now: datetime | None = None, cash_inserted=None) -> Payment:
        return self.settle(license_plate, parking_fee, fine_amount, amount_paid, method, exemption, now, cash_inserted).payment

# services.py
from decimal import Decimal
from datetime import datetime
from typing import List, Optional
from loguru import logger
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from core.enums import ExitExemption
from .clock import utcnow, as_utc, billable_hours
from .errors import InvalidArgumentError, NotFoundError, BusinessRuleError
from .fines import FineManager, FinePolicy
from .rates import FeeCalculator
from .receipts import Receipt, build_receipt
from .reservations import ReservationManager
from .schemas import Vehicle, ParkingSpot, Fine, Payment, SpotCreate, FeeQuoteRequest, FeeQuoteRead, ExitSettleRequest
from .settlement import PaymentSettlement
from .stores import (
    SQLAlchemyFineStore, SQLAlchemyReservationStore, SQLAlchemySpotCatalog,
    SQLAlchemyPaymentLog, SQLAlchemyFinePolicyStore,
)


class ParkingEngine:
    """Wires the SQL stores of one session into the fee/fine/payment components."""

    def __init__(self, db: Session):
        self.db = db
        self.spots = SQLAlchemySpotCatalog(db)
        self.payments = SQLAlchemyPaymentLog(db)
        self.reservations = ReservationManager(SQLAlchemyReservationStore(db), self.spots)
        self.policy = FinePolicy(SQLAlchemyFinePolicyStore(db))
        self.fines = FineManager(SQLAlchemyFineStore(db), self.reservations)
        self.fees = FeeCalculator()
        self.settlement = PaymentSettlement(self.fines, self.reservations)

    def spot(self, spot_id: str) -> ParkingSpot:
        spot = self.spots.get(spot_id)
        if spot is None:
            raise NotFoundError(f"spot {spot_id} does not exist")
        return spot


def build_engine(db: Session) -> ParkingEngine:
    return ParkingEngine(db)


class ExitOutcome(BaseModel):
    receipt: Receipt
    payment: Payment
    settled_fine_ids: List[int] = []
    new_fines: List[Fine] = []
    carried_forward: Optional[Fine] = None
    model_config = ConfigDict(frozen=True)


def register_spot(db: Session, data: SpotCreate) -> ParkingSpot:
    catalog = SQLAlchemySpotCatalog(db)
    if catalog.get(data.spot_id) is not None:
        raise BusinessRuleError(f"spot {data.spot_id} already exists")
    spot = ParkingSpot.model_validate(data.model_dump())
    catalog.add(spot)
    logger.info(f"spot {spot.spot_id} registered: {spot.spot_type.value} RM {spot.hourly_rate:.2f}/h")
    return spot


def quote_fee(db: Session, request: FeeQuoteRequest) -> FeeQuoteRead:
    engine = build_engine(db)
    spot = engine.spot(request.spot_id)
    vehicle = Vehicle(license_plate=request.license_plate, vehicle_type=request.vehicle_type, handicapped=request.handicapped)
    if not vehicle.can_park_in(spot.spot_type):
        raise BusinessRuleError(f"{vehicle.vehicle_type.value} cannot park in {spot.spot_type.value} spot {spot.spot_id}")
    return FeeQuoteRead(
        spot_id=spot.spot_id,
        hourly_rate=engine.fees.resolve_hourly_rate(vehicle, spot),
        duration_hours=request.duration_hours,
        parking_fee=engine.fees.calculate_parking_fee(vehicle, spot, request.duration_hours),
    )


def settle_exit(db: Session, request: ExitSettleRequest, now: datetime | None = None) -> ExitOutcome:
    """Settle one vehicle exit: fee, fines, payment, carry-forward and receipt.

    All input checks run before anything is written. The session is only
    flushed; the caller commits or rolls back.
    """
    now = as_utc(now) or utcnow()
    engine = build_engine(db)
    spot = engine.spot(request.spot_id)
    entry_time = as_utc(request.entry_time)
    exit_time = as_utc(request.exit_time) or now
    if exit_time < entry_time:
        raise InvalidArgumentError(f"exit time {exit_time.isoformat()} is before entry time {entry_time.isoformat()}")
    vehicle = Vehicle(
        license_plate=request.license_plate,
        vehicle_type=request.vehicle_type,
        handicapped=request.handicapped,
        entry_time=entry_time,
        exit_time=exit_time,
        elapsed_hours=request.elapsed_hours,
    )
    plate = vehicle.license_plate
    hours = vehicle.elapsed_hours if vehicle.elapsed_hours is not None else billable_hours(entry_time, exit_time)

    exemption = engine.settlement.exemption_for(plate, spot.spot_id, entry_time, exit_time)
    if exemption == ExitExemption.NONE:
        fee = engine.fees.calculate_parking_fee(vehicle, spot, hours)
    else:
        fee = Decimal("0.00")

    # 先取历史欠款，再记录本次新罚款
    outstanding = engine.fines.find_unpaid(plate)
    authorized = True if exemption == ExitExemption.PREPAID_RESERVATION else None
    new_fines = engine.fines.record_fines(vehicle, spot, engine.policy.strategy, authorized=authorized, hours_parked=hours, now=now)
    due = outstanding + new_fines
    fine_amount = sum((f.amount for f in due), Decimal("0.00"))

    result = engine.settlement.settle(plate, fee, fine_amount, request.amount_paid, request.payment_method, exemption, now, request.cash_inserted)
    settled_ids = engine.fines.mark_paid([f.id for f in due]) if due else []
    engine.payments.append(result.payment)

    receipt = build_receipt(
        license_plate=plate,
        entry_time=entry_time,
        exit_time=exit_time,
        duration_hours=hours,
        parking_fee=result.payment.parking_fee,
        fine_amount=result.payment.fine_amount,
        amount_paid=result.payment.amount_paid,
        payment_method=result.payment.method,
        spot_id=spot.spot_id,
        is_prepaid_reservation=exemption == ExitExemption.PREPAID_RESERVATION,
        is_within_grace_period=exemption == ExitExemption.GRACE_PERIOD,
        is_card_holder=vehicle.handicapped,
        vehicle_type=vehicle.vehicle_type,
        spot_type=spot.spot_type,
        spot_rate=engine.fees.resolve_hourly_rate(vehicle, spot),
        cash_events=result.cash_events,
    )
    logger.info(f"exit settled {plate} @ {spot.spot_id}: {hours}h, total RM {receipt.total_amount:.2f}, balance RM {receipt.remaining_balance:.2f}")
    return ExitOutcome(
        receipt=receipt,
        payment=result.payment,
        settled_fine_ids=settled_ids,
        new_fines=new_fines,
        carried_forward=result.carried_forward,
    )

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from loguru import logger

from core.enums import SpotType, ReservationStatus
from .clock import utcnow, as_utc, hours_between
from .errors import InvalidArgumentError, BusinessRuleError, ReservationConflictError, NotFoundError
from .locks import spot_locks
from .schemas import Reservation, normalize_plate
from .stores import ReservationStore, SpotCatalog

CENT = Decimal("0.01")


class ReservationManager:
    """Prepaid bookings of reserved spots.

    Expiry is never stored: an active reservation reads as expired once
    ``now`` passes its end time. Cancelling is explicit and never refunds.
    """

    def __init__(self, store: ReservationStore, spots: SpotCatalog):
        self.store = store
        self.spots = spots

    def create_reservation(self, license_plate: str, spot_id: str, start: datetime, end: datetime, now: datetime | None = None) -> Reservation:
        try:
            plate = normalize_plate(license_plate)
        except ValueError as e:
            raise InvalidArgumentError(str(e)) from e
        if start is None or end is None:
            raise InvalidArgumentError("reservation start and end times are required")
        start, end = as_utc(start), as_utc(end)
        if end <= start:
            raise InvalidArgumentError(f"reservation end {end.isoformat()} must be after start {start.isoformat()}")
        spot = self.spots.get(spot_id)
        if spot is None:
            raise NotFoundError(f"spot {spot_id} does not exist")
        if spot.spot_type != SpotType.RESERVED:
            raise BusinessRuleError(f"spot {spot_id} is a {spot.spot_type.value} spot; only RESERVED spots can be booked")
        with spot_locks.hold(spot.spot_id):
            if self.store.is_spot_reserved(spot.spot_id, start, end):
                raise ReservationConflictError(f"spot {spot_id} already has an active reservation overlapping {start.isoformat()} - {end.isoformat()}")
            # 预付金额在创建时确定，之后不随费率变化
            prepaid = (hours_between(start, end) * Decimal(str(spot.hourly_rate))).quantize(CENT)
            rsv = Reservation(
                license_plate=plate,
                spot_id=spot.spot_id,
                start_time=start,
                end_time=end,
                prepaid_amount=prepaid,
                created_at=as_utc(now) or utcnow(),
            )
            self.store.save(rsv)
        logger.info(f"reservation {rsv.id} created: {plate} @ {spot.spot_id} {start.isoformat()} - {end.isoformat()}, prepaid RM {prepaid:.2f}")
        return rsv

    def get(self, reservation_id: int) -> Reservation:
        rsv = self.store.get(reservation_id)
        if rsv is None:
            raise NotFoundError(f"reservation {reservation_id} does not exist")
        return rsv

    def cancel_reservation(self, reservation_id: int, acknowledge_no_refund: bool = False, now: datetime | None = None) -> Reservation:
        if not acknowledge_no_refund:
            raise BusinessRuleError("cancellation must acknowledge that the prepaid amount is not refunded")
        rsv = self.get(reservation_id)
        state = rsv.state_at(now)
        if state != ReservationStatus.ACTIVE:
            raise BusinessRuleError(f"reservation {reservation_id} is {state.value} and can no longer be cancelled")
        if not self.store.cancel(reservation_id):
            raise BusinessRuleError(f"reservation {reservation_id} could not be cancelled")
        rsv.status = ReservationStatus.CANCELLED
        logger.info(f"reservation {reservation_id} cancelled, RM {rsv.prepaid_amount:.2f} not refunded")
        return rsv

    def state_of(self, reservation: Reservation, now: datetime | None = None) -> ReservationStatus:
        return reservation.state_at(now)

    def list_reservations(self, now: datetime | None = None) -> List[Reservation]:
        result = []
        for rsv in self.store.find_all():
            # 过期状态按当前时间计算后返回
            state = rsv.state_at(now)
            if state != rsv.status:
                rsv = rsv.model_copy(update={"status": state})
            result.append(rsv)
        return result

    def _for_plate_and_spot(self, license_plate: str, spot_id: str) -> List[Reservation]:
        plate = normalize_plate(license_plate)
        return self.store.find_by_plate_and_spot(plate, spot_id)

    def is_authorized(self, license_plate: str, spot_id: str, at: datetime) -> bool:
        return any(r.is_valid_at(at) for r in self._for_plate_and_spot(license_plate, spot_id))

    def find_covering(self, license_plate: str, spot_id: str, entry: datetime, exit: datetime | None = None) -> Optional[Reservation]:
        entry = as_utc(entry)
        exit = as_utc(exit) or entry
        for rsv in self._for_plate_and_spot(license_plate, spot_id):
            if rsv.is_valid_at(entry) and rsv.is_valid_at(exit):
                return rsv
        return None

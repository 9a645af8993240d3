from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Tuple
from sqlalchemy.orm import Session

from core.enums import FineStrategyName, ReservationStatus
from .clock import utcnow
from .errors import NotFoundError
from .models import ParkingSpotRecord, FineRecord, ReservationRecord, PaymentRecord, FinePolicyRecord
from .schemas import ParkingSpot, Fine, Reservation, Payment


class FineStore(ABC):
    @abstractmethod
    def save(self, fine: Fine) -> int:
        pass

    @abstractmethod
    def find_unpaid_by_plate(self, license_plate: str) -> List[Fine]:
        pass

    @abstractmethod
    def find_all_unpaid(self) -> List[Fine]:
        pass

    @abstractmethod
    def find_by_visit(self, license_plate: str, entry_time: datetime) -> List[Fine]:
        pass

    @abstractmethod
    def mark_paid(self, fine_id: int) -> None:
        pass


class ReservationStore(ABC):
    @abstractmethod
    def save(self, reservation: Reservation) -> bool:
        pass

    @abstractmethod
    def get(self, reservation_id: int) -> Optional[Reservation]:
        pass

    @abstractmethod
    def find_all(self) -> List[Reservation]:
        pass

    @abstractmethod
    def find_by_plate_and_spot(self, license_plate: str, spot_id: str) -> List[Reservation]:
        pass

    @abstractmethod
    def is_spot_reserved(self, spot_id: str, start: datetime, end: datetime) -> bool:
        pass

    @abstractmethod
    def cancel(self, reservation_id: int) -> bool:
        pass


class SpotCatalog(ABC):
    @abstractmethod
    def get(self, spot_id: str) -> Optional[ParkingSpot]:
        pass


class PaymentLog(ABC):
    @abstractmethod
    def append(self, payment: Payment) -> int:
        pass

    @abstractmethod
    def find_by_plate(self, license_plate: str) -> List[Payment]:
        pass


class FinePolicyStore(ABC):
    @abstractmethod
    def get(self) -> Optional[Tuple[FineStrategyName, datetime]]:
        pass

    @abstractmethod
    def set(self, strategy: FineStrategyName, changed_at: datetime) -> None:
        pass


# --- SQLAlchemy 实现：只 flush，由调用方提交事务 ---
class SQLAlchemyFineStore(FineStore):
    def __init__(self, db: Session):
        self.db = db

    def save(self, fine: Fine) -> int:
        rec = FineRecord(
            license_plate=fine.license_plate,
            fine_type=fine.fine_type,
            amount=fine.amount,
            issued_date=fine.issued_date,
            paid=fine.paid,
            entry_time=fine.entry_time,
        )
        self.db.add(rec)
        self.db.flush()
        fine.id = rec.id
        return rec.id

    def find_unpaid_by_plate(self, license_plate: str) -> List[Fine]:
        rows = self.db.query(FineRecord).filter(FineRecord.license_plate == license_plate, FineRecord.paid.is_(False)).order_by(FineRecord.issued_date.asc(), FineRecord.id.asc()).all()
        return [Fine.model_validate(r) for r in rows]

    def find_all_unpaid(self) -> List[Fine]:
        rows = self.db.query(FineRecord).filter(FineRecord.paid.is_(False)).order_by(FineRecord.issued_date.asc(), FineRecord.id.asc()).all()
        return [Fine.model_validate(r) for r in rows]

    def find_by_visit(self, license_plate: str, entry_time: datetime) -> List[Fine]:
        rows = self.db.query(FineRecord).filter(FineRecord.license_plate == license_plate, FineRecord.entry_time == entry_time).order_by(FineRecord.id.asc()).all()
        return [Fine.model_validate(r) for r in rows]

    def mark_paid(self, fine_id: int) -> None:
        # 每条罚款单独一个保存点，单条失败不影响已标记的其它罚款
        with self.db.begin_nested():
            rec = self.db.query(FineRecord).filter(FineRecord.id == fine_id).with_for_update().first()
            if not rec:
                raise NotFoundError(f"fine {fine_id} does not exist")
            if not rec.paid:
                rec.paid = True
                rec.paid_at = utcnow()


class SQLAlchemyReservationStore(ReservationStore):
    def __init__(self, db: Session):
        self.db = db

    def save(self, reservation: Reservation) -> bool:
        rec = ReservationRecord(
            license_plate=reservation.license_plate,
            spot_id=reservation.spot_id,
            start_time=reservation.start_time,
            end_time=reservation.end_time,
            prepaid_amount=reservation.prepaid_amount,
            status=reservation.status,
            created_at=reservation.created_at,
        )
        self.db.add(rec)
        self.db.flush()
        reservation.id = rec.id
        return True

    def get(self, reservation_id: int) -> Optional[Reservation]:
        rec = self.db.query(ReservationRecord).filter(ReservationRecord.id == reservation_id).first()
        return Reservation.model_validate(rec) if rec else None

    def find_all(self) -> List[Reservation]:
        rows = self.db.query(ReservationRecord).order_by(ReservationRecord.start_time.asc()).all()
        return [Reservation.model_validate(r) for r in rows]

    def find_by_plate_and_spot(self, license_plate: str, spot_id: str) -> List[Reservation]:
        rows = self.db.query(ReservationRecord).filter(ReservationRecord.license_plate == license_plate, ReservationRecord.spot_id == spot_id).order_by(ReservationRecord.start_time.asc()).all()
        return [Reservation.model_validate(r) for r in rows]

    def is_spot_reserved(self, spot_id: str, start: datetime, end: datetime) -> bool:
        # 先锁车位行，没有重叠预约时也与其它预订事务互斥
        self.db.query(ParkingSpotRecord.id).filter(ParkingSpotRecord.spot_id == spot_id).with_for_update().first()
        # 半开区间 [start, end) 相交
        existed = self.db.query(ReservationRecord).filter(
            ReservationRecord.spot_id == spot_id,
            ReservationRecord.status == ReservationStatus.ACTIVE,
            ReservationRecord.start_time < end,
            ReservationRecord.end_time > start,
        ).with_for_update().first()
        return existed is not None

    def cancel(self, reservation_id: int) -> bool:
        rec = self.db.query(ReservationRecord).filter(ReservationRecord.id == reservation_id).with_for_update().first()
        if not rec or rec.status != ReservationStatus.ACTIVE:
            return False
        rec.status = ReservationStatus.CANCELLED
        rec.cancelled_at = utcnow()
        self.db.flush()
        return True


class SQLAlchemySpotCatalog(SpotCatalog):
    def __init__(self, db: Session):
        self.db = db

    def get(self, spot_id: str) -> Optional[ParkingSpot]:
        rec = self.db.query(ParkingSpotRecord).filter(ParkingSpotRecord.spot_id == spot_id).first()
        return ParkingSpot.model_validate(rec) if rec else None

    def add(self, spot: ParkingSpot) -> ParkingSpot:
        rec = ParkingSpotRecord(spot_id=spot.spot_id, spot_type=spot.spot_type, hourly_rate=spot.hourly_rate)
        self.db.add(rec)
        self.db.flush()
        return spot

    def all(self) -> List[ParkingSpot]:
        rows = self.db.query(ParkingSpotRecord).order_by(ParkingSpotRecord.spot_id.asc()).all()
        return [ParkingSpot.model_validate(r) for r in rows]


class SQLAlchemyPaymentLog(PaymentLog):
    def __init__(self, db: Session):
        self.db = db

    def append(self, payment: Payment) -> int:
        rec = PaymentRecord(
            license_plate=payment.license_plate,
            parking_fee=payment.parking_fee,
            fine_amount=payment.fine_amount,
            total_amount=payment.total_amount,
            amount_paid=payment.amount_paid,
            method=payment.method,
            payment_date=payment.payment_date,
        )
        self.db.add(rec)
        self.db.flush()
        return rec.id

    def find_by_plate(self, license_plate: str) -> List[Payment]:
        rows = self.db.query(PaymentRecord).filter(PaymentRecord.license_plate == license_plate).order_by(PaymentRecord.payment_date.asc()).all()
        return [Payment.model_validate(r) for r in rows]


class SQLAlchemyFinePolicyStore(FinePolicyStore):
    def __init__(self, db: Session):
        self.db = db

    def get(self) -> Optional[Tuple[FineStrategyName, datetime]]:
        rec = self.db.query(FinePolicyRecord).filter(FinePolicyRecord.id == 1).first()
        if not rec:
            return None
        return rec.strategy, rec.changed_at

    def set(self, strategy: FineStrategyName, changed_at: datetime) -> None:
        rec = self.db.query(FinePolicyRecord).filter(FinePolicyRecord.id == 1).with_for_update().first()
        if not rec:
            rec = FinePolicyRecord(id=1, strategy=strategy, changed_at=changed_at)
            self.db.add(rec)
        else:
            rec.strategy = strategy
            rec.changed_at = changed_at
        self.db.flush()

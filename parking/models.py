from sqlalchemy import Column, Integer, String, Boolean, Enum, Index, BigInteger, Numeric, UniqueConstraint
from sqlalchemy.sql import func
from core.database import Base, UTCDateTime
from core.enums import SpotType, FineType, FineStrategyName, PaymentMethod, ReservationStatus

class ParkingSpotRecord(Base):
    __tablename__ = "parking_spots"
    id = Column(Integer, primary_key=True, autoincrement=True)
    spot_id = Column(String(50), unique=True, nullable=False, index=True)
    spot_type = Column(Enum(SpotType), nullable=False)
    hourly_rate = Column(Numeric(10, 2), nullable=False)
    created_at = Column(UTCDateTime, default=func.now(), nullable=False)
    __table_args__ = (
        Index("idx_parking_spots_type", "spot_type"),
    )

class FineRecord(Base):
    __tablename__ = "fines"
    id = Column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True)
    license_plate = Column(String(20), nullable=False, index=True)
    fine_type = Column(Enum(FineType), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    issued_date = Column(UTCDateTime, nullable=False)
    paid = Column(Boolean, default=False, nullable=False)
    paid_at = Column(UTCDateTime, nullable=True)
    # 本次停车的入场时间，结转欠款为空
    entry_time = Column(UTCDateTime, nullable=True)
    __table_args__ = (
        Index("idx_fines_plate_paid", "license_plate", "paid"),
        UniqueConstraint("license_plate", "fine_type", "entry_time", name="uq_fines_plate_type_visit"),
    )

class ReservationRecord(Base):
    __tablename__ = "reservations"
    id = Column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True)
    license_plate = Column(String(20), nullable=False, index=True)
    spot_id = Column(String(50), nullable=False, index=True)
    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=False)
    prepaid_amount = Column(Numeric(10, 2), nullable=False)
    status = Column(Enum(ReservationStatus), default=ReservationStatus.ACTIVE, nullable=False, index=True)
    created_at = Column(UTCDateTime, nullable=False)
    cancelled_at = Column(UTCDateTime, nullable=True)
    __table_args__ = (
        Index("idx_reservations_spot_status", "spot_id", "status"),
        Index("idx_reservations_plate_spot", "license_plate", "spot_id"),
    )

class PaymentRecord(Base):
    __tablename__ = "payments"
    id = Column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True)
    license_plate = Column(String(20), nullable=False, index=True)
    parking_fee = Column(Numeric(10, 2), nullable=False)
    fine_amount = Column(Numeric(10, 2), nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    amount_paid = Column(Numeric(10, 2), nullable=False)
    method = Column(Enum(PaymentMethod), nullable=False)
    payment_date = Column(UTCDateTime, nullable=False, index=True)

class FinePolicyRecord(Base):
    __tablename__ = "fine_policy"
    id = Column(Integer, primary_key=True)
    strategy = Column(Enum(FineStrategyName), nullable=False)
    changed_at = Column(UTCDateTime, nullable=False)

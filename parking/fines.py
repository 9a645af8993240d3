from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple
from loguru import logger

from core.config import settings
from core.enums import FineType, FineStrategyName, SpotType
from .clock import utcnow, as_utc
from .errors import InvalidArgumentError, FineSettlementError
from .locks import plate_locks
from .schemas import Vehicle, ParkingSpot, Fine, normalize_plate
from .stores import FineStore, FinePolicyStore


# --- 罚款策略 ---
class FineStrategy(ABC):
    name: FineStrategyName

    @abstractmethod
    def calculate(self, overstay_hours) -> Decimal:
        pass

    def __call__(self, overstay_hours) -> Decimal:
        return self.calculate(overstay_hours)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"

    @staticmethod
    def _check_hours(overstay_hours):
        if overstay_hours is None or overstay_hours < 0:
            raise InvalidArgumentError(f"overstay hours must be non-negative, got {overstay_hours}")


class FixedFineStrategy(FineStrategy):
    name = FineStrategyName.FIXED

    def __init__(self, amount: Decimal | None = None):
        self.amount = Decimal(str(amount if amount is not None else settings.FIXED_FINE_AMOUNT))

    def calculate(self, overstay_hours) -> Decimal:
        self._check_hours(overstay_hours)
        return self.amount


class ProgressiveFineStrategy(FineStrategy):
    """Cumulative tiers: every tier whose threshold the overstay exceeds adds its amount.

    With the default tiers an overstay of 1-24h costs 50, 25-48h 150,
    49-72h 300 and anything longer 500.
    """

    name = FineStrategyName.PROGRESSIVE

    def __init__(self, tiers: Sequence[Tuple[int, Decimal]] | None = None):
        if tiers is None:
            tiers = settings.PROGRESSIVE_FINE_TIERS
        self.tiers = sorted((int(t), Decimal(str(a))) for t, a in tiers)

    def calculate(self, overstay_hours) -> Decimal:
        self._check_hours(overstay_hours)
        total = Decimal("0.00")
        for threshold, amount in self.tiers:
            if overstay_hours > threshold:
                total += amount
        return total


class HourlyFineStrategy(FineStrategy):
    name = FineStrategyName.HOURLY

    def __init__(self, rate: Decimal | None = None):
        self.rate = Decimal(str(rate if rate is not None else settings.HOURLY_FINE_RATE))

    def calculate(self, overstay_hours) -> Decimal:
        self._check_hours(overstay_hours)
        return Decimal(str(overstay_hours)) * self.rate


STRATEGIES = {
    FineStrategyName.FIXED: FixedFineStrategy,
    FineStrategyName.PROGRESSIVE: ProgressiveFineStrategy,
    FineStrategyName.HOURLY: HourlyFineStrategy,
}

def build_strategy(name) -> FineStrategy:
    try:
        key = name if isinstance(name, FineStrategyName) else FineStrategyName(str(name).upper())
    except ValueError:
        raise InvalidArgumentError(f"unknown fine strategy {name!r}")
    return STRATEGIES[key]()


class FinePolicy:
    """Facility-wide active fine strategy and the moment it last changed.

    Fines keep the amount computed when they were issued, so a change only
    affects fines generated afterwards.
    """

    def __init__(self, store: FinePolicyStore | None = None):
        self.store = store
        self._strategy = build_strategy(settings.DEFAULT_FINE_STRATEGY)
        self._changed_at = utcnow()
        if store is not None:
            current = store.get()
            if current is not None:
                self._strategy = build_strategy(current[0])
                self._changed_at = as_utc(current[1])

    @property
    def strategy(self) -> FineStrategy:
        return self._strategy

    @property
    def changed_at(self) -> datetime:
        return self._changed_at

    def change(self, name, now: datetime | None = None) -> FineStrategy:
        strategy = build_strategy(name)
        previous = self._strategy.name
        self._strategy = strategy
        self._changed_at = as_utc(now) or utcnow()
        if self.store is not None:
            self.store.set(strategy.name, self._changed_at)
        logger.info(f"fine strategy changed {previous.value} -> {strategy.name.value}")
        return strategy

    def applies_to(self, fine: Fine) -> bool:
        return fine.issued_date >= self._changed_at


# --- 罚款管理 ---
class FineManager:
    def __init__(self, fine_store: FineStore, reservations=None, overstay_threshold_hours: int | None = None):
        self.fine_store = fine_store
        self.reservations = reservations
        if overstay_threshold_hours is None:
            overstay_threshold_hours = settings.OVERSTAY_THRESHOLD_HOURS
        self.overstay_threshold_hours = overstay_threshold_hours

    def check_overstay(self, vehicle: Vehicle, strategy: FineStrategy, hours_parked: int | None = None, now: datetime | None = None) -> Optional[Fine]:
        if vehicle is None:
            return None
        hours = hours_parked
        if hours is None:
            hours = vehicle.elapsed_hours
        if hours is None:
            hours = vehicle.parking_hours(now)
        if hours is None or hours <= self.overstay_threshold_hours:
            return None
        overstay = hours - self.overstay_threshold_hours
        return Fine(
            license_plate=vehicle.license_plate,
            fine_type=FineType.OVERSTAY,
            amount=strategy.calculate(overstay),
            issued_date=as_utc(now) or utcnow(),
            entry_time=vehicle.entry_time,
        )

    def is_authorized(self, license_plate: str, spot: ParkingSpot, at: datetime | None) -> bool:
        if self.reservations is None or at is None:
            return False
        return self.reservations.is_authorized(license_plate, spot.spot_id, at)

    def check_unauthorized_reserved(self, license_plate: str, spot: ParkingSpot, strategy: FineStrategy, authorized: bool | None = None, at: datetime | None = None, now: datetime | None = None) -> Optional[Fine]:
        if spot is None or spot.spot_type != SpotType.RESERVED:
            return None
        if authorized is None:
            authorized = self.is_authorized(license_plate, spot, at)
        if authorized:
            return None
        # 按 1 小时超时计价，与实际停放时长无关
        return Fine(
            license_plate=license_plate,
            fine_type=FineType.UNAUTHORIZED_RESERVED,
            amount=strategy.calculate(1),
            issued_date=as_utc(now) or utcnow(),
        )

    def generate_fines(self, vehicle: Vehicle, spot: ParkingSpot, strategy: FineStrategy, authorized: bool | None = None, hours_parked: int | None = None, now: datetime | None = None) -> List[Fine]:
        fines = []
        overstay = self.check_overstay(vehicle, strategy, hours_parked, now)
        if overstay is not None:
            fines.append(overstay)
        at = vehicle.entry_time or as_utc(now) or utcnow()
        unauthorized = self.check_unauthorized_reserved(vehicle.license_plate, spot, strategy, authorized, at, now)
        if unauthorized is not None:
            fines.append(unauthorized.model_copy(update={"entry_time": vehicle.entry_time}))
        return fines

    def record_fines(self, vehicle: Vehicle, spot: ParkingSpot, strategy: FineStrategy, authorized: bool | None = None, hours_parked: int | None = None, now: datetime | None = None) -> List[Fine]:
        with plate_locks.hold(vehicle.license_plate):
            fines = self.generate_fines(vehicle, spot, strategy, authorized, hours_parked, now)
            if vehicle.entry_time is not None:
                # 同一次停车每种罚款只开一次
                issued = {f.fine_type for f in self.fine_store.find_by_visit(vehicle.license_plate, vehicle.entry_time)}
                fines = [f for f in fines if f.fine_type not in issued]
            for fine in fines:
                self.fine_store.save(fine)
                logger.info(f"fine {fine.id} issued to {fine.license_plate}: {fine.fine_type.value} RM {fine.amount:.2f} ({strategy.name.value})")
        return fines

    def find_unpaid(self, license_plate: str) -> List[Fine]:
        return self.fine_store.find_unpaid_by_plate(normalize_plate(license_plate))

    def find_all_unpaid(self) -> List[Fine]:
        return self.fine_store.find_all_unpaid()

    def total_unpaid(self, license_plate: str) -> Decimal:
        return sum((f.amount for f in self.find_unpaid(license_plate)), Decimal("0.00"))

    def mark_paid(self, fine_ids: Iterable[int]) -> List[int]:
        marked, failed = [], {}
        for fine_id in fine_ids:
            try:
                self.fine_store.mark_paid(fine_id)
            except Exception as e:
                logger.warning(f"marking fine {fine_id} paid failed: {e}")
                failed[fine_id] = e
                continue
            marked.append(fine_id)
        if failed:
            raise FineSettlementError(marked, failed) from next(iter(failed.values()))
        return marked

    def carry_forward(self, license_plate: str, shortfall: Decimal, now: datetime | None = None) -> Optional[Fine]:
        if shortfall is None or shortfall <= 0:
            return None
        fine = Fine(
            license_plate=license_plate,
            fine_type=FineType.UNPAID_BALANCE,
            amount=shortfall,
            issued_date=as_utc(now) or utcnow(),
        )
        with plate_locks.hold(fine.license_plate):
            self.fine_store.save(fine)
        logger.info(f"shortfall RM {shortfall:.2f} carried forward for {fine.license_plate} as fine {fine.id}")
        return fine

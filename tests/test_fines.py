from datetime import datetime, timezone, timedelta
from decimal import Decimal
import pytest
from pydantic import ValidationError

from core.enums import SpotType, FineType, FineStrategyName
from parking.errors import InvalidArgumentError, FineSettlementError
from parking.fines import (
    FixedFineStrategy, ProgressiveFineStrategy, HourlyFineStrategy,
    build_strategy, FineManager, FinePolicy,
)
from parking.schemas import Vehicle, ParkingSpot, Fine
from parking.stores import FineStore, SQLAlchemyFineStore, SQLAlchemyFinePolicyStore

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
REGULAR = ParkingSpot(spot_id="R-01", spot_type=SpotType.REGULAR, hourly_rate=Decimal("5.00"))
RESERVED = ParkingSpot(spot_id="V-01", spot_type=SpotType.RESERVED, hourly_rate=Decimal("10.00"))

class MemoryFineStore(FineStore):
    def __init__(self):
        self.fines = {}

    def save(self, fine):
        fine.id = len(self.fines) + 1
        self.fines[fine.id] = fine
        return fine.id

    def find_unpaid_by_plate(self, license_plate):
        return [f for f in self.fines.values() if f.license_plate == license_plate and not f.paid]

    def find_all_unpaid(self):
        return [f for f in self.fines.values() if not f.paid]

    def find_by_visit(self, license_plate, entry_time):
        return [f for f in self.fines.values() if f.license_plate == license_plate and f.entry_time == entry_time]

    def mark_paid(self, fine_id):
        self.fines[fine_id].paid = True

class StubReservations:
    def __init__(self, allowed):
        self.allowed = allowed

    def is_authorized(self, license_plate, spot_id, at):
        return (license_plate, spot_id) in self.allowed

def parked(hours=None, entry=T0, **kw):
    return Vehicle(license_plate="ABC123", entry_time=entry, exit_time=entry + timedelta(hours=hours), **kw)

# --- 策略 ---
def test_fixed_strategy_is_flat():
    s = FixedFineStrategy()
    assert s(1) == s(100) == Decimal("50.00")

def test_hourly_strategy():
    assert HourlyFineStrategy()(3) == Decimal("60.00")
    assert HourlyFineStrategy(rate=Decimal("7.50")).calculate(2) == Decimal("15.00")

@pytest.mark.parametrize("overstay,expected", [
    (0, "0.00"), (1, "50.00"), (24, "50.00"), (25, "150.00"), (48, "150.00"), (49, "300.00"), (73, "500.00"),
])
def test_progressive_strategy_tiers(overstay, expected):
    assert ProgressiveFineStrategy()(overstay) == Decimal(expected)

def test_progressive_strategy_custom_tiers():
    s = ProgressiveFineStrategy(tiers=[(10, 30), (0, 10)])
    assert s(5) == Decimal("10")
    assert s(11) == Decimal("40")

def test_strategy_rejects_negative_hours():
    for s in (FixedFineStrategy(), ProgressiveFineStrategy(), HourlyFineStrategy()):
        with pytest.raises(InvalidArgumentError):
            s(-1)

def test_build_strategy():
    assert isinstance(build_strategy("hourly"), HourlyFineStrategy)
    assert isinstance(build_strategy(FineStrategyName.PROGRESSIVE), ProgressiveFineStrategy)
    with pytest.raises(InvalidArgumentError):
        build_strategy("DOUBLE")

# --- 超时检测 ---
def test_overstay_thirty_hours_fixed():
    fm = FineManager(MemoryFineStore())
    fine = fm.check_overstay(parked(30), FixedFineStrategy(), now=T0 + timedelta(hours=30))
    assert fine.fine_type == FineType.OVERSTAY
    assert fine.amount == Decimal("50.00")
    assert fine.paid is False

def test_overstay_hourly_three_hours_over():
    fm = FineManager(MemoryFineStore())
    fine = fm.check_overstay(parked(27), HourlyFineStrategy())
    assert fine.amount == Decimal("60.00")

@pytest.mark.parametrize("hours", [0, 1, 23, 24])
def test_no_overstay_up_to_threshold(hours):
    fm = FineManager(MemoryFineStore())
    assert fm.check_overstay(parked(hours), HourlyFineStrategy()) is None

def test_tracked_hours_take_precedence():
    fm = FineManager(MemoryFineStore())
    v = parked(2, elapsed_hours=26)
    assert fm.check_overstay(v, HourlyFineStrategy()).amount == Decimal("40.00")
    assert fm.check_overstay(v, HourlyFineStrategy(), hours_parked=25).amount == Decimal("20.00")

def test_missing_entry_time_means_no_overstay():
    fm = FineManager(MemoryFineStore())
    v = Vehicle(license_plate="NOENTRY")
    assert fm.check_overstay(v, FixedFineStrategy()) is None
    assert fm.generate_fines(v, REGULAR, FixedFineStrategy()) == []

def test_still_parked_uses_now():
    fm = FineManager(MemoryFineStore())
    v = Vehicle(license_plate="STILL1", entry_time=T0)
    fine = fm.check_overstay(v, HourlyFineStrategy(), now=T0 + timedelta(hours=25, minutes=30))
    assert fine.amount == Decimal("40.00")

# --- 预约车位 ---
def test_unauthorized_reserved_is_one_hour_equivalent():
    fm = FineManager(MemoryFineStore())
    fine = fm.check_unauthorized_reserved("ABC123", RESERVED, HourlyFineStrategy(), authorized=False)
    assert fine.fine_type == FineType.UNAUTHORIZED_RESERVED
    assert fine.amount == Decimal("20.00")
    assert fm.check_unauthorized_reserved("ABC123", RESERVED, HourlyFineStrategy(), authorized=True) is None
    assert fm.check_unauthorized_reserved("ABC123", REGULAR, HourlyFineStrategy(), authorized=False) is None

def test_authorization_from_reservations():
    fm = FineManager(MemoryFineStore(), StubReservations({("ABC123", "V-01")}))
    assert fm.check_unauthorized_reserved("ABC123", RESERVED, FixedFineStrategy(), at=T0) is None
    assert fm.check_unauthorized_reserved("ZZZ999", RESERVED, FixedFineStrategy(), at=T0) is not None

def test_both_fines_in_one_visit():
    fm = FineManager(MemoryFineStore())
    fines = fm.generate_fines(parked(30), RESERVED, FixedFineStrategy(), authorized=False)
    assert sorted(f.fine_type.value for f in fines) == ["OVERSTAY", "UNAUTHORIZED_RESERVED"]
    assert sum(f.amount for f in fines) == Decimal("100.00")

def test_generate_does_not_persist():
    store = MemoryFineStore()
    FineManager(store).generate_fines(parked(30), RESERVED, FixedFineStrategy(), authorized=False)
    assert store.fines == {}

# --- 持久化 ---
def test_record_and_total_unpaid(db_session):
    fm = FineManager(SQLAlchemyFineStore(db_session))
    fines = fm.record_fines(parked(30), RESERVED, FixedFineStrategy(), authorized=False)
    db_session.commit()
    assert all(f.id for f in fines)
    assert len(fm.find_unpaid("abc123")) == 2
    assert fm.total_unpaid("ABC123") == Decimal("100.00")
    assert len(fm.find_all_unpaid()) == 2

def test_mark_paid_partial_failure(db_session):
    fm = FineManager(SQLAlchemyFineStore(db_session))
    fine = fm.carry_forward("ABC123", Decimal("15.00"), T0)
    with pytest.raises(FineSettlementError) as exc:
        fm.mark_paid([fine.id, 9999])
    db_session.commit()
    assert exc.value.marked == [fine.id]
    assert 9999 in exc.value.failed
    assert fm.find_unpaid("ABC123") == []

def test_mark_paid_all(db_session):
    fm = FineManager(SQLAlchemyFineStore(db_session))
    a = fm.carry_forward("ABC123", Decimal("5.00"), T0)
    b = fm.carry_forward("ABC123", Decimal("6.00"), T0)
    assert fm.mark_paid([a.id, b.id]) == [a.id, b.id]
    assert fm.total_unpaid("ABC123") == Decimal("0.00")

def test_carry_forward(db_session):
    fm = FineManager(SQLAlchemyFineStore(db_session))
    assert fm.carry_forward("ABC123", Decimal("0")) is None
    fine = fm.carry_forward("ABC123", Decimal("15.00"), T0)
    assert fine.fine_type == FineType.UNPAID_BALANCE
    unpaid = fm.find_unpaid("ABC123")
    assert [f.amount for f in unpaid] == [Decimal("15.00")]

def test_fine_is_immutable_except_paid():
    fine = Fine(license_plate="ABC123", fine_type=FineType.OVERSTAY, amount=Decimal("50.00"))
    with pytest.raises(ValidationError):
        fine.amount = Decimal("1.00")
    with pytest.raises(ValidationError):
        Fine(license_plate="ABC123", fine_type=FineType.OVERSTAY, amount=Decimal("-1"))
    fine.paid = True
    assert fine.paid is True

# --- 策略切换 ---
def test_policy_change_is_persisted(db_session):
    policy = FinePolicy(SQLAlchemyFinePolicyStore(db_session))
    assert policy.strategy.name == FineStrategyName.FIXED
    policy.change("HOURLY", now=T0)
    db_session.commit()
    again = FinePolicy(SQLAlchemyFinePolicyStore(db_session))
    assert again.strategy.name == FineStrategyName.HOURLY
    assert again.changed_at == T0

def test_policy_change_keeps_existing_fines(db_session):
    store = SQLAlchemyFineStore(db_session)
    policy = FinePolicy(SQLAlchemyFinePolicyStore(db_session))
    fm = FineManager(store)
    old = fm.record_fines(parked(30), REGULAR, policy.strategy, now=T0)[0]
    policy.change(FineStrategyName.HOURLY, now=T0 + timedelta(hours=1))
    new = fm.record_fines(parked(30, entry=T0 + timedelta(days=2)), REGULAR, policy.strategy, now=T0 + timedelta(days=3))[0]
    db_session.commit()
    assert [f.amount for f in fm.find_unpaid("ABC123")] == [Decimal("50.00"), Decimal("120.00")]
    assert not policy.applies_to(old)
    assert policy.applies_to(new)

# --- 同一次停车不重复开罚款 ---
def test_fines_carry_the_visit_entry_time():
    fines = FineManager(MemoryFineStore()).generate_fines(parked(30), RESERVED, FixedFineStrategy(), authorized=False)
    assert {f.entry_time for f in fines} == {T0}

def test_recording_the_same_visit_twice(db_session):
    fm = FineManager(SQLAlchemyFineStore(db_session))
    first = fm.record_fines(parked(30), RESERVED, FixedFineStrategy(), authorized=False)
    again = fm.record_fines(parked(30), RESERVED, HourlyFineStrategy(), authorized=False)
    db_session.commit()
    assert len(first) == 2
    assert again == []
    assert fm.total_unpaid("ABC123") == Decimal("100.00")
    # 另一次停车照常处罚
    later = fm.record_fines(parked(30, entry=T0 + timedelta(days=2)), REGULAR, FixedFineStrategy())
    assert [f.fine_type for f in later] == [FineType.OVERSTAY]

def test_only_missing_fine_types_are_added():
    store = MemoryFineStore()
    fm = FineManager(store)
    fm.record_fines(parked(30), REGULAR, FixedFineStrategy())
    added = fm.record_fines(parked(30), RESERVED, FixedFineStrategy(), authorized=False)
    assert [f.fine_type for f in added] == [FineType.UNAUTHORIZED_RESERVED]
    assert len(store.fines) == 2

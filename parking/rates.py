from decimal import Decimal
from loguru import logger

from core.config import settings
from core.enums import SpotType
from .errors import InvalidArgumentError
from .schemas import Vehicle, ParkingSpot


class FeeCalculator:
    """Parking fee for an already-rounded number of hours.

    A handicapped vehicle on a handicapped spot pays the concessional rate
    instead of the spot's posted rate; every other pairing pays the posted
    rate, handicapped or not.
    """

    def __init__(self, handicapped_rate: Decimal | None = None):
        if handicapped_rate is None:
            handicapped_rate = settings.HANDICAPPED_HOURLY_RATE
        self.handicapped_rate = Decimal(str(handicapped_rate))

    def resolve_hourly_rate(self, vehicle: Vehicle, spot: ParkingSpot) -> Decimal:
        if vehicle is None or spot is None:
            raise InvalidArgumentError("vehicle and spot are required to resolve a rate")
        if vehicle.handicapped and spot.spot_type == SpotType.HANDICAPPED:
            return self.handicapped_rate
        return Decimal(str(spot.hourly_rate))

    def calculate_parking_fee(self, vehicle: Vehicle, spot: ParkingSpot, duration_hours) -> Decimal:
        if vehicle is None or spot is None:
            raise InvalidArgumentError("vehicle and spot are required to calculate a fee")
        if duration_hours is None or duration_hours < 0:
            raise InvalidArgumentError(f"duration must be non-negative, got {duration_hours}")
        rate = self.resolve_hourly_rate(vehicle, spot)
        fee = Decimal(str(duration_hours)) * rate
        logger.debug(f"fee {vehicle.license_plate} @ {spot.spot_id}: {duration_hours}h x {rate} = {fee}")
        return fee


_default = FeeCalculator()

def resolve_hourly_rate(vehicle: Vehicle, spot: ParkingSpot) -> Decimal:
    return _default.resolve_hourly_rate(vehicle, spot)

def calculate_parking_fee(vehicle: Vehicle, spot: ParkingSpot, duration_hours) -> Decimal:
    return _default.calculate_parking_fee(vehicle, spot, duration_hours)

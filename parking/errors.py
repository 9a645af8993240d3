class ParkingError(Exception):
    pass

class InvalidArgumentError(ParkingError, ValueError):
    pass

class BusinessRuleError(ParkingError):
    pass

class ReservationConflictError(BusinessRuleError):
    pass

class NotFoundError(ParkingError):
    pass

class FineSettlementError(ParkingError):
    """Raised after a batch mark-paid where some fines could not be marked.

    Fines listed in ``marked`` stay paid; ``failed`` maps each remaining id to
    the error it hit.
    """

    def __init__(self, marked, failed):
        self.marked = list(marked)
        self.failed = dict(failed)
        ids = ", ".join(str(i) for i in self.failed)
        super().__init__(f"could not mark fines paid: {ids}")

from fastapi import APIRouter, Depends, HTTPException, status, Header
from sqlalchemy.orm import Session
from typing import List
import hmac
from datetime import datetime
from loguru import logger

from core.config import settings
from core.database import get_db
from .errors import ParkingError, InvalidArgumentError, BusinessRuleError, ReservationConflictError, NotFoundError, FineSettlementError
from .schemas import (
    ParkingSpot, Fine, Payment, SpotCreate,
    FeeQuoteRequest, FeeQuoteRead,
    UnpaidFinesRead, PayFinesRequest, PayFinesRead,
    FineStrategyRead, FineStrategyUpdate,
    ReservationCreate, ReservationRead, ReservationCancelRequest,
    ExitSettleRequest, normalize_plate,
)
from .locks import plate_locks, spot_locks
from .services import build_engine, register_spot, quote_fee, settle_exit

router = APIRouter(tags=["Parking"])

def require_admin(x_admin_key: str | None = Header(default=None, alias="X-ADMIN-KEY")):
    if not settings.ADMIN_API_KEY:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="未配置管理员密钥")
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), settings.ADMIN_API_KEY.encode()):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="需要管理员权限")
    return True

def _http_error(db: Session, e: Exception) -> HTTPException:
    db.rollback()
    if isinstance(e, InvalidArgumentError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ReservationConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, (BusinessRuleError, ParkingError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    logger.exception(f"unexpected error: {e}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="内部错误")

def _plate(value: str) -> str:
    try:
        return normalize_plate(value)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

@router.post("/spots", response_model=ParkingSpot)
def create_spot(request: SpotCreate, db: Session = Depends(get_db), admin=Depends(require_admin)):
    try:
        spot = register_spot(db, request)
        db.commit()
        return spot
    except HTTPException as e:
        raise e
    except Exception as e:
        raise _http_error(db, e)

@router.get("/spots", response_model=List[ParkingSpot])
def list_spots(db: Session = Depends(get_db)):
    return build_engine(db).spots.all()

@router.get("/spots/{spot_id}", response_model=ParkingSpot)
def get_spot(spot_id: str, db: Session = Depends(get_db)):
    spot = build_engine(db).spots.get(spot_id)
    if not spot:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="车位不存在")
    return spot

@router.post("/fees/quote", response_model=FeeQuoteRead)
def fee_quote(request: FeeQuoteRequest, db: Session = Depends(get_db)):
    try:
        return quote_fee(db, request)
    except Exception as e:
        raise _http_error(db, e)

@router.get("/fines", response_model=List[Fine])
def list_unpaid_fines(db: Session = Depends(get_db), admin=Depends(require_admin)):
    return build_engine(db).fines.find_all_unpaid()

@router.get("/fines/{license_plate}", response_model=UnpaidFinesRead)
def unpaid_fines(license_plate: str, db: Session = Depends(get_db)):
    plate = _plate(license_plate)
    fines = build_engine(db).fines
    unpaid = fines.find_unpaid(plate)
    return UnpaidFinesRead(license_plate=plate, fines=unpaid, total=sum((f.amount for f in unpaid), 0))

@router.post("/fines/pay", response_model=PayFinesRead)
def pay_fines(request: PayFinesRequest, db: Session = Depends(get_db)):
    engine = build_engine(db)
    try:
        marked = engine.fines.mark_paid(request.fine_ids)
        db.commit()
        return PayFinesRead(marked=marked)
    except FineSettlementError as e:
        # 逐条标记，已成功的部分照常提交
        db.commit()
        return PayFinesRead(marked=e.marked, failed={k: str(v) for k, v in e.failed.items()})
    except Exception as e:
        raise _http_error(db, e)

@router.get("/fine-strategy", response_model=FineStrategyRead)
def get_fine_strategy(db: Session = Depends(get_db)):
    policy = build_engine(db).policy
    return FineStrategyRead(strategy=policy.strategy.name, changed_at=policy.changed_at)

@router.put("/fine-strategy", response_model=FineStrategyRead)
def update_fine_strategy(request: FineStrategyUpdate, db: Session = Depends(get_db), admin=Depends(require_admin)):
    policy = build_engine(db).policy
    try:
        policy.change(request.strategy)
        db.commit()
        return FineStrategyRead(strategy=policy.strategy.name, changed_at=policy.changed_at)
    except Exception as e:
        raise _http_error(db, e)

@router.post("/reservations", response_model=ReservationRead)
def create_reservation(request: ReservationCreate, db: Session = Depends(get_db)):
    try:
        # 重叠检查、写入与提交在同一把车位锁内完成
        with spot_locks.hold_until_commit(request.spot_id, db):
            rsv = build_engine(db).reservations.create_reservation(request.license_plate, request.spot_id, request.start_time, request.end_time)
        return rsv
    except Exception as e:
        raise _http_error(db, e)

@router.get("/reservations", response_model=List[ReservationRead])
def list_reservations(at: datetime | None = None, db: Session = Depends(get_db)):
    return build_engine(db).reservations.list_reservations(at)

@router.get("/reservations/{reservation_id}", response_model=ReservationRead)
def get_reservation(reservation_id: int, db: Session = Depends(get_db)):
    manager = build_engine(db).reservations
    try:
        rsv = manager.get(reservation_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return rsv.model_copy(update={"status": manager.state_of(rsv)})

@router.post("/reservations/{reservation_id}/cancel", response_model=ReservationRead)
def cancel_reservation(reservation_id: int, request: ReservationCancelRequest, db: Session = Depends(get_db)):
    try:
        rsv = build_engine(db).reservations.cancel_reservation(reservation_id, request.acknowledge_no_refund)
        db.commit()
        return rsv
    except Exception as e:
        raise _http_error(db, e)

@router.get("/payments/{license_plate}", response_model=List[Payment])
def list_payments(license_plate: str, db: Session = Depends(get_db)):
    return build_engine(db).payments.find_by_plate(_plate(license_plate))

@router.post("/exits/settle")
def exit_and_settle(request: ExitSettleRequest, db: Session = Depends(get_db)):
    try:
        with plate_locks.hold_until_commit(request.license_plate, db):
            outcome = settle_exit(db, request)
    except Exception as e:
        raise _http_error(db, e)
    return {
        "receipt": outcome.receipt,
        "receipt_text": outcome.receipt.render_text(),
        "settled_fine_ids": outcome.settled_fine_ids,
        "new_fine_ids": [f.id for f in outcome.new_fines],
        "carried_forward_fine_id": outcome.carried_forward.id if outcome.carried_forward else None,
    }

import threading
import time
from datetime import datetime, timezone, timedelta
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from main import app
from core.enums import FineType
from parking.models import ReservationRecord, FineRecord

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)

@pytest.fixture
def slow_commit(monkeypatch):
    """提交前停顿，放大检查与提交之间的时间窗口。"""
    commit = Session.commit

    def delayed(self):
        time.sleep(0.3)
        commit(self)

    monkeypatch.setattr(Session, "commit", delayed)

def post_together(url, bodies):
    barrier = threading.Barrier(len(bodies))
    codes = []

    def send(body):
        client = TestClient(app)
        barrier.wait()
        codes.append(client.post(url, json=body).status_code)

    threads = [threading.Thread(target=send, args=(body,)) for body in bodies]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return sorted(codes)

def test_concurrent_bookings_of_one_window(file_sessions, slow_commit):
    base = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=1)
    window = {"spot_id": "V-01", "start_time": base.isoformat(), "end_time": (base + timedelta(hours=2)).isoformat()}
    codes = post_together("/api/v1/reservations", [dict(window, license_plate="ABC123"), dict(window, license_plate="XYZ789")])
    assert codes == [200, 409]
    db = file_sessions()
    try:
        assert db.query(ReservationRecord).count() == 1
    finally:
        db.close()

def test_concurrent_exits_fine_once(file_sessions, slow_commit):
    body = {
        "license_plate": "ABC123", "spot_id": "R-01",
        "entry_time": T0.isoformat(), "exit_time": (T0 + timedelta(hours=30)).isoformat(),
        "amount_paid": "200.00", "payment_method": "CARD",
    }
    codes = post_together("/api/v1/exits/settle", [body, dict(body)])
    assert codes == [200, 200]
    db = file_sessions()
    try:
        overstay = db.query(FineRecord).filter(FineRecord.license_plate == "ABC123", FineRecord.fine_type == FineType.OVERSTAY).count()
        assert overstay == 1
    finally:
        db.close()

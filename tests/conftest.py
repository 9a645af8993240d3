import os
import sys
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# 在导入应用之前设置测试环境变量
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import app
from core.database import Base, get_db
from core.enums import SpotType
from parking.schemas import ParkingSpot
from parking.stores import SQLAlchemySpotCatalog

ADMIN_HEADERS = {"X-ADMIN-KEY": "test-admin-key"}

# --- 测试数据库设置 ---
# 使用内存中的 SQLite 数据库进行测试
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# --- Pytest Fixtures ---
@pytest.fixture(scope="function")
def db_session():
    """
    为每个测试函数创建一个新的数据库会话和干净的表。
    """
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)

@pytest.fixture(scope="function")
def client(db_session):
    """
    创建一个 TestClient，并覆盖 get_db 依赖以使用测试数据库会话。
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            db_session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()

@pytest.fixture
def admin_headers():
    return dict(ADMIN_HEADERS)

@pytest.fixture
def spots(db_session):
    """一组常用车位：普通 RM5、紧凑 RM2、残障 RM5、预约 RM10。"""
    catalog = SQLAlchemySpotCatalog(db_session)
    for spot in (
        ParkingSpot(spot_id="R-01", spot_type=SpotType.REGULAR, hourly_rate="5.00"),
        ParkingSpot(spot_id="C-01", spot_type=SpotType.COMPACT, hourly_rate="2.00"),
        ParkingSpot(spot_id="H-01", spot_type=SpotType.HANDICAPPED, hourly_rate="5.00"),
        ParkingSpot(spot_id="V-01", spot_type=SpotType.RESERVED, hourly_rate="10.00"),
        ParkingSpot(spot_id="V-02", spot_type=SpotType.RESERVED, hourly_rate="10.00"),
    ):
        catalog.add(spot)
    db_session.commit()
    return catalog

@pytest.fixture
def file_sessions(tmp_path):
    """文件型 SQLite，每个请求使用独立会话，用于并发请求测试。"""
    file_engine = create_engine(
        f"sqlite:///{tmp_path / 'parking.db'}",
        connect_args={"check_same_thread": False, "timeout": 10},
    )
    Base.metadata.create_all(bind=file_engine)
    Sessions = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)

    db = Sessions()
    catalog = SQLAlchemySpotCatalog(db)
    catalog.add(ParkingSpot(spot_id="R-01", spot_type=SpotType.REGULAR, hourly_rate="5.00"))
    catalog.add(ParkingSpot(spot_id="V-01", spot_type=SpotType.RESERVED, hourly_rate="10.00"))
    db.commit()
    db.close()

    def override_get_db():
        session = Sessions()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield Sessions
    app.dependency_overrides.clear()
    file_engine.dispose()

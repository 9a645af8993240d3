from decimal import Decimal
from sqlalchemy import text

from core.database import engine, Base, SessionLocal
from core.enums import SpotType
from core.log import logger
from parking.schemas import ParkingSpot
from parking.stores import SQLAlchemySpotCatalog

# Import models to ensure tables are registered in metadata
from parking import models as parking_models  # noqa: F401

# 示例车位：每层若干普通/紧凑/残障/预约车位
DEMO_SPOTS = [
    ("F1-R01", SpotType.REGULAR, None),
    ("F1-R02", SpotType.REGULAR, None),
    ("F1-C01", SpotType.COMPACT, None),
    ("F1-H01", SpotType.HANDICAPPED, Decimal("5.00")),
    ("F1-V01", SpotType.RESERVED, None),
    ("F2-R01", SpotType.REGULAR, None),
    ("F2-C01", SpotType.COMPACT, None),
    ("F2-V01", SpotType.RESERVED, None),
]

def reset_database():
    with engine.begin() as conn:
        dialect = conn.dialect.name
        if dialect == "mysql":
            conn.execute(text("SET FOREIGN_KEY_CHECKS=0"))
        Base.metadata.drop_all(bind=engine)
        Base.metadata.create_all(bind=engine)
        if dialect == "mysql":
            conn.execute(text("SET FOREIGN_KEY_CHECKS=1"))

def seed_spots():
    db = SessionLocal()
    try:
        catalog = SQLAlchemySpotCatalog(db)
        for spot_id, spot_type, rate in DEMO_SPOTS:
            catalog.add(ParkingSpot(spot_id=spot_id, spot_type=spot_type, hourly_rate=rate))
        db.commit()
    finally:
        db.close()

if __name__ == "__main__":
    reset_database()
    seed_spots()
    logger.info(f"database recreated with {len(DEMO_SPOTS)} spots")

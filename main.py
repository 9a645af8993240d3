# main.py
from fastapi import FastAPI
import os
from fastapi.middleware.cors import CORSMiddleware

from core.log import logger
from core.database import init_db
from parking.routers import router as parking_router

init_db()

app = FastAPI(
    title="停车收费结算 API",
    description="停车费计算、罚款、预约与离场结算的 API。",
    version="1.0.0",
    contact={
        "name": "API Support",
        "email": "support@example.com",
    },
)

origins_env = os.getenv("CORS_ALLOW_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173")
allow_origins = [o.strip() for o in origins_env.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

api_prefix = "/api/v1"
app.include_router(parking_router, prefix=api_prefix)
logger.info(f"parking API mounted at {api_prefix}")


@app.get("/", tags=["Root"])
def read_root():
    return {"message": "欢迎使用停车收费结算 API"}

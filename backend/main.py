from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import settings
from database import init_db
from cash_call_api import router as cash_call_router, cash_call_error_handler
from affiliate_api import router as affiliate_router
from cash_call_errors import CashCallError

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Cash call engine started")
    yield


app = FastAPI(title="Cash Call Management API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(CashCallError, cash_call_error_handler)
app.include_router(cash_call_router)
app.include_router(affiliate_router)


@app.get("/")
def read_root():
    return {"message": "Cash Call Management API is running"}


@app.get("/health")
def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import os
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), log_level=settings.LOG_LEVEL.lower())

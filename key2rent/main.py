import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from key2rent import config
from key2rent.admin import router as admin_router
from key2rent.callback import router as callback_router
from key2rent.database import Base, engine
from key2rent.errors import Key2RentError
from key2rent.routes import router

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Key-2-Rent Payments")

app.include_router(router)
app.include_router(callback_router)
app.include_router(admin_router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(Key2RentError)
async def key2rent_error_handler(request: Request, exc: Key2RentError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    body = {"error": exc.message}
    if exc.code is not None:
        body["code"] = exc.code
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})

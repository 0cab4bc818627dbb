import asyncio

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from igsp_hub import models
from igsp_hub.config import settings
from igsp_hub.database import SessionLocal, engine, get_db
from igsp_hub.dispatcher import build_dispatcher
from igsp_hub.errors import HubError
from igsp_hub.helpers import serialize_transaction
from igsp_hub.logging_config import get_logger
from igsp_hub.scheduler import background_expiry_worker, run_expiry
from igsp_hub.schemas.hooks import (
    ErrorResponse,
    SessionCreatedResponse,
    TransactionResponse,
)
from igsp_hub.security import require_admin_token


logger = get_logger(__name__)

models.Base.metadata.create_all(bind=engine)
app = FastAPI(title="iGSP Hub")

dispatcher = build_dispatcher(SessionLocal, settings)

@app.on_event("startup")
async def startup_event():
    if settings.expiry_sweep_interval_seconds > 0:
        logger.info("Starting expiry sweeper every %ss", settings.expiry_sweep_interval_seconds)
        loop = asyncio.get_event_loop()
        loop.create_task(
            background_expiry_worker(dispatcher.registry, dispatcher.ledger, settings.expiry_sweep_interval_seconds)
        )

@app.exception_handler(HubError)
async def hub_error_handler(_request: Request, exc: HubError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())

@app.post(
    "/hooks",
    responses={
        200: {"model": TransactionResponse, "description": "bet/win/refund; balance returns only balance"},
        201: {"model": SessionCreatedResponse},
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def hooks(request: Request):
    # signatures cover the bytes as sent, so read them before anything parses the body
    raw_body = await request.body()
    result = await run_in_threadpool(dispatcher.handle, request.headers, raw_body)
    return JSONResponse(status_code=result.status_code, content=result.body)

@app.get("/sessions/{session_id}")
async def get_session(session_id: str, _auth=Depends(require_admin_token)):
    return await run_in_threadpool(dispatcher.registry.get, session_id)

@app.post("/sessions/{session_id}/close")
async def close_session(session_id: str, _auth=Depends(require_admin_token)):
    return await run_in_threadpool(dispatcher.registry.close, session_id)

@app.get("/transactions/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    _auth=Depends(require_admin_token),
    db: Session = Depends(get_db),
):
    record = db.query(models.Transaction).filter_by(transaction_id=transaction_id).first()
    if not record:
        raise HTTPException(status_code=404, detail="transaction not found")
    return serialize_transaction(record)

@app.post("/admin/expire")
async def expire_now(_auth=Depends(require_admin_token)):
    """
    Run one expiry sweep: idle sessions expire, abandoned round holds are released.
    """
    return await run_in_threadpool(run_expiry, dispatcher.registry, dispatcher.ledger)

@app.get("/swagger", include_in_schema=False)
async def swagger_ui():
    return get_swagger_ui_html(openapi_url=str(app.openapi_url), title="iGSP Hub - Swagger UI")

@app.get("/health")
async def health():
    return {"status": "ok"}

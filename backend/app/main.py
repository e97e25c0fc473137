from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError

from app.api.routes.files import router as files_router
from app.api.routes.keys import router as keys_router
from app.api.routes.public import router as public_router
from app.api.routes.transfers import router as transfers_router
from app.api.routes.two_factor import router as two_factor_router
from app.api.routes.webhooks import router as webhooks_router
from app.core.config import settings
from app.core.errors import CredentialError, credential_error_handler, validation_error_handler
from app.core.logging import configure_logging
from app.crypto.selftest import run_selftest
from app.db.init_db import init_db


configure_logging(settings)

app = FastAPI(title="FlyFile Credentials", version="0.1.0")

app.add_exception_handler(CredentialError, credential_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)

app.include_router(two_factor_router)
app.include_router(keys_router)
app.include_router(webhooks_router)
app.include_router(transfers_router)
app.include_router(files_router)
app.include_router(public_router)


@app.on_event("startup")
def _startup() -> None:
    run_selftest()
    init_db()


@app.get("/health")
def health():
    return {"status": "ok"}

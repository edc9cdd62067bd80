# api_server.py
import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import abastecimentos
import admin
import auth
import cadastros
import comboio
import database
import diario_bordo
import financeiro
import manutencao
import solicitacoes
import supervisor
import veiculos


# =========================================================
# CONFIG
# =========================================================
logging.basicConfig(
    level=os.environ.get("FROTA_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _cors_origins_from_env() -> List[str]:
    raw = os.environ.get("FROTA_CORS_ORIGINS", "").strip()
    if raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    # Defaults para desenvolvimento local (front web / app)
    return [
        "http://127.0.0.1:3000",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://localhost:5173",
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ]


CORS_ORIGINS = _cors_origins_from_env()
CORS_ALLOW_CREDENTIALS = os.environ.get("FROTA_CORS_ALLOW_CREDENTIALS", "0").strip() in ("1", "true", "TRUE")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        database.ensure_tables()
        logger.info("Banco pronto em %s", database.DB_PATH)
    except Exception:
        logging.exception("Falha ao preparar o banco no startup")
        raise
    yield


app = FastAPI(title="Frota Obras API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(sqlite3.IntegrityError)
async def integrity_error_handler(request: Request, exc: sqlite3.IntegrityError):
    logger.warning("Violacao de integridade em %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=409, content={"detail": f"Conflito de dados: {exc}"})


# =========================================================
# ENDPOINTS BASICOS
# =========================================================
@app.get("/")
def root():
    return {"message": "Frota Obras API no ar."}


@app.get("/ping")
def ping():
    return {"ok": True, "db": database.DB_PATH}


for modulo in (
    auth,
    admin,
    veiculos,
    cadastros,
    comboio,
    abastecimentos,
    solicitacoes,
    manutencao,
    financeiro,
    supervisor,
    diario_bordo,
):
    app.include_router(modulo.router, prefix="/api")

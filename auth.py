import base64
import hashlib
import hmac
import json
import logging
import os
import sqlite3
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from database import get_conn

logger = logging.getLogger(__name__)

SECRET_KEY = os.environ.get("FROTA_SECRET")
if not SECRET_KEY:
    raise RuntimeError("FROTA_SECRET nao definido. Configure a variavel de ambiente para iniciar a API.")
TOKEN_TTL_SECONDS = int(os.environ.get("FROTA_TOKEN_TTL_SECONDS") or 60 * 60 * 24 * 7)  # 7 dias

ROLES = ("admin", "gestor", "operador")
ROLES_GESTAO = ("admin", "gestor")

security = HTTPBearer()

router = APIRouter(tags=["auth"])


# =========================================================
# SENHAS (PBKDF2)
# =========================================================
PBKDF2_ITERATIONS = 200_000


def hash_password_pbkdf2(password: str, *, iterations: int = PBKDF2_ITERATIONS) -> str:
    password = str(password or "")
    if password == "":
        raise ValueError("Senha vazia.")
    salt = os.urandom(16)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations, dklen=32)
    return "pbkdf2_sha256${}${}${}".format(
        iterations,
        base64.b64encode(salt).decode("ascii"),
        base64.b64encode(dk).decode("ascii"),
    )


def verify_password_pbkdf2(password: str, stored: str) -> bool:
    password = str(password or "")
    stored = str(stored or "")
    if not stored.startswith("pbkdf2_sha256$"):
        return False
    try:
        _, iters_s, salt_b64, hash_b64 = stored.split("$", 3)
        iterations = int(iters_s)
        salt = base64.b64decode(salt_b64.encode("ascii"))
        expected = base64.b64decode(hash_b64.encode("ascii"))
    except (ValueError, TypeError):
        return False

    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations, dklen=len(expected))
    return hmac.compare_digest(dk, expected)


def authenticate_user(cur: sqlite3.Cursor, email: str, senha: str) -> Optional[sqlite3.Row]:
    cur.execute("SELECT * FROM users WHERE LOWER(TRIM(email))=? LIMIT 1", (email,))
    row = cur.fetchone()
    if not row:
        return None

    senha_db = row["password"] or ""
    if str(senha_db).startswith("pbkdf2_sha256$"):
        if not verify_password_pbkdf2(senha, senha_db):
            return None
    else:
        # senha legada em texto puro: aceita uma vez e migra para hash
        if str(senha_db).strip() != senha:
            return None
        cur.execute("UPDATE users SET password=? WHERE id=?", (hash_password_pbkdf2(senha), row["id"]))
        logger.info("Senha legada do usuario %s migrada para PBKDF2", row["id"])

    return row


# =========================================================
# TOKEN HELPERS (HMAC + base64 urlsafe)
# =========================================================
def _b64e(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("utf-8").rstrip("=")


def _b64d(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("utf-8"))


def _sign(payload_bytes: bytes) -> bytes:
    return hmac.new(SECRET_KEY.encode("utf-8"), payload_bytes, hashlib.sha256).digest()


def create_token(user: Dict[str, Any]) -> str:
    payload = {
        "id": int(user["id"]),
        "email": user["email"],
        "role": user["role"],
        "exp": int(time.time()) + TOKEN_TTL_SECONDS,
    }
    payload_bytes = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return f"{_b64e(payload_bytes)}.{_b64e(_sign(payload_bytes))}"


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    parts = (token or "").split(".")
    if len(parts) != 2:
        return None
    try:
        payload_bytes = _b64d(parts[0])
        sig_bytes = _b64d(parts[1])
    except (ValueError, TypeError):
        return None

    if not hmac.compare_digest(sig_bytes, _sign(payload_bytes)):
        return None

    try:
        payload = json.loads(payload_bytes.decode("utf-8"))
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None

    if time.time() > int(payload.get("exp", 0)):
        return None
    if not payload.get("id"):
        return None
    return payload


# =========================================================
# DEPENDENCIES
# =========================================================
def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Dict[str, Any]:
    data = verify_token(credentials.credentials)
    if not data:
        raise HTTPException(status_code=401, detail="Token inválido ou expirado.")

    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            "SELECT id, email, role, name, employee_id FROM users WHERE id=?",
            (int(data["id"]),),
        )
        u = cur.fetchone()
        if not u:
            raise HTTPException(status_code=401, detail="Usuário não encontrado.")

    return {
        "id": u["id"],
        "email": u["email"],
        "role": u["role"] or "operador",
        "name": u["name"],
        "employee_id": u["employee_id"],
    }


def require_roles(*roles: str):
    def _dep(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if user["role"] not in roles:
            raise HTTPException(status_code=403, detail="Permissão insuficiente para esta operação.")
        return user

    return _dep


def user_stamp(user: Dict[str, Any]) -> Dict[str, Any]:
    """Carimbo de auditoria gravado nas colunas created_by/edited_by."""
    return {"id": user["id"], "name": user.get("name") or user.get("email")}


# =========================================================
# SCHEMAS (Pydantic)
# =========================================================
class LoginIn(BaseModel):
    email: str
    password: str


class RegisterIn(BaseModel):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=4)
    name: Optional[str] = None
    phone: Optional[str] = None


class ValidatePasswordIn(BaseModel):
    password: str


def _public_user(row: sqlite3.Row) -> Dict[str, Any]:
    return {"id": row["id"], "email": row["email"], "role": row["role"], "name": row["name"]}


# =========================================================
# ENDPOINTS
# =========================================================
@router.post("/auth/login")
def login(payload: LoginIn):
    email = (payload.email or "").strip().lower()
    senha = payload.password or ""
    if not email or not senha:
        raise HTTPException(status_code=400, detail="Email e senha são obrigatórios.")

    with get_conn() as conn:
        cur = conn.cursor()
        u = authenticate_user(cur, email, senha)

    if not u:
        raise HTTPException(status_code=401, detail="Credenciais inválidas")

    return {"token": create_token(dict(u)), "user": _public_user(u)}


@router.post("/auth/register", status_code=201)
def register(payload: RegisterIn):
    email = payload.email.strip().lower()
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT id FROM users WHERE LOWER(email)=?", (email,))
        if cur.fetchone():
            raise HTTPException(status_code=409, detail="Este email já está registrado.")
        cur.execute(
            "INSERT INTO users (email, password, role, name, phone) VALUES (?, ?, 'operador', ?, ?)",
            (email, hash_password_pbkdf2(payload.password), payload.name, payload.phone),
        )
        user_id = cur.lastrowid
    logger.info("Usuario %s registrado (id=%s)", email, user_id)
    return {"message": "Usuário registrado com sucesso!", "id": user_id}


@router.post("/auth/validate-password")
def validate_password(payload: ValidatePasswordIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT password FROM users WHERE id=?", (user["id"],))
        row = cur.fetchone()
    if not row or not verify_password_pbkdf2(payload.password, row["password"]):
        raise HTTPException(status_code=401, detail="Senha incorreta.")
    return {"valid": True}


@router.get("/auth/me")
def me(user=Depends(get_current_user)):
    return {"id": user["id"], "email": user["email"], "role": user["role"], "name": user["name"]}


@router.get("/users/profile")
def profile(user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT id, email, role, name, phone, employee_id, can_access_refueling
            FROM users
            WHERE id=?
            """,
            (user["id"],),
        )
        row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Perfil do utilizador não encontrado.")
    return {
        "id": row["id"],
        "email": row["email"],
        "role": row["role"],
        "name": row["name"],
        "phone": row["phone"],
        "employee_id": row["employee_id"],
        "canAccessRefueling": int(row["can_access_refueling"] or 0) == 1,
    }

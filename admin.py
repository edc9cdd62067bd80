import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, Field

from auth import ROLES, ROLES_GESTAO, get_current_user, hash_password_pbkdf2, require_roles
from database import fetch_by_id, get_conn, row_to_dict
from regras import now_iso

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"])


# =========================================================
# SCHEMAS (Pydantic)
# =========================================================
class RegistrationRequestIn(BaseModel):
    email: str = Field(..., min_length=3)
    name: Optional[str] = None
    phone: Optional[str] = None
    message: Optional[str] = None


class ApproveRequestIn(BaseModel):
    requestId: int
    role: Optional[str] = None
    password: str = Field(..., min_length=4)


class AssignRoleIn(BaseModel):
    email: str
    role: str


class UpdateMessageIn(BaseModel):
    message: str = ""
    showPopup: bool = False


class CounterIn(BaseModel):
    last_number: int = Field(..., ge=0)


def _check_role(role: str):
    if role not in ROLES:
        raise HTTPException(status_code=400, detail=f"Papel inválido: {role}. Use um de {', '.join(ROLES)}.")


# =========================================================
# SOLICITACOES DE CADASTRO
# =========================================================
@router.post("/registrationRequests", status_code=201)
def criar_solicitacao_cadastro(payload: RegistrationRequestIn):
    email = payload.email.strip().lower()
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO registration_requests (email, name, phone, message, requested_at) VALUES (?, ?, ?, ?, ?)",
            (email, payload.name, payload.phone, payload.message, now_iso()),
        )
        req_id = cur.lastrowid
    logger.info("Solicitacao de cadastro %s recebida (%s)", req_id, email)
    return {"id": req_id, "email": email}


@router.get("/registrationRequests")
def listar_solicitacoes_cadastro(user=Depends(require_roles(*ROLES_GESTAO))):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM registration_requests ORDER BY id")
        return [row_to_dict(r) for r in cur.fetchall()]


@router.delete("/registrationRequests/{req_id}", status_code=204)
@router.delete("/admin/registration-requests/{req_id}", status_code=204)
def excluir_solicitacao_cadastro(req_id: int, user=Depends(require_roles(*ROLES_GESTAO))):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM registration_requests WHERE id=?", (req_id,))
        if cur.rowcount == 0:
            raise HTTPException(status_code=404, detail="Solicitação não encontrada.")
    return Response(status_code=204)


@router.get("/admin/registration-requests")
def listar_pendentes(user=Depends(require_roles(*ROLES_GESTAO))):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM registration_requests ORDER BY requested_at DESC, id DESC")
        return [row_to_dict(r) for r in cur.fetchall()]


@router.post("/admin/registration-requests/approve")
def aprovar_solicitacao(payload: ApproveRequestIn, user=Depends(require_roles("admin"))):
    role = payload.role or "operador"
    _check_role(role)

    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        pedido = fetch_by_id(cur, "registration_requests", payload.requestId)
        if not pedido:
            raise HTTPException(status_code=404, detail="Solicitação não encontrada.")

        cur.execute("SELECT id FROM users WHERE LOWER(email)=?", (pedido["email"].lower(),))
        if cur.fetchone():
            raise HTTPException(status_code=409, detail="Já existe um usuário com este email.")

        cur.execute(
            "INSERT INTO users (email, password, role, name, phone) VALUES (?, ?, ?, ?, ?)",
            (pedido["email"], hash_password_pbkdf2(payload.password), role, pedido["name"], pedido["phone"]),
        )
        user_id = cur.lastrowid
        cur.execute("DELETE FROM registration_requests WHERE id=?", (payload.requestId,))

    logger.info("Solicitacao %s aprovada: usuario %s (%s)", payload.requestId, user_id, role)
    return {"message": "Solicitação aprovada e usuário criado com sucesso.", "id": user_id}


# =========================================================
# USUARIOS
# =========================================================
@router.put("/admin/assign-role")
def atribuir_papel(payload: AssignRoleIn, user=Depends(require_roles("admin"))):
    _check_role(payload.role)
    email = payload.email.strip().lower()
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("UPDATE users SET role=? WHERE LOWER(email)=?", (payload.role, email))
        if cur.rowcount == 0:
            raise HTTPException(status_code=404, detail="Usuário não encontrado.")
    logger.info("Papel %s atribuido a %s", payload.role, email)
    return {"message": f"Papel de {payload.role} atribuído com sucesso ao usuário {email}."}


@router.put("/admin/users/{user_id}/desbloquear")
def desbloquear_usuario(user_id: int, user=Depends(require_roles(*ROLES_GESTAO))):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            "UPDATE users SET bloqueado_abastecimento=0, tentativas_falhas_abastecimento=0 WHERE id=?",
            (user_id,),
        )
        if cur.rowcount == 0:
            raise HTTPException(status_code=404, detail="Usuário não encontrado.")
    logger.info("Usuario %s desbloqueado por %s", user_id, user["id"])
    return {"message": "Usuário desbloqueado."}


# =========================================================
# AVISOS DO SISTEMA
# =========================================================
def _update_out(row) -> dict:
    data = row_to_dict(row)
    data["show_popup"] = bool(data.get("show_popup"))
    return data


@router.get("/admin/update-message")
def obter_aviso(user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM updates WHERE is_current=1 ORDER BY id DESC LIMIT 1")
        row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Nenhuma mensagem de atualização encontrada.")
    return _update_out(row)


@router.put("/admin/update-message")
def salvar_aviso(payload: UpdateMessageIn, user=Depends(require_roles(*ROLES_GESTAO))):
    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        cur.execute("SELECT id FROM updates WHERE is_current=1 ORDER BY id DESC LIMIT 1")
        atual = cur.fetchone()
        if atual:
            cur.execute(
                "UPDATE updates SET message=?, show_popup=?, timestamp=? WHERE id=?",
                (payload.message, 1 if payload.showPopup else 0, now_iso(), atual["id"]),
            )
        else:
            cur.execute(
                "INSERT INTO updates (message, show_popup, is_current, timestamp) VALUES (?, ?, 1, ?)",
                (payload.message, 1 if payload.showPopup else 0, now_iso()),
            )
    return {"message": "Mensagem de atualização salva com sucesso."}


@router.get("/updates")
def listar_avisos(user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM updates ORDER BY timestamp DESC, id DESC")
        return [_update_out(r) for r in cur.fetchall()]


@router.post("/updates", status_code=201)
def criar_aviso(payload: UpdateMessageIn, user=Depends(require_roles(*ROLES_GESTAO))):
    if not payload.message.strip():
        raise HTTPException(status_code=400, detail="A mensagem é obrigatória.")
    ts = now_iso()
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO updates (message, show_popup, is_current, timestamp) VALUES (?, ?, 0, ?)",
            (payload.message, 1 if payload.showPopup else 0, ts),
        )
        update_id = cur.lastrowid
    return {"id": update_id, "message": payload.message, "show_popup": payload.showPopup, "timestamp": ts}


@router.delete("/updates/{update_id}", status_code=204)
def excluir_aviso(update_id: int, user=Depends(require_roles(*ROLES_GESTAO))):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM updates WHERE id=?", (update_id,))
        if cur.rowcount == 0:
            raise HTTPException(status_code=404, detail="Atualização não encontrada.")
    return Response(status_code=204)


# =========================================================
# CONTADORES
# =========================================================
@router.get("/counters/{name}")
def obter_contador(name: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT name, last_number FROM counters WHERE name=?", (name,))
        row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Contador não encontrado")
    return row_to_dict(row)


@router.put("/counters/{name}")
def atualizar_contador(name: str, payload: CounterIn, user=Depends(require_roles(*ROLES_GESTAO))):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("UPDATE counters SET last_number=? WHERE name=?", (payload.last_number, name))
        if cur.rowcount == 0:
            raise HTTPException(status_code=404, detail="Contador não encontrado")
    logger.info("Contador %s ajustado para %s", name, payload.last_number)
    return {"message": "Contador atualizado com sucesso"}

"""
Solicitacoes de abastecimento feitas pelo app do motorista.

Fluxo:
    PENDENTE -> LIBERADO (gera autorizacao Aberta) | NEGADO
    LIBERADO -> AGUARDANDO_BAIXA (motorista envia o cupom)
    AGUARDANDO_BAIXA -> CONCLUIDO | LIBERADO (cupom rejeitado)
"""
import logging
import os
import sqlite3
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from abastecimentos import criar_ordem_abastecimento
from auth import ROLES_GESTAO, get_current_user, require_roles
from database import fetch_by_id, get_conn, insert_row, parse_json_safe, row_to_dict
from financeiro import CATEGORIA_COMBUSTIVEL
from regras import (
    MAX_TENTATIVAS_LEITURA,
    as_flag,
    check_budget_limit,
    estimate_request_cost,
    normalize_fuel_type,
    now_iso,
    safe_num,
)
from veiculos import check_vehicle_readings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["solicitacoes"])

PRECO_ESTIMADO_LITRO = float(os.environ.get("FROTA_PRECO_ESTIMADO_LITRO") or 6.50)

PENDENTE = "PENDENTE"
LIBERADO = "LIBERADO"
NEGADO = "NEGADO"
AGUARDANDO_BAIXA = "AGUARDANDO_BAIXA"
CONCLUIDO = "CONCLUIDO"

STATUS_EM_ABERTO = (PENDENTE, LIBERADO, AGUARDANDO_BAIXA)
_PH_EM_ABERTO = ", ".join("?" for _ in STATUS_EM_ABERTO)

TRANSICOES = {
    PENDENTE: (LIBERADO, NEGADO),
    LIBERADO: (AGUARDANDO_BAIXA,),
    AGUARDANDO_BAIXA: (CONCLUIDO, LIBERADO),
}

SELECT_COM_NOMES = """
    SELECT s.*,
           v.placa, v.registro_interno AS veiculo_nome,
           o.nome AS obra_nome,
           p.razao_social AS posto_nome,
           u.name AS solicitante_nome
    FROM solicitacoes_abastecimento s
    LEFT JOIN vehicles v ON s.veiculo_id = v.id
    LEFT JOIN obras o ON s.obra_id = o.id
    LEFT JOIN partners p ON s.posto_id = p.id
    LEFT JOIN users u ON s.usuario_id = u.id
"""


# =========================================================
# SCHEMAS (Pydantic)
# =========================================================
class SolicitacaoIn(BaseModel):
    veiculo_id: int
    obra_id: Optional[int] = None
    posto_id: Optional[int] = None
    funcionario_id: Optional[int] = None
    tipo_combustivel: Optional[str] = None
    litragem: Optional[float] = Field(default=0, ge=0)
    flag_tanque_cheio: Any = False
    flag_outros: Any = False
    descricao_outros: Optional[str] = None
    horimetro: Optional[float] = None
    odometro: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    observacao: Optional[str] = None
    data_abastecimento: Optional[str] = None
    foto_painel_path: Optional[str] = None


class AvaliacaoIn(BaseModel):
    status: Literal["LIBERADO", "NEGADO"]
    motivo_negativa: Optional[str] = None


class ComprovanteIn(BaseModel):
    foto_cupom_path: str = Field(..., min_length=1)


# =========================================================
# HELPERS
# =========================================================
def _get_solicitacao_or_404(cur: sqlite3.Cursor, sol_id: int) -> sqlite3.Row:
    row = fetch_by_id(cur, "solicitacoes_abastecimento", sol_id)
    if not row:
        raise HTTPException(status_code=404, detail="Solicitação não encontrada")
    return row


def _checar_transicao(sol: sqlite3.Row, novo_status: str, origem: Optional[str] = None):
    atual = sol["status"]
    if (origem and atual != origem) or novo_status not in TRANSICOES.get(atual, ()):
        raise HTTPException(
            status_code=409,
            detail=f"Transição inválida: {atual} -> {novo_status}.",
        )


def _gasto_combustivel_obra(cur: sqlite3.Cursor, obra_id: Any) -> float:
    cur.execute(
        "SELECT COALESCE(SUM(amount), 0) AS total FROM expenses WHERE obra_id=? AND category=?",
        (obra_id, CATEGORIA_COMBUSTIVEL),
    )
    return safe_num(cur.fetchone()["total"])


# =========================================================
# APP DO MOTORISTA
# =========================================================
@router.get("/solicitacoes/contexto")
def contexto(user=Depends(get_current_user)):
    """Obra, veiculos e colegas da alocacao atual do funcionario ligado ao usuario."""
    vazio: Dict[str, Any] = {"obra": None, "veiculos": [], "funcionarios": [], "postos": []}

    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT id, razao_social, nome_fantasia FROM partners ORDER BY razao_social")
        vazio["postos"] = [row_to_dict(r) for r in cur.fetchall()]

        if not user.get("employee_id"):
            return vazio
        employee = fetch_by_id(cur, "employees", user["employee_id"])
        alocado = parse_json_safe(employee["alocado_em"], "alocado_em") if employee else None
        obra_id = (alocado or {}).get("obraId")
        if not obra_id:
            return vazio

        obra = fetch_by_id(cur, "obras", obra_id)
        if not obra:
            return vazio

        cur.execute(
            """
            SELECT v.id, v.placa, v.registro_interno, v.modelo, v.tipo, v.odometro, v.horimetro
            FROM obras_historico_veiculos h
            JOIN vehicles v ON v.id = h.vehicle_id
            WHERE h.obra_id=? AND h.data_saida IS NULL
            ORDER BY v.registro_interno
            """,
            (obra_id,),
        )
        veiculos = [row_to_dict(r) for r in cur.fetchall()]

        cur.execute("SELECT id, name, alocado_em FROM employees ORDER BY name")
        funcionarios = []
        for r in cur.fetchall():
            aloc = parse_json_safe(r["alocado_em"], "alocado_em") or {}
            if isinstance(aloc, dict) and aloc.get("obraId") == obra_id:
                funcionarios.append({"id": r["id"], "name": r["name"]})

    return {
        "obra": {"id": obra["id"], "nome": obra["nome"]},
        "veiculos": veiculos,
        "funcionarios": funcionarios,
        "postos": vazio["postos"],
    }


@router.get("/solicitacoes/meus-status")
def meus_status(user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            "SELECT bloqueado_abastecimento, tentativas_falhas_abastecimento FROM users WHERE id=?",
            (user["id"],),
        )
        row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Usuário não encontrado")
    return {
        "bloqueado_abastecimento": int(row["bloqueado_abastecimento"] or 0),
        "tentativas_falhas_abastecimento": int(row["tentativas_falhas_abastecimento"] or 0),
    }


@router.post("/solicitacoes", status_code=201)
def criar_solicitacao(payload: SolicitacaoIn, user=Depends(get_current_user)):
    erro_leitura: Optional[str] = None
    sol_id = None

    with get_conn(immediate=True) as conn:
        cur = conn.cursor()

        veiculo = fetch_by_id(cur, "vehicles", payload.veiculo_id)
        if not veiculo:
            raise HTTPException(status_code=404, detail="Veículo não encontrado.")

        cur.execute(
            f"""
            SELECT id FROM solicitacoes_abastecimento
            WHERE veiculo_id=? AND status IN ({_PH_EM_ABERTO})
            LIMIT 1
            """,
            (payload.veiculo_id, *STATUS_EM_ABERTO),
        )
        if cur.fetchone():
            raise HTTPException(
                status_code=400,
                detail="Já existe uma solicitação em andamento para este veículo. "
                "Finalize a anterior antes de abrir uma nova.",
            )

        cur.execute(
            "SELECT bloqueado_abastecimento, tentativas_falhas_abastecimento FROM users WHERE id=?",
            (user["id"],),
        )
        u = cur.fetchone()
        if not u or int(u["bloqueado_abastecimento"] or 0) == 1:
            raise HTTPException(status_code=403, detail="USUÁRIO BLOQUEADO. Contate o administrador.")

        erro = check_vehicle_readings(veiculo, payload.odometro, payload.horimetro)
        if erro:
            # a tentativa falha precisa ficar gravada: commit e erro fora do bloco
            tentativas = int(u["tentativas_falhas_abastecimento"] or 0) + 1
            bloquear = 1 if tentativas >= MAX_TENTATIVAS_LEITURA else 0
            cur.execute(
                "UPDATE users SET tentativas_falhas_abastecimento=?, bloqueado_abastecimento=? WHERE id=?",
                (tentativas, bloquear, user["id"]),
            )
            erro_leitura = f"Erro de Leitura: {erro} (Tentativa {tentativas}/{MAX_TENTATIVAS_LEITURA})."
            if bloquear:
                logger.warning("Usuario %s bloqueado apos %d leituras invalidas", user["id"], tentativas)
        else:
            cur.execute("UPDATE users SET tentativas_falhas_abastecimento=0 WHERE id=?", (user["id"],))

            tanque_cheio = as_flag(payload.flag_tanque_cheio)
            if payload.obra_id:
                obra = fetch_by_id(cur, "obras", payload.obra_id)
                if obra:
                    estimativa = estimate_request_cost(payload.litragem, tanque_cheio, PRECO_ESTIMADO_LITRO)
                    gasto = _gasto_combustivel_obra(cur, payload.obra_id)
                    if not check_budget_limit(gasto, estimativa, obra["valor_contrato"]):
                        raise HTTPException(status_code=400, detail="Limite orçamentário (20%) excedido.")

            observacao = payload.observacao or ""
            outros = as_flag(payload.flag_outros)
            if outros and payload.descricao_outros:
                observacao = f"[Item: {payload.descricao_outros}] {observacao}".strip()

            sol_id = insert_row(
                cur,
                "solicitacoes_abastecimento",
                {
                    "usuario_id": user["id"],
                    "veiculo_id": payload.veiculo_id,
                    "obra_id": payload.obra_id,
                    "posto_id": payload.posto_id,
                    "funcionario_id": payload.funcionario_id,
                    "tipo_combustivel": normalize_fuel_type(payload.tipo_combustivel),
                    "litragem_solicitada": safe_num(payload.litragem),
                    "flag_tanque_cheio": 1 if tanque_cheio else 0,
                    "flag_outros": 1 if outros else 0,
                    "horimetro_informado": safe_num(payload.horimetro) or None,
                    "odometro_informado": safe_num(payload.odometro) or None,
                    "foto_painel_path": payload.foto_painel_path,
                    "geo_latitude": payload.latitude,
                    "geo_longitude": payload.longitude,
                    "observacao": observacao or None,
                    "status": PENDENTE,
                    "data_solicitacao": payload.data_abastecimento or now_iso(),
                },
            )

    if erro_leitura:
        raise HTTPException(status_code=400, detail=erro_leitura)

    logger.info("Solicitacao %s criada pelo usuario %s (veiculo %s)", sol_id, user["id"], payload.veiculo_id)
    return {"message": "Solicitação enviada!", "id": sol_id}


@router.get("/solicitacoes/minhas")
def minhas_solicitacoes(user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            SELECT_COM_NOMES + " WHERE s.usuario_id=? ORDER BY s.data_solicitacao DESC, s.id DESC LIMIT 50",
            (user["id"],),
        )
        return [row_to_dict(r) for r in cur.fetchall()]


@router.put("/solicitacoes/{sol_id}/comprovante")
def enviar_comprovante(sol_id: int, payload: ComprovanteIn, user=Depends(get_current_user)):
    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        sol = _get_solicitacao_or_404(cur, sol_id)
        if sol["usuario_id"] != user["id"]:
            raise HTTPException(status_code=403, detail="Somente o solicitante pode enviar o comprovante.")
        _checar_transicao(sol, AGUARDANDO_BAIXA)
        cur.execute(
            "UPDATE solicitacoes_abastecimento SET status=?, foto_cupom_path=? WHERE id=?",
            (AGUARDANDO_BAIXA, payload.foto_cupom_path, sol_id),
        )
    return {"message": "Comprovante enviado."}


# =========================================================
# GESTAO
# =========================================================
@router.get("/solicitacoes")
def listar_solicitacoes(user=Depends(require_roles(*ROLES_GESTAO))):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(SELECT_COM_NOMES + " ORDER BY s.data_solicitacao DESC, s.id DESC LIMIT 100")
        return [row_to_dict(r) for r in cur.fetchall()]


@router.put("/solicitacoes/{sol_id}/avaliar")
def avaliar_solicitacao(sol_id: int, payload: AvaliacaoIn, user=Depends(require_roles(*ROLES_GESTAO))):
    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        sol = _get_solicitacao_or_404(cur, sol_id)
        _checar_transicao(sol, payload.status, origem=PENDENTE)

        if payload.status == NEGADO:
            cur.execute(
                """
                UPDATE solicitacoes_abastecimento
                   SET status=?, motivo_negativa=?, aprovado_por_usuario_id=?, data_aprovacao=?
                 WHERE id=?
                """,
                (NEGADO, payload.motivo_negativa, user["id"], now_iso(), sol_id),
            )
            logger.info("Solicitacao %s negada por %s", sol_id, user["id"])
            return {"message": "Solicitação negada."}

        ordem = criar_ordem_abastecimento(
            cur,
            {
                "vehicle_id": sol["veiculo_id"],
                "partner_id": sol["posto_id"],
                "partner_name": "Posto Externo",
                "employee_id": sol["funcionario_id"],
                "obra_id": sol["obra_id"],
                "fuel_type": sol["tipo_combustivel"],
                "is_fill_up": sol["flag_tanque_cheio"],
                "litros_liberados": safe_num(sol["litragem_solicitada"]),
                "odometro": safe_num(sol["odometro_informado"]) or None,
                "horimetro": safe_num(sol["horimetro_informado"]) or None,
                "outros": sol["observacao"],
            },
            user,
        )
        cur.execute(
            """
            UPDATE solicitacoes_abastecimento
               SET status=?, aprovado_por_usuario_id=?, data_aprovacao=?, refueling_id=?
             WHERE id=?
            """,
            (LIBERADO, user["id"], now_iso(), ordem["id"], sol_id),
        )

    logger.info("Solicitacao %s liberada; autorizacao %s", sol_id, ordem["auth_number"])
    return {
        "message": "Solicitação liberada! Ordem gerada.",
        "authNumber": ordem["auth_number"],
        "refuelingId": ordem["id"],
    }


@router.put("/solicitacoes/{sol_id}/confirmar-baixa")
def confirmar_baixa(sol_id: int, user=Depends(require_roles(*ROLES_GESTAO))):
    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        sol = _get_solicitacao_or_404(cur, sol_id)
        _checar_transicao(sol, CONCLUIDO)
        cur.execute(
            "UPDATE solicitacoes_abastecimento SET status=?, data_baixa=? WHERE id=?",
            (CONCLUIDO, now_iso(), sol_id),
        )
    return {"message": "Baixa confirmada."}


@router.put("/solicitacoes/{sol_id}/rejeitar-comprovante")
def rejeitar_comprovante(sol_id: int, user=Depends(require_roles(*ROLES_GESTAO))):
    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        sol = _get_solicitacao_or_404(cur, sol_id)
        _checar_transicao(sol, LIBERADO, origem=AGUARDANDO_BAIXA)
        cur.execute(
            "UPDATE solicitacoes_abastecimento SET status=?, foto_cupom_path=NULL WHERE id=?",
            (LIBERADO, sol_id),
        )
    return {"message": "Comprovante rejeitado."}

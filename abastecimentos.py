import logging
import sqlite3
import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field

from auth import get_current_user, user_stamp
from database import fetch_by_id, get_conn, insert_row, next_counter, parse_json_safe, row_to_dict, update_row
from financeiro import apply_weekly_fuel_expense
from regras import as_flag, normalize_fuel_type, now_iso, safe_num
from veiculos import check_vehicle_readings, get_vehicle_or_404, raise_vehicle_meters

logger = logging.getLogger(__name__)

router = APIRouter(tags=["abastecimentos"])

REFUELING_JSON_FIELDS = ("created_by", "confirmed_by", "edited_by")

STATUS_ABERTA = "Aberta"
STATUS_CONCLUIDA = "Concluída"

ALERTAS_ABERTOS = ("Ativo", "Pendente")
_PH_ALERTAS_ABERTOS = ", ".join("?" for _ in ALERTAS_ABERTOS)


# =========================================================
# SCHEMAS (Pydantic)
# =========================================================
class RefuelingIn(BaseModel):
    vehicle_id: int
    partner_id: Optional[int] = None
    employee_id: Optional[int] = None
    obra_id: Optional[int] = None
    fuel_type: Optional[str] = None
    data: Optional[str] = None
    is_fill_up: bool = False
    needs_arla: bool = False
    is_fill_up_arla: bool = False
    litros_liberados: Optional[float] = Field(default=0, ge=0)
    litros_liberados_arla: Optional[float] = Field(default=0, ge=0)
    outros: Optional[str] = None
    outros_valor: Optional[float] = None
    outros_gera_valor: bool = False
    odometro: Optional[float] = None
    horimetro: Optional[float] = None


class ConfirmRefuelingIn(BaseModel):
    litros_abastecidos: float = Field(..., ge=0)
    litros_abastecidos_arla: Optional[float] = Field(default=0, ge=0)
    preco_combustivel: Optional[float] = Field(default=None, ge=0)
    preco_arla: Optional[float] = Field(default=None, ge=0)
    outros_valor: Optional[float] = None
    outros_gera_valor: Optional[bool] = None
    odometro: Optional[float] = None
    horimetro: Optional[float] = None
    data: Optional[str] = None
    pdf_url: Optional[str] = None


class RefuelingUpdateIn(BaseModel):
    partner_id: Optional[int] = None
    employee_id: Optional[int] = None
    obra_id: Optional[int] = None
    fuel_type: Optional[str] = None
    data: Optional[str] = None
    is_fill_up: Optional[bool] = None
    needs_arla: Optional[bool] = None
    is_fill_up_arla: Optional[bool] = None
    litros_liberados: Optional[float] = None
    litros_liberados_arla: Optional[float] = None
    litros_abastecidos: Optional[float] = None
    litros_abastecidos_arla: Optional[float] = None
    preco_combustivel: Optional[float] = None
    preco_arla: Optional[float] = None
    outros: Optional[str] = None
    outros_valor: Optional[float] = None
    outros_gera_valor: Optional[bool] = None
    odometro: Optional[float] = None
    horimetro: Optional[float] = None
    pdf_url: Optional[str] = None


class InactivityAlertIn(BaseModel):
    vehicle_id: Optional[int] = None
    last_refueling_date: Optional[str] = None
    status: Optional[str] = None
    observation: Optional[str] = None
    dismissed_at: Optional[str] = None


# =========================================================
# HELPERS
# =========================================================
def calcular_valor_total(r: Dict[str, Any]) -> float:
    total = safe_num(r.get("litros_abastecidos")) * safe_num(r.get("preco_combustivel"))
    total += safe_num(r.get("litros_abastecidos_arla")) * safe_num(r.get("preco_arla"))
    if as_flag(r.get("outros_gera_valor")):
        total += safe_num(r.get("outros_valor"))
    return round(total, 2)


def _partner_name_and_prices(cur: sqlite3.Cursor, partner_id: Any):
    if not partner_id:
        return None, {}
    partner = fetch_by_id(cur, "partners", partner_id)
    if not partner:
        raise HTTPException(status_code=404, detail="Parceiro não encontrado")
    precos = parse_json_safe(partner["fuel_prices"], "fuel_prices") or {}
    return partner["nome_fantasia"] or partner["razao_social"], precos if isinstance(precos, dict) else {}


def _get_refueling_or_404(cur: sqlite3.Cursor, refueling_id: str) -> Dict[str, Any]:
    row = fetch_by_id(cur, "refuelings", refueling_id)
    if not row:
        raise HTTPException(status_code=404, detail="Abastecimento não encontrado")
    return row_to_dict(row)


def criar_ordem_abastecimento(cur: sqlite3.Cursor, data: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    """
    Emite uma autorizacao de abastecimento com status Aberta.

    Usa o proximo refuelingCounter como numero da autorizacao; chamado tambem
    pela liberacao de solicitacoes do app.
    """
    get_vehicle_or_404(cur, data["vehicle_id"])
    partner_name, _ = _partner_name_and_prices(cur, data.get("partner_id"))

    row = dict(data)
    row["id"] = str(uuid.uuid4())
    row["auth_number"] = next_counter(cur, "refuelingCounter")
    row["status"] = STATUS_ABERTA
    row["fuel_type"] = normalize_fuel_type(row.get("fuel_type"))
    row["partner_name"] = partner_name or row.get("partner_name")
    row["data"] = row.get("data") or now_iso()
    row["created_by"] = user_stamp(user)
    for flag in ("is_fill_up", "needs_arla", "is_fill_up_arla", "outros_gera_valor"):
        if flag in row:
            row[flag] = 1 if as_flag(row[flag]) else 0

    insert_row(cur, "refuelings", row, REFUELING_JSON_FIELDS)
    logger.info("Autorizacao de abastecimento %s (n. %s) emitida", row["id"], row["auth_number"])
    return row


# =========================================================
# ABASTECIMENTOS
# =========================================================
@router.get("/refuelings")
def listar_abastecimentos(
    status: Optional[str] = Query(default=None),
    vehicle_id: Optional[int] = Query(default=None),
    obra_id: Optional[int] = Query(default=None),
    user=Depends(get_current_user),
):
    sql = "SELECT * FROM refuelings WHERE 1=1"
    params: List[Any] = []
    if status:
        sql += " AND status=?"
        params.append(status)
    if vehicle_id:
        sql += " AND vehicle_id=?"
        params.append(vehicle_id)
    if obra_id:
        sql += " AND obra_id=?"
        params.append(obra_id)
    sql += " ORDER BY auth_number DESC"
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(sql, tuple(params))
        return [row_to_dict(r, REFUELING_JSON_FIELDS) for r in cur.fetchall()]


@router.get("/refuelings/{refueling_id}")
def obter_abastecimento(refueling_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        row = fetch_by_id(conn.cursor(), "refuelings", refueling_id)
    if not row:
        raise HTTPException(status_code=404, detail="Abastecimento não encontrado")
    return row_to_dict(row, REFUELING_JSON_FIELDS)


@router.post("/refuelings", status_code=201)
def criar_abastecimento(payload: RefuelingIn, user=Depends(get_current_user)):
    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        row = criar_ordem_abastecimento(cur, payload.model_dump(exclude_unset=True), user)
    return {"id": row["id"], "authNumber": row["auth_number"], "status": row["status"]}


@router.put("/refuelings/{refueling_id}/confirm")
def confirmar_abastecimento(refueling_id: str, payload: ConfirmRefuelingIn, user=Depends(get_current_user)):
    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        r = _get_refueling_or_404(cur, refueling_id)
        if r["status"] != STATUS_ABERTA:
            raise HTTPException(
                status_code=409,
                detail=f"Somente autorizações abertas podem ser confirmadas (status atual: {r['status']}).",
            )

        vehicle = get_vehicle_or_404(cur, r["vehicle_id"])
        erro = check_vehicle_readings(vehicle, payload.odometro, payload.horimetro)
        if erro:
            raise HTTPException(status_code=400, detail=erro)

        _, precos = _partner_name_and_prices(cur, r["partner_id"])
        mudancas = payload.model_dump(exclude_unset=True)
        if mudancas.get("preco_combustivel") is None:
            mudancas["preco_combustivel"] = safe_num(precos.get(r["fuel_type"] or ""))
        if mudancas.get("preco_arla") is None:
            mudancas["preco_arla"] = safe_num(precos.get("arla32"))
        if "outros_gera_valor" in mudancas:
            mudancas["outros_gera_valor"] = 1 if as_flag(mudancas["outros_gera_valor"]) else 0

        r.update(mudancas)
        r["valor_total"] = calcular_valor_total(r)
        mudancas.update(
            {
                "valor_total": r["valor_total"],
                "status": STATUS_CONCLUIDA,
                "data_confirmacao": now_iso(),
                "confirmed_by": user_stamp(user),
            }
        )
        update_row(cur, "refuelings", refueling_id, mudancas, REFUELING_JSON_FIELDS)
        raise_vehicle_meters(cur, r["vehicle_id"], payload.odometro, payload.horimetro)
        apply_weekly_fuel_expense(cur, r["obra_id"], r["data"], r["fuel_type"], r["partner_name"], r["valor_total"])

    logger.info("Abastecimento %s confirmado (valor %.2f)", refueling_id, r["valor_total"])
    return {"message": "Abastecimento confirmado com sucesso", "valor_total": r["valor_total"]}


@router.put("/refuelings/{refueling_id}")
def atualizar_abastecimento(refueling_id: str, payload: RefuelingUpdateIn, user=Depends(get_current_user)):
    mudancas = payload.model_dump(exclude_unset=True)
    if "fuel_type" in mudancas:
        mudancas["fuel_type"] = normalize_fuel_type(mudancas["fuel_type"])
    for flag in ("is_fill_up", "needs_arla", "is_fill_up_arla", "outros_gera_valor"):
        if flag in mudancas:
            mudancas[flag] = 1 if as_flag(mudancas[flag]) else 0

    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        antigo = _get_refueling_or_404(cur, refueling_id)

        if "partner_id" in mudancas:
            mudancas["partner_name"], _ = _partner_name_and_prices(cur, mudancas["partner_id"])

        novo = dict(antigo)
        novo.update(mudancas)
        mudancas["edited_by"] = user_stamp(user)

        if antigo["status"] == STATUS_CONCLUIDA:
            novo["valor_total"] = calcular_valor_total(novo)
            mudancas["valor_total"] = novo["valor_total"]
            apply_weekly_fuel_expense(
                cur,
                antigo["obra_id"],
                antigo["data"],
                antigo["fuel_type"],
                antigo["partner_name"],
                -safe_num(antigo["valor_total"]),
            )
            apply_weekly_fuel_expense(
                cur, novo["obra_id"], novo["data"], novo["fuel_type"], novo["partner_name"], novo["valor_total"]
            )
            raise_vehicle_meters(cur, novo["vehicle_id"], novo.get("odometro"), novo.get("horimetro"))

        update_row(cur, "refuelings", refueling_id, mudancas, REFUELING_JSON_FIELDS)

    logger.info("Abastecimento %s atualizado (status=%s)", refueling_id, antigo["status"])
    return {"message": "Abastecimento atualizado com sucesso"}


@router.delete("/refuelings/{refueling_id}", status_code=204)
def excluir_abastecimento(refueling_id: str, user=Depends(get_current_user)):
    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        antigo = _get_refueling_or_404(cur, refueling_id)
        if antigo["status"] == STATUS_CONCLUIDA:
            apply_weekly_fuel_expense(
                cur,
                antigo["obra_id"],
                antigo["data"],
                antigo["fuel_type"],
                antigo["partner_name"],
                -safe_num(antigo["valor_total"]),
            )
        # solicitacao ainda em aberto volta para avaliacao; concluida so perde o vinculo
        cur.execute(
            """
            UPDATE solicitacoes_abastecimento
               SET status='PENDENTE', aprovado_por_usuario_id=NULL, data_aprovacao=NULL, foto_cupom_path=NULL
             WHERE refueling_id=? AND status IN ('LIBERADO', 'AGUARDANDO_BAIXA')
            """,
            (refueling_id,),
        )
        cur.execute("UPDATE solicitacoes_abastecimento SET refueling_id=NULL WHERE refueling_id=?", (refueling_id,))
        cur.execute("DELETE FROM refuelings WHERE id=?", (refueling_id,))
    logger.info("Abastecimento %s excluido", refueling_id)
    return Response(status_code=204)


# =========================================================
# ALERTAS DE INATIVIDADE
# =========================================================
def _auto_resolver_alertas(cur: sqlite3.Cursor) -> int:
    cur.execute(
        f"""
        UPDATE inactivity_alerts
           SET status='Resolvido',
               observation='Sistema: Resolvido automaticamente. Abastecimento detectado em ' || (
                   SELECT strftime('%d/%m/%Y', MAX(r.data))
                   FROM refuelings r
                   WHERE r.vehicle_id = inactivity_alerts.vehicle_id
                     AND r.status = ?
                     AND r.data > inactivity_alerts.last_refueling_date
               ),
               dismissed_at=?
         WHERE status IN ({_PH_ALERTAS_ABERTOS})
           AND EXISTS (
               SELECT 1
               FROM refuelings r
               WHERE r.vehicle_id = inactivity_alerts.vehicle_id
                 AND r.status = ?
                 AND r.data > inactivity_alerts.last_refueling_date
           )
        """,
        (STATUS_CONCLUIDA, now_iso(), *ALERTAS_ABERTOS, STATUS_CONCLUIDA),
    )
    return cur.rowcount


@router.get("/inactivityAlerts")
def listar_alertas(user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        try:
            resolvidos = _auto_resolver_alertas(cur)
            if resolvidos:
                logger.info("%d alerta(s) de inatividade resolvido(s) automaticamente", resolvidos)
        except sqlite3.Error as e:
            logger.warning("Auto-resolucao de alertas falhou: %s", e)

        cur.execute("SELECT * FROM inactivity_alerts ORDER BY created_at DESC, id DESC")
        return [row_to_dict(r) for r in cur.fetchall()]


@router.post("/inactivityAlerts")
def criar_alerta(payload: InactivityAlertIn, response: Response, user=Depends(get_current_user)):
    if not payload.vehicle_id:
        raise HTTPException(status_code=400, detail="Veículo é obrigatório.")

    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        get_vehicle_or_404(cur, payload.vehicle_id)
        cur.execute(
            f"""
            SELECT id FROM inactivity_alerts
            WHERE vehicle_id=? AND status IN ({_PH_ALERTAS_ABERTOS})
            LIMIT 1
            """,
            (payload.vehicle_id, *ALERTAS_ABERTOS),
        )
        existente = cur.fetchone()
        if existente:
            cur.execute(
                "UPDATE inactivity_alerts SET last_refueling_date=? WHERE id=?",
                (payload.last_refueling_date, existente["id"]),
            )
            response.status_code = 200
            return {"message": "Alerta existente atualizado", "id": existente["id"]}

        data = payload.model_dump(exclude_unset=True)
        data.setdefault("status", "Ativo")
        alert_id = insert_row(cur, "inactivity_alerts", data)

    response.status_code = 201
    return {"id": alert_id, **data}


@router.put("/inactivityAlerts/{alert_id}")
def atualizar_alerta(alert_id: int, payload: InactivityAlertIn, user=Depends(get_current_user)):
    data = payload.model_dump(exclude_unset=True)
    if not data:
        raise HTTPException(status_code=400, detail="Nenhum campo para atualizar")
    with get_conn() as conn:
        if not update_row(conn.cursor(), "inactivity_alerts", alert_id, data):
            raise HTTPException(status_code=404, detail="Alerta não encontrado")
    return {"message": "Alerta de inatividade atualizado com sucesso"}


@router.delete("/inactivityAlerts/{alert_id}", status_code=204)
def excluir_alerta(alert_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM inactivity_alerts WHERE id=?", (alert_id,))
        if cur.rowcount == 0:
            raise HTTPException(status_code=404, detail="Alerta não encontrado")
    return Response(status_code=204)

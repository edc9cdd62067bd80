import logging
import math
import sqlite3
from datetime import date, datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from auth import get_current_user
from database import fetch_by_id, get_conn, row_to_dict
from regras import add_business_days, parse_datetime, safe_num

logger = logging.getLogger(__name__)

router = APIRouter(tags=["supervisor"])

STATUS_INATIVOS = ("inativa", "inactive", "concluída", "concluida", "finalizada", "cancelada", "arquivada")


class CrmLogIn(BaseModel):
    obra_id: int
    tipo_interacao: Optional[str] = None
    resumo_conversa: Optional[str] = None
    data_proximo_contato: Optional[str] = None


class ContractIn(BaseModel):
    obra_id: int
    valor_total: Optional[float] = None
    horas_totais: Optional[float] = None
    data_inicio: Optional[str] = None
    data_fim_contratual: Optional[str] = None
    fiscal_nome: Optional[str] = None


def _obra_ativa(obra: sqlite3.Row) -> bool:
    status = obra["status"]
    if status is None:
        return True
    return str(status).strip().lower() not in STATUS_INATIVOS


def _to_date(value: Any) -> Optional[date]:
    try:
        dt = parse_datetime(value)
    except ValueError:
        return None
    return dt.date() if dt else None


def calcular_kpis(
    obra: sqlite3.Row,
    contrato: Optional[sqlite3.Row],
    total_gasto: float,
    horas_realizadas: float,
    hoje: Optional[date] = None,
) -> Dict[str, Any]:
    """
    KPIs do cockpit: saldo financeiro, saldo de horas, percentual de conclusao
    (o maior entre o financeiro e o de horas) e previsao de termino pelo ritmo
    de horas por dia desde o inicio do contrato.
    """
    hoje = hoje or date.today()
    contrato = dict(contrato) if contrato else {}

    valor_total = safe_num(contrato.get("total_value"))
    horas_totais = safe_num(contrato.get("total_hours_contracted"))

    pct_financeiro = (total_gasto / valor_total) * 100 if valor_total > 0 else 0.0
    pct_horas = (horas_realizadas / horas_totais) * 100 if horas_totais > 0 else 0.0
    pct_conclusao = round(max(pct_financeiro, pct_horas), 1)

    previsao: Optional[date] = None
    inicio = _to_date(contrato.get("start_date"))
    fim = _to_date(contrato.get("expected_end_date"))
    if horas_realizadas > 0 and horas_totais > 0 and inicio:
        dias_decorridos = abs((hoje - inicio).days) or 1
        horas_por_dia = horas_realizadas / dias_decorridos
        horas_restantes = horas_totais - horas_realizadas
        if horas_por_dia > 0 and horas_restantes > 0:
            previsao = add_business_days(hoje, math.ceil(horas_restantes / horas_por_dia))

    status_prazo = "indefinido"
    if previsao and fim:
        status_prazo = "atrasado" if previsao > fim else "no_prazo"

    return {
        "id": obra["id"],
        "nome": obra["nome"],
        "status": obra["status"],
        "responsavel": contrato.get("fiscal_nome") or "Não Definido",
        "fiscal_nome": contrato.get("fiscal_nome"),
        "kpi": {
            "valor_total_contrato": valor_total,
            "total_gasto": round(total_gasto, 2),
            "saldo_financeiro": round(valor_total - total_gasto, 2),
            "horas_contratadas": horas_totais,
            "horas_realizadas": horas_realizadas,
            "saldo_horas": horas_totais - horas_realizadas,
            "percentual_conclusao": pct_conclusao,
        },
        "previsao": {
            "data_termino_estimada": previsao.isoformat() if previsao else None,
            "status": status_prazo,
        },
        "data_inicio_contratual": contrato.get("start_date"),
        "data_fim_contratual": contrato.get("expected_end_date"),
    }


def _totais_por_obra(cur: sqlite3.Cursor):
    cur.execute("SELECT obra_id, SUM(amount) AS total FROM expenses GROUP BY obra_id")
    gastos = {r["obra_id"]: safe_num(r["total"]) for r in cur.fetchall()}
    cur.execute("SELECT obra_id, SUM(total_hours) AS total FROM daily_work_logs GROUP BY obra_id")
    horas = {r["obra_id"]: safe_num(r["total"]) for r in cur.fetchall()}
    return gastos, horas


@router.get("/supervisor/dashboard")
def dashboard(user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM obras ORDER BY nome")
        obras = [o for o in cur.fetchall() if _obra_ativa(o)]
        cur.execute("SELECT * FROM obra_contracts")
        contratos = {c["obra_id"]: c for c in cur.fetchall()}
        gastos, horas = _totais_por_obra(cur)

    return [
        calcular_kpis(o, contratos.get(o["id"]), gastos.get(o["id"], 0.0), horas.get(o["id"], 0.0))
        for o in obras
    ]


@router.get("/supervisor/obra/{obra_id}")
def detalhe_obra(obra_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        obra = fetch_by_id(cur, "obras", obra_id)
        if not obra:
            raise HTTPException(status_code=404, detail="Obra não encontrada.")

        cur.execute("SELECT * FROM obra_contracts WHERE obra_id=?", (obra_id,))
        contrato = cur.fetchone()
        cur.execute("SELECT COALESCE(SUM(amount), 0) AS total FROM expenses WHERE obra_id=?", (obra_id,))
        total_gasto = safe_num(cur.fetchone()["total"])
        cur.execute("SELECT COALESCE(SUM(total_hours), 0) AS total FROM daily_work_logs WHERE obra_id=?", (obra_id,))
        horas_realizadas = safe_num(cur.fetchone()["total"])

        cur.execute(
            """
            SELECT v.id, v.placa, v.registro_interno, v.modelo, v.tipo, h.data_entrada
            FROM obras_historico_veiculos h
            JOIN vehicles v ON v.id = h.vehicle_id
            WHERE h.obra_id=? AND h.data_saida IS NULL
            ORDER BY v.registro_interno
            """,
            (obra_id,),
        )
        veiculos = [row_to_dict(r) for r in cur.fetchall()]

        cur.execute(
            "SELECT * FROM obra_crm_logs WHERE obra_id=? ORDER BY created_at DESC, id DESC LIMIT 50",
            (obra_id,),
        )
        crm = [row_to_dict(r) for r in cur.fetchall()]

    return {
        "obra": calcular_kpis(obra, contrato, total_gasto, horas_realizadas),
        "vehicles": veiculos,
        "crm_history": crm,
    }


@router.post("/supervisor/crm", status_code=201)
def registrar_crm(payload: CrmLogIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        if not fetch_by_id(cur, "obras", payload.obra_id):
            raise HTTPException(status_code=404, detail="Obra não encontrada.")
        cur.execute(
            """
            INSERT INTO obra_crm_logs
                (obra_id, supervisor_id, supervisor_name, tipo_interacao, resumo_conversa, data_proximo_contato, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                payload.obra_id,
                user["id"],
                user.get("name") or "Supervisor",
                payload.tipo_interacao,
                payload.resumo_conversa,
                payload.data_proximo_contato,
                datetime.now().isoformat(timespec="seconds"),
            ),
        )
    return {"message": "Registro salvo com sucesso."}


@router.post("/supervisor/contract")
def configurar_contrato(payload: ContractIn, user=Depends(get_current_user)):
    valores = (
        safe_num(payload.valor_total),
        safe_num(payload.horas_totais),
        payload.data_inicio or None,
        payload.data_fim_contratual or None,
        payload.fiscal_nome or None,
    )
    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        if not fetch_by_id(cur, "obras", payload.obra_id):
            raise HTTPException(status_code=404, detail="Obra não encontrada.")
        cur.execute("SELECT id FROM obra_contracts WHERE obra_id=?", (payload.obra_id,))
        if cur.fetchone():
            cur.execute(
                """
                UPDATE obra_contracts
                   SET total_value=?, total_hours_contracted=?, start_date=?, expected_end_date=?, fiscal_nome=?
                 WHERE obra_id=?
                """,
                (*valores, payload.obra_id),
            )
        else:
            cur.execute(
                """
                INSERT INTO obra_contracts
                    (total_value, total_hours_contracted, start_date, expected_end_date, fiscal_nome, obra_id)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (*valores, payload.obra_id),
            )
    logger.info("Contrato da obra %s configurado", payload.obra_id)
    return {"message": "Contrato configurado com sucesso."}

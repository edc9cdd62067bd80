import logging
import re
import sqlite3
import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field

from auth import get_current_user, user_stamp
from database import dump_json, fetch_by_id, get_conn, insert_row, next_counter, row_to_dict, update_row
from regras import hours_between_times, now_iso, parse_datetime, safe_num, week_start

logger = logging.getLogger(__name__)

router = APIRouter(tags=["financeiro"])

CATEGORIA_COMBUSTIVEL = "Combustível"
CATEGORIA_ORDEM = "Ordem de Compra/Serviço"
STATUS_PENDENTE_VALOR = "Pendente de Valor"
STATUS_CANCELADA = "Cancelada"

ORDER_JSON_FIELDS = ("items", "payment", "created_by", "edited_by")


# =========================================================
# DESPESA SEMANAL DE COMBUSTIVEL
# =========================================================
def _descricao_combustivel(fuel_type: Optional[str], partner_name: Optional[str]) -> str:
    legivel = re.sub(r"([A-Z])", r" \1", fuel_type or "N/A").lower()
    return f"Combustível: {legivel} - {partner_name or 'N/A'}"


def apply_weekly_fuel_expense(
    cur: sqlite3.Cursor,
    obra_id: Any,
    date: Any,
    fuel_type: Optional[str],
    partner_name: Optional[str],
    value_change: Any,
) -> Optional[int]:
    """
    Soma (ou subtrai) value_change na despesa de combustivel da obra na semana.

    A chave e (obra, segunda-feira da semana, combustivel, posto). Cria a
    despesa quando o valor e positivo e ela nao existe; apaga quando o total
    chega a zero. Deve rodar dentro da transacao de quem chama.
    """
    delta = round(safe_num(value_change), 2)
    if not obra_id or delta == 0:
        return None

    semana = week_start(date).isoformat()
    cur.execute(
        """
        SELECT id, amount
        FROM expenses
        WHERE obra_id=? AND week_start_date=? AND fuel_type IS ? AND partner_name IS ?
        LIMIT 1
        """,
        (obra_id, semana, fuel_type, partner_name),
    )
    existente = cur.fetchone()

    if not existente:
        if delta < 0:
            logger.warning(
                "Estorno de %.2f sem despesa semanal (obra=%s semana=%s %s/%s)",
                delta, obra_id, semana, fuel_type, partner_name,
            )
            return None
        cur.execute(
            """
            INSERT INTO expenses
                (obra_id, description, amount, category, created_at, week_start_date, fuel_type, partner_name)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                obra_id,
                _descricao_combustivel(fuel_type, partner_name),
                delta,
                CATEGORIA_COMBUSTIVEL,
                now_iso(),
                semana,
                fuel_type,
                partner_name,
            ),
        )
        return cur.lastrowid

    novo = round(safe_num(existente["amount"]) + delta, 2)
    if novo <= 0:
        cur.execute("DELETE FROM expenses WHERE id=?", (existente["id"],))
        return None
    cur.execute("UPDATE expenses SET amount=? WHERE id=?", (novo, existente["id"]))
    return existente["id"]


def _is_automatic(expense: sqlite3.Row) -> bool:
    return bool(expense["week_start_date"]) or expense["order_id"] is not None


def _descricao_ordem(order_number: int, supplier: Optional[str]) -> str:
    return f"Ordem Compra/Serviço #{int(order_number):06d} - {supplier or ''}".rstrip(" -")


# =========================================================
# SCHEMAS (Pydantic)
# =========================================================
class ExpenseIn(BaseModel):
    obra_id: Optional[int] = None
    description: Optional[str] = None
    amount: Optional[float] = None
    category: Optional[str] = None
    created_at: Optional[str] = None


class OrderIn(BaseModel):
    date: Optional[str] = None
    supplier: Optional[str] = None
    obra_id: Optional[int] = None
    vehicle_id: Optional[int] = None
    status: Optional[str] = None
    total_value: Optional[float] = None
    items: Optional[List[Dict[str, Any]]] = None
    payment: Optional[Dict[str, Any]] = None
    observation: Optional[str] = None


class DailyLogIn(BaseModel):
    id: Optional[str] = None
    obra_id: int
    vehicle_id: int
    employee_id: Optional[int] = None
    date: str = Field(..., min_length=8)
    morning_start: Optional[str] = None
    morning_end: Optional[str] = None
    afternoon_start: Optional[str] = None
    afternoon_end: Optional[str] = None
    total_hours: Optional[float] = None
    observation: Optional[str] = None


# =========================================================
# DESPESAS
# =========================================================
@router.get("/expenses")
def listar_despesas(
    obra_id: Optional[int] = Query(default=None),
    category: Optional[str] = Query(default=None),
    user=Depends(get_current_user),
):
    sql = "SELECT * FROM expenses WHERE 1=1"
    params: List[Any] = []
    if obra_id:
        sql += " AND obra_id=?"
        params.append(obra_id)
    if category:
        sql += " AND category=?"
        params.append(category)
    sql += " ORDER BY created_at DESC, id DESC"
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(sql, tuple(params))
        return [row_to_dict(r, ("created_by",)) for r in cur.fetchall()]


@router.post("/expenses", status_code=201)
def criar_despesa(payload: ExpenseIn, user=Depends(get_current_user)):
    data = payload.model_dump(exclude_unset=True)
    if not data.get("description") or data.get("amount") is None:
        raise HTTPException(status_code=400, detail="Descrição e valor são obrigatórios.")
    data.setdefault("created_at", now_iso())
    data["created_by"] = user_stamp(user)
    with get_conn() as conn:
        expense_id = insert_row(conn.cursor(), "expenses", data, ("created_by",))
    return {"id": expense_id}


@router.put("/expenses/{expense_id}")
def atualizar_despesa(expense_id: int, payload: ExpenseIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        row = fetch_by_id(cur, "expenses", expense_id)
        if not row:
            raise HTTPException(status_code=404, detail="Despesa não encontrada")
        if _is_automatic(row):
            raise HTTPException(
                status_code=409,
                detail="Despesa gerada automaticamente. Altere o abastecimento ou a ordem de origem.",
            )
        update_row(cur, "expenses", expense_id, payload.model_dump(exclude_unset=True))
    return {"message": "Despesa atualizada com sucesso"}


@router.delete("/expenses/{expense_id}", status_code=204)
def excluir_despesa(expense_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        row = fetch_by_id(cur, "expenses", expense_id)
        if not row:
            raise HTTPException(status_code=404, detail="Despesa não encontrada")
        if _is_automatic(row):
            raise HTTPException(
                status_code=409,
                detail="Despesa gerada automaticamente. Exclua o abastecimento ou cancele a ordem de origem.",
            )
        cur.execute("DELETE FROM expenses WHERE id=?", (expense_id,))
    return Response(status_code=204)


# =========================================================
# ORDENS DE COMPRA / SERVICO
# =========================================================
def _get_order_or_404(cur: sqlite3.Cursor, order_id: int) -> sqlite3.Row:
    row = fetch_by_id(cur, "orders", order_id)
    if not row:
        raise HTTPException(status_code=404, detail="Ordem não encontrada")
    return row


def _inserir_despesa_ordem(cur, order_id, order_number, supplier, obra_id, valor, stamp):
    cur.execute(
        """
        INSERT INTO expenses (order_id, description, amount, obra_id, category, created_at, created_by)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            order_id,
            _descricao_ordem(order_number, supplier),
            safe_num(valor),
            obra_id,
            CATEGORIA_ORDEM,
            now_iso(),
            dump_json(stamp),
        ),
    )


def _remover_despesa_ordem(cur: sqlite3.Cursor, order_id: int):
    cur.execute("DELETE FROM expenses WHERE order_id=?", (order_id,))


@router.get("/orders")
def listar_ordens(user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM orders ORDER BY order_number DESC")
        return [row_to_dict(r, ORDER_JSON_FIELDS) for r in cur.fetchall()]


@router.get("/orders/{order_id}")
def obter_ordem(order_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        return row_to_dict(_get_order_or_404(conn.cursor(), order_id), ORDER_JSON_FIELDS)


@router.post("/orders", status_code=201)
def criar_ordem(payload: OrderIn, user=Depends(get_current_user)):
    data = payload.model_dump(exclude_unset=True)
    if not data.get("status"):
        raise HTTPException(status_code=400, detail="Status da ordem é obrigatório.")
    data["total_value"] = safe_num(data.get("total_value"))
    data.setdefault("date", now_iso())
    stamp = user_stamp(user)
    data["created_by"] = stamp

    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        order_number = next_counter(cur, "purchaseOrderCounter")
        data["order_number"] = order_number
        order_id = insert_row(cur, "orders", data, ORDER_JSON_FIELDS)

        if data["status"] not in (STATUS_PENDENTE_VALOR, STATUS_CANCELADA):
            _inserir_despesa_ordem(
                cur, order_id, order_number, data.get("supplier"), data.get("obra_id"), data["total_value"], stamp
            )

    logger.info("Ordem %s criada (numero %06d, status=%s)", order_id, order_number, data["status"])
    return {"id": order_id, "orderNumber": order_number}


@router.put("/orders/{order_id}")
def atualizar_ordem(order_id: int, payload: OrderIn, user=Depends(get_current_user)):
    data = payload.model_dump(exclude_unset=True)
    if "total_value" in data:
        data["total_value"] = safe_num(data["total_value"])
    data["edited_by"] = user_stamp(user)

    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        original = _get_order_or_404(cur, order_id)
        if original["status"] == STATUS_CANCELADA:
            raise HTTPException(status_code=409, detail="Ordem cancelada não pode ser alterada.")

        update_row(cur, "orders", order_id, data, ORDER_JSON_FIELDS)
        atual = fetch_by_id(cur, "orders", order_id)

        antes_pendente = original["status"] == STATUS_PENDENTE_VALOR
        agora_pendente = atual["status"] == STATUS_PENDENTE_VALOR
        if atual["status"] == STATUS_CANCELADA:
            _remover_despesa_ordem(cur, order_id)
        elif antes_pendente and not agora_pendente:
            _inserir_despesa_ordem(
                cur,
                order_id,
                atual["order_number"],
                atual["supplier"],
                atual["obra_id"],
                atual["total_value"],
                user_stamp(user),
            )
        elif not antes_pendente and not agora_pendente:
            cur.execute(
                "UPDATE expenses SET amount=?, description=?, obra_id=? WHERE order_id=?",
                (
                    safe_num(atual["total_value"]),
                    _descricao_ordem(atual["order_number"], atual["supplier"]),
                    atual["obra_id"],
                    order_id,
                ),
            )
        elif not antes_pendente and agora_pendente:
            _remover_despesa_ordem(cur, order_id)

    logger.info("Ordem %s atualizada (%s -> %s)", order_id, original["status"], atual["status"])
    return {"message": "Ordem atualizada com sucesso."}


@router.put("/orders/{order_id}/cancel")
def cancelar_ordem(order_id: int, user=Depends(get_current_user)):
    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        original = _get_order_or_404(cur, order_id)
        if original["status"] == STATUS_CANCELADA:
            raise HTTPException(status_code=409, detail="Ordem já está cancelada.")
        cur.execute(
            "UPDATE orders SET status=?, edited_by=? WHERE id=?",
            (STATUS_CANCELADA, dump_json(user_stamp(user)), order_id),
        )
        _remover_despesa_ordem(cur, order_id)
    logger.info("Ordem %s cancelada", order_id)
    return {"message": "Ordem cancelada com sucesso."}


@router.delete("/orders/{order_id}", status_code=204)
def excluir_ordem(order_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        _get_order_or_404(cur, order_id)
        _remover_despesa_ordem(cur, order_id)
        cur.execute("DELETE FROM orders WHERE id=?", (order_id,))
    return Response(status_code=204)


# =========================================================
# BOLETIM DIARIO (horas trabalhadas por veiculo)
# =========================================================
def _data_chave(value: Any) -> str:
    txt = str(value or "")
    return txt.split("T")[0][:10]


def _buscar_boletins(
    obra_id: Optional[str],
    start_date: Optional[str],
    end_date: Optional[str],
    vehicle_id: Optional[int],
) -> List[Dict[str, Any]]:
    sql = """
        SELECT l.*, v.modelo, v.registro_interno, v.tipo, e.name AS employee_name
        FROM daily_work_logs l
        JOIN vehicles v ON l.vehicle_id = v.id
        LEFT JOIN employees e ON l.employee_id = e.id
        WHERE 1=1
    """
    params: List[Any] = []
    if obra_id and obra_id != "all":
        sql += " AND l.obra_id=?"
        params.append(obra_id)
    if start_date and end_date:
        sql += " AND l.date BETWEEN ? AND ?"
        params.extend([start_date, end_date])
    if vehicle_id:
        sql += " AND l.vehicle_id=?"
        params.append(vehicle_id)
    sql += " ORDER BY l.rowid"

    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(sql, tuple(params))
        rows = [row_to_dict(r) for r in cur.fetchall()]

    # um registro por veiculo/dia: o ultimo gravado prevalece
    unicos: Dict[str, Dict[str, Any]] = {}
    for r in rows:
        unicos[f"{r['vehicle_id']}-{_data_chave(r['date'])}"] = r

    result = list(unicos.values())
    result.sort(key=lambda r: r.get("registro_interno") or "")
    result.sort(key=lambda r: _data_chave(r["date"]), reverse=True)
    return result


@router.get("/billing")
def listar_boletins(
    obra_id: Optional[str] = Query(default=None),
    start_date: Optional[str] = Query(default=None),
    end_date: Optional[str] = Query(default=None),
    vehicle_id: Optional[int] = Query(default=None),
    user=Depends(get_current_user),
):
    return _buscar_boletins(obra_id, start_date, end_date, vehicle_id)


@router.get("/billing/obra/{obra_id}")
def listar_boletins_da_obra(
    obra_id: str,
    start_date: Optional[str] = Query(default=None),
    end_date: Optional[str] = Query(default=None),
    vehicle_id: Optional[int] = Query(default=None),
    user=Depends(get_current_user),
):
    return _buscar_boletins(obra_id, start_date, end_date, vehicle_id)


@router.post("/billing")
def salvar_boletim(payload: DailyLogIn, user=Depends(get_current_user)):
    try:
        parse_datetime(payload.date)
    except ValueError:
        raise HTTPException(status_code=400, detail="Data inválida.")

    total = payload.total_hours
    if total is None:
        total = hours_between_times(payload.morning_start, payload.morning_end) + hours_between_times(
            payload.afternoon_start, payload.afternoon_end
        )
    data_dia = _data_chave(payload.date)

    valores = {
        "obra_id": payload.obra_id,
        "vehicle_id": payload.vehicle_id,
        "employee_id": payload.employee_id,
        "date": data_dia,
        "morning_start": payload.morning_start,
        "morning_end": payload.morning_end,
        "afternoon_start": payload.afternoon_start,
        "afternoon_end": payload.afternoon_end,
        "total_hours": round(safe_num(total), 2),
        "observation": payload.observation,
    }

    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        if not fetch_by_id(cur, "vehicles", payload.vehicle_id):
            raise HTTPException(status_code=404, detail="Veículo não encontrado")

        target_id = payload.id
        if not target_id:
            cur.execute(
                "SELECT id FROM daily_work_logs WHERE vehicle_id=? AND date=? LIMIT 1",
                (payload.vehicle_id, data_dia),
            )
            existente = cur.fetchone()
            if existente:
                target_id = existente["id"]

        if target_id and update_row(cur, "daily_work_logs", target_id, valores):
            return {"message": "Registro atualizado com sucesso.", "id": target_id}

        novo_id = target_id or str(uuid.uuid4())
        insert_row(cur, "daily_work_logs", {"id": novo_id, **valores})
    return {"message": "Registro criado com sucesso.", "id": novo_id}


@router.delete("/billing/{log_id}", status_code=204)
def excluir_boletim(log_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM daily_work_logs WHERE id=?", (log_id,))
        if cur.rowcount == 0:
            raise HTTPException(status_code=404, detail="Registro não encontrado")
    return Response(status_code=204)

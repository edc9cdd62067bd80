"""
Livro de combustivel do comboio (caminhao tanque).

entrada: o comboio recebe combustivel de um posto (gera despesa da obra)
saida: o comboio abastece outro veiculo
drenagem: combustivel retirado de um veiculo volta para o comboio

Toda alteracao desfaz o efeito antigo e aplica o novo na mesma transacao,
mantendo vehicles.fuel_levels coerente com o historico de transacoes.
"""
import logging
import sqlite3
import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field

from auth import get_current_user, user_stamp
from database import dump_json, fetch_by_id, get_conn, insert_row, parse_json_safe, row_to_dict, update_row
from financeiro import apply_weekly_fuel_expense
from regras import normalize_fuel_type, now_iso, safe_num
from veiculos import (
    check_vehicle_readings,
    get_fuel_levels,
    get_vehicle_or_404,
    raise_vehicle_meters,
    set_fuel_levels,
    vehicle_label,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["comboio"])

# colunas que o PUT pode alterar (o tipo nunca muda)
CAMPOS_EDITAVEIS = (
    "date",
    "comboio_vehicle_id",
    "partner_id",
    "receiving_vehicle_id",
    "drained_vehicle_id",
    "employee_id",
    "obra_id",
    "fuel_type",
    "liters",
    "unit_price",
    "odometro",
    "horimetro",
    "reason",
)


class ComboioTransactionIn(BaseModel):
    comboio_vehicle_id: Optional[int] = None
    date: Optional[str] = None
    fuel_type: Optional[str] = None
    liters: Optional[float] = Field(default=None, gt=0)
    partner_id: Optional[int] = None
    unit_price: Optional[float] = Field(default=None, ge=0)
    receiving_vehicle_id: Optional[int] = None
    drained_vehicle_id: Optional[int] = None
    employee_id: Optional[int] = None
    obra_id: Optional[int] = None
    odometro: Optional[float] = None
    horimetro: Optional[float] = None
    reason: Optional[str] = None


# =========================================================
# EFEITOS NO SALDO
# =========================================================
def _delta_nivel(tx: Dict[str, Any]) -> float:
    litros = safe_num(tx["liters"])
    return -litros if tx["type"] == "saida" else litros


def _saldo_insuficiente(comboio: sqlite3.Row, fuel: str, disponivel: float) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail=f"Saldo insuficiente no comboio {vehicle_label(comboio)}: {disponivel:g} L de {fuel} disponíveis.",
    )


def _aplicar_efeito(cur: sqlite3.Cursor, tx: Dict[str, Any], sinal: int, checar_saldo: bool = True):
    """sinal=+1 aplica a transacao, sinal=-1 desfaz."""
    comboio = get_vehicle_or_404(cur, tx["comboio_vehicle_id"])
    niveis = get_fuel_levels(comboio)
    fuel = tx["fuel_type"]
    novo = round(niveis.get(fuel, 0.0) + sinal * _delta_nivel(tx), 3)
    if checar_saldo and novo < 0:
        raise _saldo_insuficiente(comboio, fuel, niveis.get(fuel, 0.0))
    niveis[fuel] = novo
    set_fuel_levels(cur, comboio["id"], niveis)

    if tx["type"] == "entrada":
        apply_weekly_fuel_expense(
            cur,
            tx.get("obra_id"),
            tx["date"],
            fuel,
            tx.get("partner_name"),
            sinal * safe_num(tx.get("value")),
        )


def _checar_saldo(cur: sqlite3.Cursor, tx: Dict[str, Any]):
    comboio = get_vehicle_or_404(cur, tx["comboio_vehicle_id"])
    nivel = get_fuel_levels(comboio).get(tx["fuel_type"], 0.0)
    if nivel < 0:
        raise _saldo_insuficiente(comboio, tx["fuel_type"], nivel)


def _preparar(cur: sqlite3.Cursor, tx: Dict[str, Any]) -> Dict[str, Any]:
    """Valida os campos do tipo e completa preco, valor e nome do posto."""
    tipo = tx["type"]
    tx["fuel_type"] = normalize_fuel_type(tx.get("fuel_type"))
    if not tx.get("comboio_vehicle_id") or not tx["fuel_type"] or safe_num(tx.get("liters")) <= 0:
        raise HTTPException(status_code=400, detail="Comboio, combustível e litros são obrigatórios.")
    tx["date"] = tx.get("date") or now_iso()
    get_vehicle_or_404(cur, tx["comboio_vehicle_id"])

    if tipo == "entrada":
        if not tx.get("partner_id"):
            raise HTTPException(status_code=400, detail="Informe o posto da entrada.")
        partner = fetch_by_id(cur, "partners", tx["partner_id"])
        if not partner:
            raise HTTPException(status_code=404, detail="Parceiro não encontrado")
        tx["partner_name"] = partner["nome_fantasia"] or partner["razao_social"]
        if tx.get("unit_price") is None:
            precos = parse_json_safe(partner["fuel_prices"], "fuel_prices") or {}
            tx["unit_price"] = safe_num(precos.get(tx["fuel_type"]) if isinstance(precos, dict) else 0)

    elif tipo == "saida":
        destino_id = tx.get("receiving_vehicle_id")
        if not destino_id:
            raise HTTPException(status_code=400, detail="Informe o veículo abastecido.")
        if int(destino_id) == int(tx["comboio_vehicle_id"]):
            raise HTTPException(status_code=400, detail="O comboio não pode abastecer a si mesmo.")
        get_vehicle_or_404(cur, destino_id)

    else:
        origem_id = tx.get("drained_vehicle_id")
        if not origem_id:
            raise HTTPException(status_code=400, detail="Informe o veículo drenado.")
        if int(origem_id) == int(tx["comboio_vehicle_id"]):
            raise HTTPException(status_code=400, detail="O comboio não pode drenar a si mesmo.")
        get_vehicle_or_404(cur, origem_id)

    tx["value"] = round(safe_num(tx.get("liters")) * safe_num(tx.get("unit_price")), 2)
    return tx


def _validar_leituras_destino(cur: sqlite3.Cursor, tx: Dict[str, Any]):
    if tx["type"] != "saida":
        return
    destino = get_vehicle_or_404(cur, tx["receiving_vehicle_id"])
    erro = check_vehicle_readings(destino, tx.get("odometro"), tx.get("horimetro"))
    if erro:
        raise HTTPException(status_code=400, detail=erro)
    raise_vehicle_meters(cur, destino["id"], tx.get("odometro"), tx.get("horimetro"))


def _get_tx_or_404(cur: sqlite3.Cursor, tx_id: str) -> Dict[str, Any]:
    row = fetch_by_id(cur, "comboio_transactions", tx_id)
    if not row:
        raise HTTPException(status_code=404, detail="Transação não encontrada")
    return row_to_dict(row, ("created_by",))


def _criar(tipo: str, payload: ComboioTransactionIn, user: Dict[str, Any]) -> Dict[str, Any]:
    tx = payload.model_dump()
    tx["type"] = tipo
    tx["id"] = str(uuid.uuid4())

    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        _preparar(cur, tx)
        _validar_leituras_destino(cur, tx)
        _aplicar_efeito(cur, tx, +1)
        tx["created_by"] = dump_json(user_stamp(user))
        insert_row(cur, "comboio_transactions", tx)
        row = _get_tx_or_404(cur, tx["id"])

    logger.info(
        "Comboio %s: %s de %.1f L %s (tx=%s)",
        tx["comboio_vehicle_id"], tipo, safe_num(tx["liters"]), tx["fuel_type"], tx["id"],
    )
    return row


# =========================================================
# ENDPOINTS
# =========================================================
@router.get("/comboioTransactions")
def listar_transacoes(
    comboio_vehicle_id: Optional[int] = Query(default=None),
    tipo: Optional[str] = Query(default=None, alias="type"),
    user=Depends(get_current_user),
):
    sql = "SELECT * FROM comboio_transactions WHERE 1=1"
    params: List[Any] = []
    if comboio_vehicle_id:
        sql += " AND comboio_vehicle_id=?"
        params.append(comboio_vehicle_id)
    if tipo:
        sql += " AND type=?"
        params.append(tipo)
    sql += " ORDER BY date DESC, created_at DESC"
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(sql, tuple(params))
        return [row_to_dict(r, ("created_by",)) for r in cur.fetchall()]


@router.get("/comboioTransactions/{tx_id}")
def obter_transacao(tx_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        return _get_tx_or_404(conn.cursor(), tx_id)


@router.post("/comboioTransactions/entrada", status_code=201)
def registrar_entrada(payload: ComboioTransactionIn, user=Depends(get_current_user)):
    return _criar("entrada", payload, user)


@router.post("/comboioTransactions/saida", status_code=201)
def registrar_saida(payload: ComboioTransactionIn, user=Depends(get_current_user)):
    return _criar("saida", payload, user)


@router.post("/comboioTransactions/drenagem", status_code=201)
def registrar_drenagem(payload: ComboioTransactionIn, user=Depends(get_current_user)):
    return _criar("drenagem", payload, user)


@router.put("/comboioTransactions/{tx_id}")
def atualizar_transacao(tx_id: str, payload: ComboioTransactionIn, user=Depends(get_current_user)):
    mudancas = payload.model_dump(exclude_unset=True)

    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        antigo = _get_tx_or_404(cur, tx_id)
        _aplicar_efeito(cur, antigo, -1, checar_saldo=False)

        novo = dict(antigo)
        novo.update(mudancas)
        if novo["type"] == "entrada" and ("partner_id" in mudancas or "fuel_type" in mudancas):
            if "unit_price" not in mudancas:
                novo["unit_price"] = None
        _preparar(cur, novo)
        _validar_leituras_destino(cur, novo)
        _aplicar_efeito(cur, novo, +1)
        _checar_saldo(cur, antigo)

        update_row(
            cur,
            "comboio_transactions",
            tx_id,
            {k: novo.get(k) for k in CAMPOS_EDITAVEIS + ("partner_name", "value")},
        )
        row = _get_tx_or_404(cur, tx_id)

    logger.info("Transacao de comboio %s atualizada (%s)", tx_id, antigo["type"])
    return row


@router.delete("/comboioTransactions/{tx_id}", status_code=204)
def excluir_transacao(tx_id: str, user=Depends(get_current_user)):
    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        antigo = _get_tx_or_404(cur, tx_id)
        _aplicar_efeito(cur, antigo, -1)
        cur.execute("DELETE FROM comboio_transactions WHERE id=?", (tx_id,))
    logger.info("Transacao de comboio %s excluida e estornada (%s)", tx_id, antigo["type"])
    return Response(status_code=204)

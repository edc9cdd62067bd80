import logging
import sqlite3
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel

from auth import get_current_user, user_stamp
from database import fetch_by_id, get_conn, insert_row, parse_json_safe, row_to_dict, update_row, dump_json
from regras import normalize_fuel_type, now_iso, safe_num, validate_meter_reading

logger = logging.getLogger(__name__)

router = APIRouter(tags=["veiculos"])

VEHICLE_JSON_FIELDS = ("fuel_levels", "alocado_em", "history")

STATUS_DISPONIVEL = "Disponível"
STATUS_EM_OBRA = "Em Obra"


# =========================================================
# HELPERS (usados tambem por comboio, abastecimentos, obras)
# =========================================================
def get_vehicle_or_404(cur: sqlite3.Cursor, vehicle_id: Any) -> sqlite3.Row:
    row = fetch_by_id(cur, "vehicles", vehicle_id)
    if not row:
        raise HTTPException(status_code=404, detail="Veículo não encontrado")
    return row


def vehicle_label(row: sqlite3.Row) -> str:
    return (row["placa"] or row["registro_interno"] or f"#{row['id']}").strip()


def check_vehicle_readings(vehicle: sqlite3.Row, odometro: Any, horimetro: Any) -> Optional[str]:
    # com as duas leituras invalidas prevalece a do horimetro
    erro_horimetro = validate_meter_reading(horimetro, vehicle["horimetro"], "h")
    return erro_horimetro or validate_meter_reading(odometro, vehicle["odometro"], "km")


def raise_vehicle_meters(cur: sqlite3.Cursor, vehicle_id: Any, odometro: Any = None, horimetro: Any = None):
    """Leituras so avancam: o valor gravado e o maior entre o atual e o informado."""
    odo = safe_num(odometro)
    hor = safe_num(horimetro)
    if odo > 0:
        cur.execute(
            "UPDATE vehicles SET odometro = MAX(COALESCE(odometro, 0), ?) WHERE id=?",
            (odo, vehicle_id),
        )
    if hor > 0:
        cur.execute(
            "UPDATE vehicles SET horimetro = MAX(COALESCE(horimetro, 0), ?) WHERE id=?",
            (hor, vehicle_id),
        )


def get_fuel_levels(vehicle: sqlite3.Row) -> Dict[str, float]:
    levels = parse_json_safe(vehicle["fuel_levels"], "fuel_levels") or {}
    if not isinstance(levels, dict):
        return {}
    return {str(k): safe_num(v) for k, v in levels.items()}


def set_fuel_levels(cur: sqlite3.Cursor, vehicle_id: Any, levels: Dict[str, float]):
    cleaned = {k: round(v, 3) for k, v in levels.items()}
    cur.execute("UPDATE vehicles SET fuel_levels=? WHERE id=?", (dump_json(cleaned), vehicle_id))


def append_vehicle_history(cur: sqlite3.Cursor, vehicle_id: Any, event: Dict[str, Any]):
    cur.execute("SELECT history FROM vehicles WHERE id=?", (vehicle_id,))
    row = cur.fetchone()
    history = parse_json_safe(row["history"] if row else None, "history") or []
    if not isinstance(history, list):
        history = []
    history.append(event)
    cur.execute("UPDATE vehicles SET history=? WHERE id=?", (dump_json(history), vehicle_id))


def _open_allocation(cur: sqlite3.Cursor, vehicle_id: Any) -> Optional[sqlite3.Row]:
    cur.execute(
        """
        SELECT *
        FROM obras_historico_veiculos
        WHERE vehicle_id=? AND data_saida IS NULL
        ORDER BY id DESC
        LIMIT 1
        """,
        (vehicle_id,),
    )
    return cur.fetchone()


def desalocar_veiculo(
    cur: sqlite3.Cursor,
    vehicle: sqlite3.Row,
    data: str,
    odometro: Any,
    horimetro: Any,
    user: Dict[str, Any],
) -> Dict[str, Any]:
    """Encerra a alocacao aberta do veiculo. Chamado dentro da transacao do chamador."""
    aberta = _open_allocation(cur, vehicle["id"])
    alocado = parse_json_safe(vehicle["alocado_em"], "alocado_em")
    if not aberta and not alocado:
        raise HTTPException(status_code=409, detail=f"Veículo {vehicle_label(vehicle)} não está alocado.")

    odo = safe_num(odometro) or None
    hor = safe_num(horimetro) or None
    if aberta:
        cur.execute(
            """
            UPDATE obras_historico_veiculos
               SET data_saida=?,
                   odometro_saida=?,
                   horimetro_saida=?
             WHERE id=?
            """,
            (data, odo, hor, aberta["id"]),
        )

    obra_id = aberta["obra_id"] if aberta else (alocado or {}).get("obraId")
    employee_id = aberta["employee_id"] if aberta else (alocado or {}).get("employeeId")

    cur.execute(
        "UPDATE vehicles SET alocado_em=NULL, status=? WHERE id=?",
        (STATUS_DISPONIVEL, vehicle["id"]),
    )
    raise_vehicle_meters(cur, vehicle["id"], odo, hor)
    append_vehicle_history(
        cur,
        vehicle["id"],
        {
            "tipo": "desalocacao",
            "obraId": obra_id,
            "data": data,
            "odometro": odo,
            "horimetro": hor,
            "usuario": user_stamp(user),
        },
    )
    if employee_id:
        cur.execute("UPDATE employees SET alocado_em=NULL WHERE id=?", (employee_id,))

    logger.info("Veiculo %s desalocado da obra %s", vehicle["id"], obra_id)
    return {"vehicle_id": vehicle["id"], "obra_id": obra_id, "data_saida": data}


# =========================================================
# SCHEMAS (Pydantic)
# =========================================================
class VehicleIn(BaseModel):
    placa: Optional[str] = None
    registro_interno: Optional[str] = None
    modelo: Optional[str] = None
    marca: Optional[str] = None
    ano: Optional[str] = None
    tipo: Optional[str] = None
    grupo: Optional[str] = None
    status: Optional[str] = None
    odometro: Optional[float] = None
    horimetro: Optional[float] = None
    capacidade_tanque: Optional[float] = None
    proxima_revisao_km: Optional[float] = None
    proxima_revisao_horas: Optional[float] = None
    proxima_revisao_data: Optional[str] = None
    validade_tacografo: Optional[str] = None
    validade_licenciamento: Optional[str] = None
    foto_url: Optional[str] = None
    fuel_levels: Optional[Dict[str, float]] = None
    history: Optional[List[Dict[str, Any]]] = None


class AlocacaoIn(BaseModel):
    obra_id: int
    employee_id: Optional[int] = None
    data: Optional[str] = None
    odometro: Optional[float] = None
    horimetro: Optional[float] = None


class DesalocacaoIn(BaseModel):
    data: Optional[str] = None
    odometro: Optional[float] = None
    horimetro: Optional[float] = None


class ChecklistIn(BaseModel):
    vehicle_id: int
    data: Optional[str] = None
    pdf_path: Optional[str] = None
    items: Optional[Any] = None
    observacoes: Optional[str] = None
    mobile_id: Optional[str] = None


def _clean_vehicle_payload(payload: VehicleIn) -> Dict[str, Any]:
    data = payload.model_dump(exclude_unset=True)
    if data.get("placa"):
        data["placa"] = data["placa"].strip().upper()
    if data.get("fuel_levels") is not None:
        data["fuel_levels"] = {
            normalize_fuel_type(k) or k: safe_num(v) for k, v in data["fuel_levels"].items()
        }
    return data


# =========================================================
# CRUD
# =========================================================
@router.get("/vehicles")
def listar_veiculos(
    tipo: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    user=Depends(get_current_user),
):
    sql = "SELECT * FROM vehicles WHERE 1=1"
    params: List[Any] = []
    if tipo:
        sql += " AND UPPER(TRIM(COALESCE(tipo,'')))=?"
        params.append(tipo.strip().upper())
    if status:
        sql += " AND status=?"
        params.append(status)
    sql += " ORDER BY COALESCE(registro_interno, placa)"
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(sql, tuple(params))
        return [row_to_dict(r, VEHICLE_JSON_FIELDS) for r in cur.fetchall()]


@router.get("/vehicles/{vehicle_id}")
def obter_veiculo(vehicle_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        return row_to_dict(get_vehicle_or_404(conn.cursor(), vehicle_id), VEHICLE_JSON_FIELDS)


@router.post("/vehicles", status_code=201)
def criar_veiculo(payload: VehicleIn, user=Depends(get_current_user)):
    data = _clean_vehicle_payload(payload)
    if not data.get("placa") and not data.get("registro_interno"):
        raise HTTPException(status_code=400, detail="Informe a placa ou o registro interno do veículo.")
    data.setdefault("status", STATUS_DISPONIVEL)
    with get_conn() as conn:
        cur = conn.cursor()
        vehicle_id = insert_row(cur, "vehicles", data, VEHICLE_JSON_FIELDS)
        row = fetch_by_id(cur, "vehicles", vehicle_id)
    logger.info("Veiculo %s criado", vehicle_id)
    return row_to_dict(row, VEHICLE_JSON_FIELDS)


@router.put("/vehicles/{vehicle_id}")
def atualizar_veiculo(vehicle_id: int, payload: VehicleIn, user=Depends(get_current_user)):
    data = _clean_vehicle_payload(payload)
    with get_conn() as conn:
        cur = conn.cursor()
        get_vehicle_or_404(cur, vehicle_id)
        update_row(cur, "vehicles", vehicle_id, data, VEHICLE_JSON_FIELDS)
    return {"message": "Veículo atualizado com sucesso"}


@router.delete("/vehicles/{vehicle_id}", status_code=204)
def excluir_veiculo(vehicle_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        get_vehicle_or_404(cur, vehicle_id)
        cur.execute("DELETE FROM vehicles WHERE id=?", (vehicle_id,))
    return Response(status_code=204)


# =========================================================
# ALOCACAO EM OBRA
# =========================================================
@router.post("/vehicles/{vehicle_id}/alocar")
def alocar_veiculo(vehicle_id: int, payload: AlocacaoIn, user=Depends(get_current_user)):
    data = payload.data or now_iso()

    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        vehicle = get_vehicle_or_404(cur, vehicle_id)
        if _open_allocation(cur, vehicle_id) or parse_json_safe(vehicle["alocado_em"], "alocado_em"):
            raise HTTPException(
                status_code=409,
                detail=f"Veículo {vehicle_label(vehicle)} já está alocado. Desaloque antes de realocar.",
            )

        obra = fetch_by_id(cur, "obras", payload.obra_id)
        if not obra:
            raise HTTPException(status_code=404, detail="Obra não encontrada")
        if str(obra["status"] or "").strip().lower() in ("finalizada", "concluída", "concluida", "cancelada"):
            raise HTTPException(status_code=409, detail=f"Obra encerrada (status={obra['status']}).")

        employee = None
        if payload.employee_id:
            employee = fetch_by_id(cur, "employees", payload.employee_id)
            if not employee:
                raise HTTPException(status_code=404, detail="Funcionário não encontrado")

        erro = check_vehicle_readings(vehicle, payload.odometro, payload.horimetro)
        if erro:
            raise HTTPException(status_code=400, detail=erro)

        cur.execute(
            """
            INSERT INTO obras_historico_veiculos
                (obra_id, vehicle_id, employee_id, data_entrada, odometro_entrada, horimetro_entrada)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                obra["id"],
                vehicle_id,
                payload.employee_id,
                data,
                payload.odometro or vehicle["odometro"],
                payload.horimetro or vehicle["horimetro"],
            ),
        )

        alocado_em = {
            "obraId": obra["id"],
            "obraNome": obra["nome"],
            "employeeId": employee["id"] if employee else None,
            "employeeName": employee["name"] if employee else None,
            "dataEntrada": data,
        }
        cur.execute(
            "UPDATE vehicles SET alocado_em=?, status=? WHERE id=?",
            (dump_json(alocado_em), STATUS_EM_OBRA, vehicle_id),
        )
        raise_vehicle_meters(cur, vehicle_id, payload.odometro, payload.horimetro)
        append_vehicle_history(
            cur,
            vehicle_id,
            {
                "tipo": "alocacao",
                "obraId": obra["id"],
                "obraNome": obra["nome"],
                "employeeId": alocado_em["employeeId"],
                "data": data,
                "odometro": payload.odometro,
                "horimetro": payload.horimetro,
                "usuario": user_stamp(user),
            },
        )
        if employee:
            cur.execute(
                "UPDATE employees SET alocado_em=? WHERE id=?",
                (
                    dump_json(
                        {
                            "obraId": obra["id"],
                            "obraNome": obra["nome"],
                            "vehicleId": vehicle_id,
                            "placa": vehicle_label(vehicle),
                            "dataEntrada": data,
                        }
                    ),
                    employee["id"],
                ),
            )

    logger.info("Veiculo %s alocado na obra %s", vehicle_id, payload.obra_id)
    return {"ok": True, "status": STATUS_EM_OBRA, "alocado_em": alocado_em}


@router.post("/vehicles/{vehicle_id}/desalocar")
def desalocar(vehicle_id: int, payload: DesalocacaoIn, user=Depends(get_current_user)):
    data = payload.data or now_iso()
    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        vehicle = get_vehicle_or_404(cur, vehicle_id)
        erro = check_vehicle_readings(vehicle, payload.odometro, payload.horimetro)
        if erro:
            raise HTTPException(status_code=400, detail=erro)
        result = desalocar_veiculo(cur, vehicle, data, payload.odometro, payload.horimetro, user)
    return {"ok": True, "status": STATUS_DISPONIVEL, **result}


@router.get("/vehicles/{vehicle_id}/alocacoes")
def historico_alocacoes(vehicle_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        get_vehicle_or_404(cur, vehicle_id)
        cur.execute(
            """
            SELECT h.*, o.nome AS obra_nome, e.name AS employee_name
            FROM obras_historico_veiculos h
            LEFT JOIN obras o ON o.id = h.obra_id
            LEFT JOIN employees e ON e.id = h.employee_id
            WHERE h.vehicle_id=?
            ORDER BY h.data_entrada DESC, h.id DESC
            """,
            (vehicle_id,),
        )
        return [row_to_dict(r) for r in cur.fetchall()]


# =========================================================
# CHECKLISTS (metadados; o PDF ja vem hospedado)
# =========================================================
@router.post("/checklists", status_code=201)
def salvar_checklist(payload: ChecklistIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        get_vehicle_or_404(cur, payload.vehicle_id)
        checklist_id = insert_row(
            cur,
            "checklists",
            {
                "vehicle_id": payload.vehicle_id,
                "data_checklist": payload.data or now_iso(),
                "pdf_path": payload.pdf_path,
                "items_json": payload.items,
                "observacoes": payload.observacoes,
                "mobile_id": payload.mobile_id,
            },
            ("items_json",),
        )
    return {"message": "Checklist sincronizado com sucesso!", "id": checklist_id}


@router.get("/checklists/vehicle/{vehicle_id}")
def listar_checklists(vehicle_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT id, vehicle_id, data_checklist, pdf_path, items_json, observacoes, mobile_id, created_at
            FROM checklists
            WHERE vehicle_id=?
            ORDER BY data_checklist DESC
            """,
            (vehicle_id,),
        )
        return [row_to_dict(r, ("items_json",)) for r in cur.fetchall()]

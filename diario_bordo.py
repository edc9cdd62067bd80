import logging
import sqlite3
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel

from auth import get_current_user, user_stamp
from database import fetch_by_id, get_conn, insert_row, row_to_dict, update_row
from regras import DESCANSO_MINIMO_HORAS, now_iso, parse_datetime, rest_hours_between, safe_num
from veiculos import check_vehicle_readings, get_vehicle_or_404, raise_vehicle_meters

logger = logging.getLogger(__name__)

router = APIRouter(tags=["diario_bordo"])

DIARIO_JSON_FIELDS = ("start_readings", "end_readings", "breaks", "created_by")

EM_ANDAMENTO = "Em Andamento"
FINALIZADO = "Finalizado"


class DiarioIn(BaseModel):
    employee_id: Optional[int] = None
    vehicle_id: Optional[int] = None
    obra_id: Optional[int] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    start_readings: Optional[Dict[str, Any]] = None
    end_readings: Optional[Dict[str, Any]] = None
    breaks: Optional[List[Dict[str, Any]]] = None
    status: Optional[str] = None
    observation: Optional[str] = None


class StartJornadaIn(BaseModel):
    employee_id: int
    vehicle_id: Optional[int] = None
    obra_id: Optional[int] = None
    start_time: Optional[str] = None
    start_readings: Optional[Dict[str, Any]] = None
    observation: Optional[str] = None


class EndJornadaIn(BaseModel):
    end_time: Optional[str] = None
    end_readings: Optional[Dict[str, Any]] = None
    observation: Optional[str] = None


class PausaIn(BaseModel):
    time: Optional[str] = None
    motivo: Optional[str] = None


def _get_diario_or_404(cur: sqlite3.Cursor, diario_id: int) -> Dict[str, Any]:
    row = fetch_by_id(cur, "diario_de_bordo", diario_id)
    if not row:
        raise HTTPException(status_code=404, detail="Registro não encontrado")
    return row_to_dict(row, DIARIO_JSON_FIELDS)


def _exigir_aberto(diario: Dict[str, Any]):
    if diario["status"] != EM_ANDAMENTO:
        raise HTTPException(status_code=409, detail="Jornada já encerrada.")


def _parse_or_400(value: Any, campo: str):
    try:
        return parse_datetime(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Data/hora inválida em {campo}.")


def _normalizar_horario(value: Any, campo: str) -> Optional[str]:
    """Grava horarios sempre em ISO local (YYYY-MM-DDTHH:MM:SS)."""
    dt = _parse_or_400(value, campo)
    return dt.isoformat(timespec="seconds") if dt else None


def _normalizar_campos(data: Dict[str, Any]) -> Dict[str, Any]:
    for campo in ("start_time", "end_time"):
        if campo in data:
            data[campo] = _normalizar_horario(data[campo], campo)
    return data


def _fim_ultima_jornada(cur: sqlite3.Cursor, employee_id: int):
    cur.execute(
        "SELECT id, end_time FROM diario_de_bordo WHERE employee_id=? AND end_time IS NOT NULL",
        (employee_id,),
    )
    ultimo = None
    for r in cur.fetchall():
        try:
            fim = parse_datetime(r["end_time"])
        except ValueError:
            logger.warning("Diario %s com end_time invalido: %r", r["id"], r["end_time"])
            continue
        if fim and (ultimo is None or fim > ultimo):
            ultimo = fim
    return ultimo


# =========================================================
# CRUD
# =========================================================
@router.get("/diarioDeBordo")
def listar_diarios(
    employee_id: Optional[int] = Query(default=None),
    status: Optional[str] = Query(default=None),
    user=Depends(get_current_user),
):
    sql = "SELECT * FROM diario_de_bordo WHERE 1=1"
    params: List[Any] = []
    if employee_id:
        sql += " AND employee_id=?"
        params.append(employee_id)
    if status:
        sql += " AND status=?"
        params.append(status)
    sql += " ORDER BY start_time DESC, id DESC"
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(sql, tuple(params))
        return [row_to_dict(r, DIARIO_JSON_FIELDS) for r in cur.fetchall()]


@router.get("/diarioDeBordo/{diario_id}")
def obter_diario(diario_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        return _get_diario_or_404(conn.cursor(), diario_id)


@router.post("/diarioDeBordo", status_code=201)
def criar_diario(payload: DiarioIn, user=Depends(get_current_user)):
    data = _normalizar_campos(payload.model_dump(exclude_unset=True))
    if not data.get("employee_id"):
        raise HTTPException(status_code=400, detail="Funcionário é obrigatório.")
    data["created_by"] = user_stamp(user)
    with get_conn() as conn:
        diario_id = insert_row(conn.cursor(), "diario_de_bordo", data, DIARIO_JSON_FIELDS)
    return {"id": diario_id}


@router.put("/diarioDeBordo/{diario_id}")
def atualizar_diario(diario_id: int, payload: DiarioIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        _get_diario_or_404(cur, diario_id)
        update_row(
            cur,
            "diario_de_bordo",
            diario_id,
            _normalizar_campos(payload.model_dump(exclude_unset=True)),
            DIARIO_JSON_FIELDS,
        )
    return {"message": "Registro de diário de bordo atualizado com sucesso"}


@router.delete("/diarioDeBordo/{diario_id}", status_code=204)
def excluir_diario(diario_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        _get_diario_or_404(cur, diario_id)
        cur.execute("DELETE FROM diario_de_bordo WHERE id=?", (diario_id,))
    return Response(status_code=204)


# =========================================================
# JORNADA
# =========================================================
@router.post("/diarioDeBordo/start", status_code=201)
def iniciar_jornada(payload: StartJornadaIn, user=Depends(get_current_user)):
    inicio = _normalizar_horario(payload.start_time or now_iso(), "start_time")
    leituras = payload.start_readings or {}

    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        if not fetch_by_id(cur, "employees", payload.employee_id):
            raise HTTPException(status_code=404, detail="Funcionário não encontrado")

        cur.execute(
            "SELECT id FROM diario_de_bordo WHERE employee_id=? AND status=? LIMIT 1",
            (payload.employee_id, EM_ANDAMENTO),
        )
        aberta = cur.fetchone()
        if aberta:
            raise HTTPException(
                status_code=409,
                detail=f"Motorista já possui jornada em andamento (registro {aberta['id']}).",
            )

        ultimo_fim = _fim_ultima_jornada(cur, payload.employee_id)
        if ultimo_fim:
            descanso = rest_hours_between(ultimo_fim, inicio)
            if descanso < DESCANSO_MINIMO_HORAS:
                raise HTTPException(
                    status_code=409,
                    detail=(
                        f"Descanso mínimo de {DESCANSO_MINIMO_HORAS}h não cumprido "
                        f"({max(descanso, 0):.1f}h desde o fim da última jornada)."
                    ),
                )

        if payload.vehicle_id:
            vehicle = get_vehicle_or_404(cur, payload.vehicle_id)
            erro = check_vehicle_readings(vehicle, leituras.get("odometro"), leituras.get("horimetro"))
            if erro:
                raise HTTPException(status_code=400, detail=erro)
            raise_vehicle_meters(cur, payload.vehicle_id, leituras.get("odometro"), leituras.get("horimetro"))

        diario_id = insert_row(
            cur,
            "diario_de_bordo",
            {
                "employee_id": payload.employee_id,
                "vehicle_id": payload.vehicle_id,
                "obra_id": payload.obra_id,
                "start_time": inicio,
                "start_readings": leituras,
                "breaks": [],
                "status": EM_ANDAMENTO,
                "observation": payload.observation,
                "created_by": user_stamp(user),
            },
            DIARIO_JSON_FIELDS,
        )

    logger.info("Jornada %s iniciada (funcionario %s)", diario_id, payload.employee_id)
    return {"id": diario_id, "status": EM_ANDAMENTO, "start_time": inicio}


@router.put("/diarioDeBordo/{diario_id}/end")
def encerrar_jornada(diario_id: int, payload: EndJornadaIn, user=Depends(get_current_user)):
    fim = _normalizar_horario(payload.end_time or now_iso(), "end_time")
    fim_dt = parse_datetime(fim)
    leituras_fim = payload.end_readings or {}

    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        diario = _get_diario_or_404(cur, diario_id)
        _exigir_aberto(diario)

        inicio_dt = _parse_or_400(diario["start_time"], "start_time")
        if inicio_dt and fim_dt < inicio_dt:
            raise HTTPException(status_code=400, detail="Fim da jornada anterior ao início.")

        leituras_inicio = diario["start_readings"] or {}
        for campo, nome in (("odometro", "Odômetro"), ("horimetro", "Horímetro")):
            final = safe_num(leituras_fim.get(campo))
            inicial = safe_num(leituras_inicio.get(campo))
            if final > 0 and final < inicial:
                raise HTTPException(
                    status_code=400,
                    detail=f"{nome} final ({final:g}) menor que o inicial ({inicial:g}).",
                )

        pausas = diario["breaks"] or []
        for pausa in pausas:
            if not pausa.get("fim"):
                pausa["fim"] = fim

        mudancas = {"end_time": fim, "end_readings": leituras_fim, "breaks": pausas, "status": FINALIZADO}
        if payload.observation is not None:
            mudancas["observation"] = payload.observation
        update_row(cur, "diario_de_bordo", diario_id, mudancas, DIARIO_JSON_FIELDS)

        if diario["vehicle_id"]:
            raise_vehicle_meters(cur, diario["vehicle_id"], leituras_fim.get("odometro"), leituras_fim.get("horimetro"))

    logger.info("Jornada %s encerrada", diario_id)
    return {"message": "Jornada encerrada.", "end_time": fim}


@router.put("/diarioDeBordo/{diario_id}/start-break")
def iniciar_pausa(diario_id: int, payload: PausaIn, user=Depends(get_current_user)):
    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        diario = _get_diario_or_404(cur, diario_id)
        _exigir_aberto(diario)
        pausas = diario["breaks"] or []
        if any(not p.get("fim") for p in pausas):
            raise HTTPException(status_code=409, detail="Já existe uma pausa em aberto.")
        inicio = _normalizar_horario(payload.time or now_iso(), "time")
        pausas.append({"inicio": inicio, "fim": None, "motivo": payload.motivo})
        update_row(cur, "diario_de_bordo", diario_id, {"breaks": pausas}, DIARIO_JSON_FIELDS)
    return {"message": "Pausa iniciada.", "breaks": pausas}


@router.put("/diarioDeBordo/{diario_id}/end-break")
def encerrar_pausa(diario_id: int, payload: PausaIn, user=Depends(get_current_user)):
    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        diario = _get_diario_or_404(cur, diario_id)
        _exigir_aberto(diario)
        pausas = diario["breaks"] or []
        abertas = [p for p in pausas if not p.get("fim")]
        if not abertas:
            raise HTTPException(status_code=409, detail="Nenhuma pausa em aberto.")
        abertas[-1]["fim"] = _normalizar_horario(payload.time or now_iso(), "time")
        update_row(cur, "diario_de_bordo", diario_id, {"breaks": pausas}, DIARIO_JSON_FIELDS)
    return {"message": "Pausa encerrada.", "breaks": pausas}

import logging
import sqlite3
import uuid
from datetime import date
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field

from auth import get_current_user, user_stamp
from database import fetch_by_id, get_conn, insert_row, parse_json_safe, row_to_dict, update_row
from regras import now_iso, parse_datetime, safe_num
from veiculos import get_vehicle_or_404, raise_vehicle_meters

logger = logging.getLogger(__name__)

router = APIRouter(tags=["manutencao"])

REVISION_JSON_FIELDS = ("historico", "ultima_alteracao")

SITUACAO_VENCIDA = "vencida"
SITUACAO_ATENCAO = "atencao"
SITUACAO_OK = "ok"
SITUACAO_SEM_AGENDAMENTO = "sem_agendamento"

_GRAVIDADE = {SITUACAO_VENCIDA: 0, SITUACAO_ATENCAO: 1, SITUACAO_OK: 2, SITUACAO_SEM_AGENDAMENTO: 3}

TIRE_STATUS_ESTOQUE = "Estoque"
TIRE_STATUS_EM_USO = "Em Uso"
TIRE_LOCAL_ALMOXARIFADO = "Almoxarifado"
TIRE_LOCAL_VEICULO = "Veículo"


# =========================================================
# SCHEMAS (Pydantic)
# =========================================================
class RevisionIn(BaseModel):
    vehicle_id: Optional[int] = None
    tipo: Optional[str] = None
    descricao: Optional[str] = None
    proxima_revisao_data: Optional[str] = None
    proxima_revisao_odometro: Optional[float] = None
    aviso_antecedencia_dias: Optional[int] = None
    aviso_antecedencia_km_hr: Optional[float] = None


class CompleteRevisionIn(BaseModel):
    history_entry: Dict[str, Any] = Field(default_factory=dict)


class TireIn(BaseModel):
    fire_number: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    size: Optional[str] = None
    tire_condition: Optional[str] = None
    purchase_date: Optional[str] = None
    price: Optional[float] = None


class TireTransactionIn(BaseModel):
    tire_id: str
    type: Literal["install", "remove", "transfer_responsibility"]
    vehicle_id: Optional[int] = None
    position: Optional[str] = None
    date: Optional[str] = None
    odometer: Optional[float] = None
    horimeter: Optional[float] = None
    observation: Optional[str] = None
    obra_name: Optional[str] = None
    employee_name: Optional[str] = None


# =========================================================
# REVISOES
# =========================================================
def calcular_situacao(revisao: Dict[str, Any], vehicle: Optional[sqlite3.Row], hoje: Optional[date] = None) -> str:
    """
    Situacao da proxima revisao pelo medidor do veiculo e pela data agendada.
    Veiculos sem odometro sao comparados pelo horimetro.
    """
    hoje = hoje or date.today()
    situacoes = []

    alvo_medidor = safe_num(revisao.get("proxima_revisao_odometro"))
    if alvo_medidor > 0 and vehicle is not None:
        atual = safe_num(vehicle["odometro"]) or safe_num(vehicle["horimetro"])
        restante = alvo_medidor - atual
        if restante <= 0:
            situacoes.append(SITUACAO_VENCIDA)
        elif restante <= safe_num(revisao.get("aviso_antecedencia_km_hr")):
            situacoes.append(SITUACAO_ATENCAO)
        else:
            situacoes.append(SITUACAO_OK)

    if revisao.get("proxima_revisao_data"):
        try:
            alvo_data = parse_datetime(revisao["proxima_revisao_data"]).date()
        except ValueError:
            logger.warning("Data de revisao invalida (revisao %s)", revisao.get("id"))
        else:
            dias = (alvo_data - hoje).days
            if dias < 0:
                situacoes.append(SITUACAO_VENCIDA)
            elif dias <= int(safe_num(revisao.get("aviso_antecedencia_dias"))):
                situacoes.append(SITUACAO_ATENCAO)
            else:
                situacoes.append(SITUACAO_OK)

    if not situacoes:
        return SITUACAO_SEM_AGENDAMENTO
    return min(situacoes, key=lambda s: _GRAVIDADE[s])


def _get_revision_or_404(cur: sqlite3.Cursor, revision_id: int) -> sqlite3.Row:
    row = fetch_by_id(cur, "revisions", revision_id)
    if not row:
        raise HTTPException(status_code=404, detail="Revisão não encontrada")
    return row


@router.get("/revisions")
def listar_revisoes(vehicle_id: Optional[int] = Query(default=None), user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        if vehicle_id:
            cur.execute("SELECT * FROM revisions WHERE vehicle_id=? ORDER BY id", (vehicle_id,))
        else:
            cur.execute("SELECT * FROM revisions ORDER BY id")
        revisoes = [row_to_dict(r, REVISION_JSON_FIELDS) for r in cur.fetchall()]

        veiculos: Dict[Any, Optional[sqlite3.Row]] = {}
        for rev in revisoes:
            vid = rev["vehicle_id"]
            if vid not in veiculos:
                veiculos[vid] = fetch_by_id(cur, "vehicles", vid)
            rev["situacao"] = calcular_situacao(rev, veiculos[vid])

    revisoes.sort(key=lambda r: _GRAVIDADE[r["situacao"]])
    return revisoes


@router.get("/revisions/{revision_id}")
def obter_revisao(revision_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        rev = row_to_dict(_get_revision_or_404(cur, revision_id), REVISION_JSON_FIELDS)
        rev["situacao"] = calcular_situacao(rev, fetch_by_id(cur, "vehicles", rev["vehicle_id"]))
    return rev


@router.post("/revisions", status_code=201)
def criar_revisao(payload: RevisionIn, user=Depends(get_current_user)):
    data = payload.model_dump(exclude_unset=True)
    if not data.get("vehicle_id"):
        raise HTTPException(status_code=400, detail="Veículo é obrigatório.")
    data["historico"] = []
    data["ultima_alteracao"] = {"usuario": user_stamp(user), "data": now_iso()}
    with get_conn() as conn:
        cur = conn.cursor()
        get_vehicle_or_404(cur, data["vehicle_id"])
        revision_id = insert_row(cur, "revisions", data, REVISION_JSON_FIELDS)
    return {"id": revision_id}


@router.put("/revisions/{revision_id}")
def atualizar_revisao(revision_id: int, payload: RevisionIn, user=Depends(get_current_user)):
    data = payload.model_dump(exclude_unset=True)
    data["ultima_alteracao"] = {"usuario": user_stamp(user), "data": now_iso()}
    with get_conn() as conn:
        cur = conn.cursor()
        _get_revision_or_404(cur, revision_id)
        update_row(cur, "revisions", revision_id, data, REVISION_JSON_FIELDS)
    return {"message": "Revisão atualizada com sucesso"}


@router.put("/revisions/{revision_id}/complete")
def concluir_revisao(revision_id: int, payload: CompleteRevisionIn, user=Depends(get_current_user)):
    entry = dict(payload.history_entry)
    entry.setdefault("data", now_iso())
    entry.setdefault("usuario", user_stamp(user))

    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        rev = _get_revision_or_404(cur, revision_id)
        historico = parse_json_safe(rev["historico"], "historico") or []
        if not isinstance(historico, list):
            historico = []
        entry.setdefault("tipo", rev["tipo"])
        entry.setdefault("descricao", rev["descricao"])
        historico.append(entry)

        update_row(
            cur,
            "revisions",
            revision_id,
            {
                "proxima_revisao_data": None,
                "proxima_revisao_odometro": 0,
                "aviso_antecedencia_dias": 0,
                "aviso_antecedencia_km_hr": 0,
                "descricao": "",
                "historico": historico,
                "ultima_alteracao": {"usuario": user_stamp(user), "data": now_iso()},
            },
            REVISION_JSON_FIELDS,
        )
        raise_vehicle_meters(
            cur,
            rev["vehicle_id"],
            entry.get("odometro") or entry.get("odometer"),
            entry.get("horimetro") or entry.get("horimeter"),
        )

    logger.info("Revisao %s concluida (veiculo %s)", revision_id, rev["vehicle_id"])
    return {"message": "Revisão concluída com sucesso!"}


@router.delete("/revisions/{revision_id}", status_code=204)
def excluir_revisao(revision_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        _get_revision_or_404(cur, revision_id)
        cur.execute("DELETE FROM revisions WHERE id=?", (revision_id,))
    return Response(status_code=204)


# =========================================================
# PNEUS
# =========================================================
def _get_tire_or_404(cur: sqlite3.Cursor, tire_id: str) -> sqlite3.Row:
    row = fetch_by_id(cur, "tires", tire_id)
    if not row:
        raise HTTPException(status_code=404, detail="Pneu não encontrado")
    return row


@router.get("/tires")
def listar_pneus(user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT t.*, v.placa AS vehicle_placa, v.registro_interno AS vehicle_registro
            FROM tires t
            LEFT JOIN vehicles v ON t.current_vehicle_id = v.id
            ORDER BY t.fire_number ASC
            """
        )
        return [row_to_dict(r) for r in cur.fetchall()]


@router.post("/tires", status_code=201)
def criar_pneu(payload: TireIn, user=Depends(get_current_user)):
    if not payload.fire_number or not payload.brand or not payload.size:
        raise HTTPException(status_code=400, detail="Marca de fogo, Marca e Tamanho são obrigatórios.")

    tire_id = str(uuid.uuid4())
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT id FROM tires WHERE fire_number=?", (payload.fire_number,))
        if cur.fetchone():
            raise HTTPException(status_code=409, detail=f"Marca de fogo {payload.fire_number} já cadastrada.")
        insert_row(
            cur,
            "tires",
            {
                "id": tire_id,
                "fire_number": payload.fire_number,
                "brand": payload.brand,
                "model": payload.model,
                "size": payload.size,
                "tire_condition": payload.tire_condition or "Novo",
                "status": TIRE_STATUS_ESTOQUE,
                "purchase_date": payload.purchase_date,
                "price": payload.price,
                "location": TIRE_LOCAL_ALMOXARIFADO,
            },
        )
    return {"message": "Pneu cadastrado com sucesso!", "id": tire_id}


@router.put("/tires/{tire_id}")
def atualizar_pneu(tire_id: str, payload: TireIn, user=Depends(get_current_user)):
    # posicao, veiculo e local so mudam por movimentacao
    with get_conn() as conn:
        cur = conn.cursor()
        _get_tire_or_404(cur, tire_id)
        update_row(cur, "tires", tire_id, payload.model_dump(exclude_unset=True))
    return {"message": "Pneu atualizado."}


@router.post("/tires/transaction")
def movimentar_pneu(payload: TireTransactionIn, user=Depends(get_current_user)):
    observacao = payload.observation or ""
    vehicle_id = payload.vehicle_id

    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        tire = _get_tire_or_404(cur, payload.tire_id)

        if payload.type == "install":
            if not vehicle_id or not payload.position:
                raise HTTPException(status_code=400, detail="Veículo e Posição são obrigatórios para instalação.")
            get_vehicle_or_404(cur, vehicle_id)
            if tire["current_vehicle_id"]:
                raise HTTPException(status_code=409, detail="Pneu já está instalado em um veículo. Remova-o antes.")
            cur.execute(
                "SELECT id FROM tires WHERE current_vehicle_id=? AND position=? AND id != ?",
                (vehicle_id, payload.position, payload.tire_id),
            )
            if cur.fetchone():
                raise HTTPException(
                    status_code=409,
                    detail=f"A posição {payload.position} já possui um pneu instalado. Remova-o antes.",
                )
            cur.execute(
                "UPDATE tires SET status=?, current_vehicle_id=?, position=?, location=? WHERE id=?",
                (TIRE_STATUS_EM_USO, vehicle_id, payload.position, TIRE_LOCAL_VEICULO, payload.tire_id),
            )

        elif payload.type == "remove":
            vehicle_id = vehicle_id or tire["current_vehicle_id"]
            cur.execute(
                """
                UPDATE tires
                   SET status=?, current_vehicle_id=NULL, position=NULL, location=?
                 WHERE id=?
                """,
                (TIRE_STATUS_ESTOQUE, TIRE_LOCAL_ALMOXARIFADO, payload.tire_id),
            )

        else:
            obra = payload.obra_name or "N/A"
            responsavel = payload.employee_name or "N/A"
            cur.execute(
                """
                UPDATE tires
                   SET status=?, current_vehicle_id=NULL, position=NULL, location=?
                 WHERE id=?
                """,
                (TIRE_STATUS_EM_USO, f"Obra: {obra} / Resp: {responsavel}", payload.tire_id),
            )
            observacao = f"Enviado para {obra} (Resp: {responsavel}). Obs: {observacao}"

        cur.execute(
            """
            INSERT INTO tire_transactions (id, tire_id, vehicle_id, type, position, date, odometer, horimeter, observation)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                payload.tire_id,
                vehicle_id,
                payload.type,
                payload.position or (tire["position"] if payload.type == "remove" else None),
                payload.date or now_iso(),
                payload.odometer,
                payload.horimeter,
                observacao,
            ),
        )

        if vehicle_id:
            raise_vehicle_meters(cur, vehicle_id, payload.odometer, payload.horimeter)

    logger.info("Pneu %s: %s (veiculo %s)", tire["fire_number"], payload.type, vehicle_id)
    return {"message": "Movimentação registrada com sucesso!"}


@router.get("/tires/{tire_id}/history")
def historico_pneu(tire_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        _get_tire_or_404(cur, tire_id)
        cur.execute(
            """
            SELECT tt.*, v.placa, v.registro_interno
            FROM tire_transactions tt
            LEFT JOIN vehicles v ON tt.vehicle_id = v.id
            WHERE tt.tire_id=?
            ORDER BY tt.date DESC, tt.created_at DESC
            """,
            (tire_id,),
        )
        return [row_to_dict(r) for r in cur.fetchall()]


@router.get("/vehicles/{vehicle_id}/tires/history")
def historico_pneus_veiculo(vehicle_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT tt.*, t.fire_number, t.brand, t.model, t.size
            FROM tire_transactions tt
            JOIN tires t ON tt.tire_id = t.id
            WHERE tt.vehicle_id=?
            ORDER BY tt.date DESC, tt.created_at DESC
            """,
            (vehicle_id,),
        )
        rows: List[Dict[str, Any]] = [row_to_dict(r) for r in cur.fetchall()]
    return rows

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field

from auth import get_current_user, user_stamp
from database import fetch_by_id, get_conn, insert_row, parse_json_safe, row_to_dict, update_row, dump_json
from regras import normalize_fuel_type, now_iso, safe_num
from veiculos import desalocar_veiculo, get_vehicle_or_404, vehicle_label

logger = logging.getLogger(__name__)

router = APIRouter(tags=["cadastros"])

EMPLOYEE_JSON_FIELDS = ("alocado_em", "ultima_alteracao")
OBRA_JSON_FIELDS = ("horas_contratadas_por_tipo", "sectors", "ultimas_alteracoes")
PARTNER_JSON_FIELDS = ("fuel_prices", "ultima_alteracao")
FINE_JSON_FIELDS = ("vehicle_info", "employee_info", "ultima_alteracao")

STATUS_OBRA_FINALIZADA = "Finalizada"


def _alteracao(user: Dict[str, Any]) -> Dict[str, Any]:
    return {"usuario": user_stamp(user), "data": now_iso()}


def _get_or_404(cur: sqlite3.Cursor, table: str, row_id: Any, detail: str) -> sqlite3.Row:
    row = fetch_by_id(cur, table, row_id)
    if not row:
        raise HTTPException(status_code=404, detail=detail)
    return row


# =========================================================
# SCHEMAS (Pydantic)
# =========================================================
class EmployeeIn(BaseModel):
    name: Optional[str] = None
    registration: Optional[str] = None
    job_title: Optional[str] = None
    cpf: Optional[str] = None
    cnh: Optional[str] = None
    cnh_validade: Optional[str] = None
    phone: Optional[str] = None
    status: Optional[str] = None


class ObraIn(BaseModel):
    nome: Optional[str] = None
    cliente: Optional[str] = None
    endereco: Optional[str] = None
    responsavel: Optional[str] = None
    status: Optional[str] = None
    data_inicio: Optional[str] = None
    data_fim: Optional[str] = None
    valor_contrato: Optional[float] = None
    horas_contratadas_por_tipo: Optional[Dict[str, float]] = None
    sectors: Optional[List[Any]] = None


class FinishObraIn(BaseModel):
    data_fim: Optional[str] = None


class PartnerIn(BaseModel):
    razao_social: Optional[str] = None
    nome_fantasia: Optional[str] = None
    cnpj: Optional[str] = None
    tipo: Optional[str] = None
    cidade: Optional[str] = None
    contato: Optional[str] = None
    fuel_prices: Optional[Dict[str, float]] = None


class PartnerPricesIn(BaseModel):
    fuel_prices: Dict[str, float] = Field(default_factory=dict)


class FineIn(BaseModel):
    vehicle_id: Optional[int] = None
    employee_id: Optional[int] = None
    auto_infracao: Optional[str] = None
    data_infracao: Optional[str] = None
    descricao: Optional[str] = None
    valor: Optional[float] = None
    pontos: Optional[int] = None
    status: Optional[str] = None


def _normalize_prices(prices: Optional[Dict[str, Any]]) -> Dict[str, float]:
    out: Dict[str, float] = {}
    for k, v in (prices or {}).items():
        key = normalize_fuel_type(k)
        if key:
            out[key] = safe_num(v)
    return out


# =========================================================
# FUNCIONARIOS
# =========================================================
@router.get("/employees")
def listar_funcionarios(status: Optional[str] = Query(default=None), user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        if status:
            cur.execute("SELECT * FROM employees WHERE status=? ORDER BY name", (status,))
        else:
            cur.execute("SELECT * FROM employees ORDER BY name")
        return [row_to_dict(r, EMPLOYEE_JSON_FIELDS) for r in cur.fetchall()]


@router.get("/employees/{employee_id}")
def obter_funcionario(employee_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        row = _get_or_404(conn.cursor(), "employees", employee_id, "Funcionário não encontrado")
        return row_to_dict(row, EMPLOYEE_JSON_FIELDS)


@router.post("/employees", status_code=201)
def criar_funcionario(payload: EmployeeIn, user=Depends(get_current_user)):
    data = payload.model_dump(exclude_unset=True)
    if not (data.get("name") or "").strip():
        raise HTTPException(status_code=400, detail="Nome do funcionário é obrigatório.")
    data["ultima_alteracao"] = _alteracao(user)
    with get_conn() as conn:
        employee_id = insert_row(conn.cursor(), "employees", data, EMPLOYEE_JSON_FIELDS)
    return {"id": employee_id}


@router.put("/employees/{employee_id}")
def atualizar_funcionario(employee_id: int, payload: EmployeeIn, user=Depends(get_current_user)):
    data = payload.model_dump(exclude_unset=True)
    data["ultima_alteracao"] = _alteracao(user)
    with get_conn() as conn:
        cur = conn.cursor()
        _get_or_404(cur, "employees", employee_id, "Funcionário não encontrado")
        update_row(cur, "employees", employee_id, data, EMPLOYEE_JSON_FIELDS)
    return {"message": "Funcionário atualizado com sucesso"}


@router.delete("/employees/{employee_id}", status_code=204)
def excluir_funcionario(employee_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        _get_or_404(cur, "employees", employee_id, "Funcionário não encontrado")
        cur.execute("DELETE FROM employees WHERE id=?", (employee_id,))
    return Response(status_code=204)


# =========================================================
# OBRAS
# =========================================================
def _registrar_alteracao_obra(cur: sqlite3.Cursor, obra: sqlite3.Row, user: Dict[str, Any], acao: str):
    alteracoes = parse_json_safe(obra["ultimas_alteracoes"], "ultimas_alteracoes") or []
    if not isinstance(alteracoes, list):
        alteracoes = []
    alteracoes.append({**_alteracao(user), "acao": acao})
    cur.execute(
        "UPDATE obras SET ultimas_alteracoes=? WHERE id=?",
        (dump_json(alteracoes[-20:]), obra["id"]),
    )


@router.get("/obras")
def listar_obras(status: Optional[str] = Query(default=None), user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        if status:
            cur.execute("SELECT * FROM obras WHERE status=? ORDER BY nome", (status,))
        else:
            cur.execute("SELECT * FROM obras ORDER BY nome")
        return [row_to_dict(r, OBRA_JSON_FIELDS) for r in cur.fetchall()]


@router.get("/obras/{obra_id}")
def obter_obra(obra_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        return row_to_dict(_get_or_404(conn.cursor(), "obras", obra_id, "Obra não encontrada"), OBRA_JSON_FIELDS)


@router.post("/obras", status_code=201)
def criar_obra(payload: ObraIn, user=Depends(get_current_user)):
    data = payload.model_dump(exclude_unset=True)
    if not (data.get("nome") or "").strip():
        raise HTTPException(status_code=400, detail="Nome da obra é obrigatório.")
    data["ultimas_alteracoes"] = [{**_alteracao(user), "acao": "criacao"}]
    with get_conn() as conn:
        obra_id = insert_row(conn.cursor(), "obras", data, OBRA_JSON_FIELDS)
    logger.info("Obra %s criada", obra_id)
    return {"id": obra_id}


@router.put("/obras/{obra_id}")
def atualizar_obra(obra_id: int, payload: ObraIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        obra = _get_or_404(cur, "obras", obra_id, "Obra não encontrada")
        update_row(cur, "obras", obra_id, payload.model_dump(exclude_unset=True), OBRA_JSON_FIELDS)
        _registrar_alteracao_obra(cur, obra, user, "edicao")
    return {"message": "Obra atualizada com sucesso"}


@router.put("/obras/{obra_id}/finish")
def finalizar_obra(obra_id: int, payload: FinishObraIn, user=Depends(get_current_user)):
    data_fim = payload.data_fim or now_iso()

    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        obra = _get_or_404(cur, "obras", obra_id, "Obra não encontrada")
        if obra["status"] == STATUS_OBRA_FINALIZADA:
            raise HTTPException(status_code=409, detail="Obra já está finalizada.")

        cur.execute(
            """
            SELECT DISTINCT vehicle_id
            FROM obras_historico_veiculos
            WHERE obra_id=? AND data_saida IS NULL
            """,
            (obra_id,),
        )
        vehicle_ids = [r["vehicle_id"] for r in cur.fetchall()]

        desalocados = []
        for vehicle_id in vehicle_ids:
            vehicle = get_vehicle_or_404(cur, vehicle_id)
            desalocar_veiculo(cur, vehicle, data_fim, None, None, user)
            desalocados.append(vehicle_label(vehicle))

        cur.execute(
            "UPDATE obras SET status=?, data_fim=? WHERE id=?",
            (STATUS_OBRA_FINALIZADA, data_fim, obra_id),
        )
        _registrar_alteracao_obra(cur, obra, user, "finalizacao")

    logger.info("Obra %s finalizada; %d veiculo(s) desalocado(s)", obra_id, len(desalocados))
    return {"message": "Obra finalizada com sucesso", "veiculos_desalocados": desalocados}


@router.delete("/obras/{obra_id}", status_code=204)
def excluir_obra(obra_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        _get_or_404(cur, "obras", obra_id, "Obra não encontrada")
        cur.execute(
            "SELECT COUNT(*) AS n FROM obras_historico_veiculos WHERE obra_id=? AND data_saida IS NULL",
            (obra_id,),
        )
        if cur.fetchone()["n"]:
            raise HTTPException(status_code=409, detail="Obra possui veículos alocados. Finalize-a primeiro.")
        cur.execute("DELETE FROM obras WHERE id=?", (obra_id,))
    return Response(status_code=204)


# =========================================================
# PARCEIROS (postos / fornecedores)
# =========================================================
@router.get("/partners")
def listar_parceiros(user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM partners ORDER BY razao_social")
        return [row_to_dict(r, PARTNER_JSON_FIELDS) for r in cur.fetchall()]


@router.get("/partners/{partner_id}")
def obter_parceiro(partner_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        row = _get_or_404(conn.cursor(), "partners", partner_id, "Parceiro não encontrado")
        return row_to_dict(row, PARTNER_JSON_FIELDS)


@router.post("/partners", status_code=201)
def criar_parceiro(payload: PartnerIn, user=Depends(get_current_user)):
    data = payload.model_dump(exclude_unset=True)
    if not (data.get("razao_social") or "").strip():
        raise HTTPException(status_code=400, detail="Razão social é obrigatória.")
    if "fuel_prices" in data:
        data["fuel_prices"] = _normalize_prices(data["fuel_prices"])
    data["ultima_alteracao"] = _alteracao(user)
    with get_conn() as conn:
        partner_id = insert_row(conn.cursor(), "partners", data, PARTNER_JSON_FIELDS)
    return {"id": partner_id}


@router.put("/partners/{partner_id}")
def atualizar_parceiro(partner_id: int, payload: PartnerIn, user=Depends(get_current_user)):
    data = payload.model_dump(exclude_unset=True)
    if "fuel_prices" in data:
        data["fuel_prices"] = _normalize_prices(data["fuel_prices"])
    data["ultima_alteracao"] = _alteracao(user)
    with get_conn() as conn:
        cur = conn.cursor()
        _get_or_404(cur, "partners", partner_id, "Parceiro não encontrado")
        update_row(cur, "partners", partner_id, data, PARTNER_JSON_FIELDS)
    return {"message": "Parceiro atualizado com sucesso"}


@router.put("/partners/{partner_id}/prices")
def atualizar_precos(partner_id: int, payload: PartnerPricesIn, user=Depends(get_current_user)):
    with get_conn(immediate=True) as conn:
        cur = conn.cursor()
        partner = _get_or_404(cur, "partners", partner_id, "Parceiro não encontrado")
        precos = parse_json_safe(partner["fuel_prices"], "fuel_prices") or {}
        if not isinstance(precos, dict):
            precos = {}
        precos.update(_normalize_prices(payload.fuel_prices))
        update_row(
            cur,
            "partners",
            partner_id,
            {"fuel_prices": precos, "ultima_alteracao": _alteracao(user)},
            PARTNER_JSON_FIELDS,
        )
    logger.info("Precos do parceiro %s atualizados: %s", partner_id, sorted(payload.fuel_prices))
    return {"message": "Preços atualizados com sucesso", "fuel_prices": precos}


@router.delete("/partners/{partner_id}", status_code=204)
def excluir_parceiro(partner_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        _get_or_404(cur, "partners", partner_id, "Parceiro não encontrado")
        cur.execute("DELETE FROM partners WHERE id=?", (partner_id,))
    return Response(status_code=204)


# =========================================================
# MULTAS
# =========================================================
def _fine_snapshots(cur: sqlite3.Cursor, data: Dict[str, Any]):
    """Congela placa/nome na multa para o historico nao mudar com o cadastro."""
    if data.get("vehicle_id"):
        v = _get_or_404(cur, "vehicles", data["vehicle_id"], "Veículo não encontrado")
        data["vehicle_info"] = {"placa": v["placa"], "registroInterno": v["registro_interno"], "modelo": v["modelo"]}
    if data.get("employee_id"):
        e = _get_or_404(cur, "employees", data["employee_id"], "Funcionário não encontrado")
        data["employee_info"] = {"name": e["name"], "cnh": e["cnh"]}


@router.get("/fines")
def listar_multas(user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM fines ORDER BY data_infracao DESC, id DESC")
        return [row_to_dict(r, FINE_JSON_FIELDS) for r in cur.fetchall()]


@router.get("/fines/{fine_id}")
def obter_multa(fine_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        return row_to_dict(_get_or_404(conn.cursor(), "fines", fine_id, "Multa não encontrada"), FINE_JSON_FIELDS)


@router.post("/fines", status_code=201)
def criar_multa(payload: FineIn, user=Depends(get_current_user)):
    data = payload.model_dump(exclude_unset=True)
    data["ultima_alteracao"] = _alteracao(user)
    with get_conn() as conn:
        cur = conn.cursor()
        _fine_snapshots(cur, data)
        fine_id = insert_row(cur, "fines", data, FINE_JSON_FIELDS)
    return {"id": fine_id}


@router.put("/fines/{fine_id}")
def atualizar_multa(fine_id: int, payload: FineIn, user=Depends(get_current_user)):
    data = payload.model_dump(exclude_unset=True)
    data["ultima_alteracao"] = _alteracao(user)
    with get_conn() as conn:
        cur = conn.cursor()
        _get_or_404(cur, "fines", fine_id, "Multa não encontrada")
        _fine_snapshots(cur, data)
        update_row(cur, "fines", fine_id, data, FINE_JSON_FIELDS)
    return {"message": "Multa atualizada com sucesso"}


@router.delete("/fines/{fine_id}", status_code=204)
def excluir_multa(fine_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        cur = conn.cursor()
        _get_or_404(cur, "fines", fine_id, "Multa não encontrada")
        cur.execute("DELETE FROM fines WHERE id=?", (fine_id,))
    return Response(status_code=204)

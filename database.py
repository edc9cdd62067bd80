import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# Prioridade:
# 1) variavel de ambiente FROTA_DB
# 2) frota_obras.db na pasta do projeto
DB_PATH = os.environ.get("FROTA_DB") or os.path.join(BASE_DIR, "frota_obras.db")

COUNTERS = ("refuelingCounter", "purchaseOrderCounter")


@contextmanager
def get_conn(immediate: bool = False):
    conn = sqlite3.connect(DB_PATH)
    try:
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA busy_timeout = 5000")
    except sqlite3.DatabaseError:
        logger.warning("Nao foi possivel aplicar PRAGMAs em %s", DB_PATH)
    conn.row_factory = sqlite3.Row
    try:
        if immediate:
            # trava de escrita desde a primeira leitura (saldos, contadores)
            conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _colunas_da_tabela(cursor, tabela: str) -> set:
    cursor.execute(f"PRAGMA table_info({tabela})")
    return {row[1] for row in cursor.fetchall()}


def col_exists(conn: sqlite3.Connection, table: str, col: str) -> bool:
    return col in _colunas_da_tabela(conn.cursor(), table)


def _add_coluna_se_nao_existir(cursor, tabela: str, coluna: str, ddl: str):
    cols = _colunas_da_tabela(cursor, tabela)
    if coluna not in cols:
        cursor.execute(f"ALTER TABLE {tabela} ADD COLUMN {ddl}")


# =========================================================
# JSON EM COLUNAS TEXTO
# =========================================================
def dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def parse_json_safe(raw: Any, key: str = "") -> Any:
    if raw is None:
        return None
    if isinstance(raw, (dict, list)):
        return raw
    if not isinstance(raw, str):
        return raw
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning("Falha ao decodificar JSON do campo '%s': %r", key, raw[:80])
        return None
    if isinstance(parsed, (dict, list)):
        return parsed
    return None


def row_to_dict(row: sqlite3.Row, json_fields: Iterable[str] = ()) -> Dict[str, Any]:
    if row is None:
        return {}
    data = {k: row[k] for k in row.keys()}
    for field in json_fields:
        if field in data:
            data[field] = parse_json_safe(data[field], field)
    return data


def insert_row(cur: sqlite3.Cursor, table: str, data: Dict[str, Any], json_fields: Iterable[str] = ()) -> int:
    """INSERT com colunas vindas de um schema pydantic. Retorna lastrowid."""
    json_fields = set(json_fields)
    cols = list(data.keys())
    values = [dump_json(data[c]) if c in json_fields else data[c] for c in cols]
    placeholders = ", ".join("?" for _ in cols)
    cur.execute(f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({placeholders})", values)
    return cur.lastrowid


def update_row(
    cur: sqlite3.Cursor,
    table: str,
    row_id: Any,
    data: Dict[str, Any],
    json_fields: Iterable[str] = (),
) -> int:
    json_fields = set(json_fields)
    cols = [c for c in data.keys() if c != "id"]
    if not cols:
        return 0
    values = [dump_json(data[c]) if c in json_fields else data[c] for c in cols]
    set_clause = ", ".join(f"{c}=?" for c in cols)
    cur.execute(f"UPDATE {table} SET {set_clause} WHERE id=?", (*values, row_id))
    return cur.rowcount


def fetch_by_id(cur: sqlite3.Cursor, table: str, row_id: Any) -> Optional[sqlite3.Row]:
    cur.execute(f"SELECT * FROM {table} WHERE id=? LIMIT 1", (row_id,))
    return cur.fetchone()


def next_counter(cur: sqlite3.Cursor, name: str) -> int:
    """Incrementa o contador dentro da transacao corrente."""
    cur.execute("SELECT last_number FROM counters WHERE name=?", (name,))
    row = cur.fetchone()
    novo = int(row["last_number"] or 0) + 1 if row else 1
    if row:
        cur.execute("UPDATE counters SET last_number=? WHERE name=?", (novo, name))
    else:
        cur.execute("INSERT INTO counters (name, last_number) VALUES (?, ?)", (name, novo))
    return novo


def ensure_tables():
    """
    Cria o esquema completo sem quebrar um banco existente.
    """
    with get_conn() as conn:
        cursor = conn.cursor()

        # ===================== USUARIOS =====================
        cursor.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT NOT NULL UNIQUE,
            password TEXT NOT NULL,
            role TEXT NOT NULL DEFAULT 'operador',
            name TEXT,
            phone TEXT,
            employee_id INTEGER,
            can_access_refueling INTEGER DEFAULT 0,
            bloqueado_abastecimento INTEGER DEFAULT 0,
            tentativas_falhas_abastecimento INTEGER DEFAULT 0,
            created_at TEXT DEFAULT (datetime('now'))
        )
        """)
        _add_coluna_se_nao_existir(cursor, "users", "employee_id", "employee_id INTEGER")
        _add_coluna_se_nao_existir(
            cursor, "users", "can_access_refueling", "can_access_refueling INTEGER DEFAULT 0"
        )

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS registration_requests (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT NOT NULL,
            name TEXT,
            phone TEXT,
            message TEXT,
            requested_at TEXT DEFAULT (datetime('now'))
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS updates (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            message TEXT NOT NULL,
            show_popup INTEGER DEFAULT 0,
            is_current INTEGER DEFAULT 0,
            timestamp TEXT DEFAULT (datetime('now'))
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS counters (
            name TEXT PRIMARY KEY,
            last_number INTEGER NOT NULL DEFAULT 0
        )
        """)
        for name in COUNTERS:
            cursor.execute("INSERT OR IGNORE INTO counters (name, last_number) VALUES (?, 0)", (name,))

        # ===================== CADASTROS =====================
        cursor.execute("""
        CREATE TABLE IF NOT EXISTS obras (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            nome TEXT NOT NULL,
            cliente TEXT,
            endereco TEXT,
            responsavel TEXT,
            status TEXT DEFAULT 'Ativa',
            data_inicio TEXT,
            data_fim TEXT,
            valor_contrato REAL DEFAULT 0,
            horas_contratadas_por_tipo TEXT,
            sectors TEXT,
            ultimas_alteracoes TEXT
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS employees (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            registration TEXT,
            job_title TEXT,
            cpf TEXT,
            cnh TEXT,
            cnh_validade TEXT,
            phone TEXT,
            status TEXT DEFAULT 'Ativo',
            alocado_em TEXT,
            ultima_alteracao TEXT
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS vehicles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            placa TEXT,
            registro_interno TEXT,
            modelo TEXT,
            marca TEXT,
            ano TEXT,
            tipo TEXT,
            grupo TEXT,
            status TEXT DEFAULT 'Disponível',
            odometro REAL DEFAULT 0,
            horimetro REAL DEFAULT 0,
            capacidade_tanque REAL,
            proxima_revisao_km REAL,
            proxima_revisao_horas REAL,
            proxima_revisao_data TEXT,
            validade_tacografo TEXT,
            validade_licenciamento TEXT,
            foto_url TEXT,
            fuel_levels TEXT,
            alocado_em TEXT,
            history TEXT
        )
        """)
        cursor.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_vehicles_placa_unique
        ON vehicles (placa) WHERE placa IS NOT NULL AND placa != ''
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS partners (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            razao_social TEXT NOT NULL,
            nome_fantasia TEXT,
            cnpj TEXT,
            tipo TEXT,
            cidade TEXT,
            contato TEXT,
            fuel_prices TEXT,
            ultima_alteracao TEXT
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS fines (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            vehicle_id INTEGER,
            employee_id INTEGER,
            auto_infracao TEXT,
            data_infracao TEXT,
            descricao TEXT,
            valor REAL DEFAULT 0,
            pontos INTEGER DEFAULT 0,
            status TEXT DEFAULT 'Pendente',
            vehicle_info TEXT,
            employee_info TEXT,
            ultima_alteracao TEXT
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS obras_historico_veiculos (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            obra_id INTEGER NOT NULL REFERENCES obras(id),
            vehicle_id INTEGER NOT NULL REFERENCES vehicles(id) ON DELETE CASCADE,
            employee_id INTEGER,
            data_entrada TEXT NOT NULL,
            data_saida TEXT,
            odometro_entrada REAL,
            horimetro_entrada REAL,
            odometro_saida REAL,
            horimetro_saida REAL
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS checklists (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            vehicle_id INTEGER NOT NULL REFERENCES vehicles(id) ON DELETE CASCADE,
            data_checklist TEXT,
            pdf_path TEXT,
            items_json TEXT,
            observacoes TEXT,
            mobile_id TEXT,
            created_at TEXT DEFAULT (datetime('now'))
        )
        """)

        # ===================== COMBUSTIVEL =====================
        cursor.execute("""
        CREATE TABLE IF NOT EXISTS refuelings (
            id TEXT PRIMARY KEY,
            auth_number INTEGER NOT NULL,
            vehicle_id INTEGER REFERENCES vehicles(id),
            partner_id INTEGER,
            partner_name TEXT,
            employee_id INTEGER,
            obra_id INTEGER,
            fuel_type TEXT,
            data TEXT,
            status TEXT NOT NULL DEFAULT 'Aberta',
            is_fill_up INTEGER DEFAULT 0,
            needs_arla INTEGER DEFAULT 0,
            is_fill_up_arla INTEGER DEFAULT 0,
            litros_liberados REAL DEFAULT 0,
            litros_liberados_arla REAL DEFAULT 0,
            litros_abastecidos REAL DEFAULT 0,
            litros_abastecidos_arla REAL DEFAULT 0,
            preco_combustivel REAL DEFAULT 0,
            preco_arla REAL DEFAULT 0,
            outros TEXT,
            outros_valor REAL DEFAULT 0,
            outros_gera_valor INTEGER DEFAULT 0,
            valor_total REAL DEFAULT 0,
            odometro REAL,
            horimetro REAL,
            pdf_url TEXT,
            created_by TEXT,
            confirmed_by TEXT,
            edited_by TEXT,
            data_confirmacao TEXT
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS comboio_transactions (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL CHECK(type IN ('entrada', 'saida', 'drenagem')),
            date TEXT NOT NULL,
            comboio_vehicle_id INTEGER NOT NULL REFERENCES vehicles(id),
            partner_id INTEGER,
            partner_name TEXT,
            receiving_vehicle_id INTEGER,
            drained_vehicle_id INTEGER,
            employee_id INTEGER,
            obra_id INTEGER,
            fuel_type TEXT NOT NULL,
            liters REAL NOT NULL,
            unit_price REAL DEFAULT 0,
            value REAL DEFAULT 0,
            odometro REAL,
            horimetro REAL,
            reason TEXT,
            created_by TEXT,
            created_at TEXT DEFAULT (datetime('now'))
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS solicitacoes_abastecimento (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            usuario_id INTEGER NOT NULL,
            veiculo_id INTEGER NOT NULL,
            obra_id INTEGER,
            posto_id INTEGER,
            funcionario_id INTEGER,
            tipo_combustivel TEXT,
            litragem_solicitada REAL DEFAULT 0,
            flag_tanque_cheio INTEGER DEFAULT 0,
            flag_outros INTEGER DEFAULT 0,
            horimetro_informado REAL,
            odometro_informado REAL,
            foto_painel_path TEXT,
            foto_cupom_path TEXT,
            geo_latitude REAL,
            geo_longitude REAL,
            observacao TEXT,
            status TEXT NOT NULL DEFAULT 'PENDENTE',
            motivo_negativa TEXT,
            aprovado_por_usuario_id INTEGER,
            refueling_id TEXT,
            data_solicitacao TEXT,
            data_aprovacao TEXT,
            data_baixa TEXT
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS inactivity_alerts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            vehicle_id INTEGER NOT NULL,
            last_refueling_date TEXT,
            status TEXT DEFAULT 'Ativo',
            observation TEXT,
            dismissed_at TEXT,
            created_at TEXT DEFAULT (datetime('now'))
        )
        """)

        # ===================== MANUTENCAO =====================
        cursor.execute("""
        CREATE TABLE IF NOT EXISTS revisions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            vehicle_id INTEGER NOT NULL REFERENCES vehicles(id) ON DELETE CASCADE,
            tipo TEXT,
            descricao TEXT,
            proxima_revisao_data TEXT,
            proxima_revisao_odometro REAL DEFAULT 0,
            aviso_antecedencia_dias INTEGER DEFAULT 0,
            aviso_antecedencia_km_hr REAL DEFAULT 0,
            historico TEXT,
            ultima_alteracao TEXT
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS tires (
            id TEXT PRIMARY KEY,
            fire_number TEXT NOT NULL UNIQUE,
            brand TEXT NOT NULL,
            model TEXT,
            size TEXT NOT NULL,
            tire_condition TEXT DEFAULT 'Novo',
            status TEXT DEFAULT 'Estoque',
            purchase_date TEXT,
            price REAL,
            location TEXT DEFAULT 'Almoxarifado',
            current_vehicle_id INTEGER REFERENCES vehicles(id) ON DELETE SET NULL,
            position TEXT
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS tire_transactions (
            id TEXT PRIMARY KEY,
            tire_id TEXT NOT NULL REFERENCES tires(id) ON DELETE CASCADE,
            vehicle_id INTEGER,
            type TEXT NOT NULL,
            position TEXT,
            date TEXT,
            odometer REAL,
            horimeter REAL,
            observation TEXT,
            created_at TEXT DEFAULT (datetime('now'))
        )
        """)

        # ===================== FINANCEIRO =====================
        cursor.execute("""
        CREATE TABLE IF NOT EXISTS expenses (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            obra_id INTEGER,
            description TEXT,
            amount REAL NOT NULL DEFAULT 0,
            category TEXT,
            created_at TEXT DEFAULT (datetime('now')),
            week_start_date TEXT,
            fuel_type TEXT,
            partner_name TEXT,
            order_id INTEGER,
            created_by TEXT
        )
        """)
        cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_expenses_semana
        ON expenses (obra_id, week_start_date, fuel_type, partner_name)
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_number INTEGER NOT NULL,
            date TEXT,
            supplier TEXT,
            obra_id INTEGER,
            vehicle_id INTEGER,
            status TEXT,
            total_value REAL DEFAULT 0,
            items TEXT,
            payment TEXT,
            observation TEXT,
            created_by TEXT,
            edited_by TEXT
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS daily_work_logs (
            id TEXT PRIMARY KEY,
            obra_id INTEGER NOT NULL,
            vehicle_id INTEGER NOT NULL REFERENCES vehicles(id) ON DELETE CASCADE,
            employee_id INTEGER,
            date TEXT NOT NULL,
            morning_start TEXT,
            morning_end TEXT,
            afternoon_start TEXT,
            afternoon_end TEXT,
            total_hours REAL DEFAULT 0,
            observation TEXT
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS obra_contracts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            obra_id INTEGER NOT NULL UNIQUE,
            total_value REAL DEFAULT 0,
            total_hours_contracted REAL DEFAULT 0,
            start_date TEXT,
            expected_end_date TEXT,
            fiscal_nome TEXT
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS obra_crm_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            obra_id INTEGER NOT NULL,
            supervisor_id INTEGER,
            supervisor_name TEXT,
            tipo_interacao TEXT,
            resumo_conversa TEXT,
            data_proximo_contato TEXT,
            created_at TEXT DEFAULT (datetime('now'))
        )
        """)

        # ===================== DIARIO DE BORDO =====================
        cursor.execute("""
        CREATE TABLE IF NOT EXISTS diario_de_bordo (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            employee_id INTEGER NOT NULL,
            vehicle_id INTEGER,
            obra_id INTEGER,
            start_time TEXT,
            end_time TEXT,
            start_readings TEXT,
            end_readings TEXT,
            breaks TEXT,
            status TEXT DEFAULT 'Em Andamento',
            observation TEXT,
            created_by TEXT
        )
        """)

        conn.commit()

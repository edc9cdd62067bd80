import argparse
import shutil
import sqlite3
from datetime import datetime
from pathlib import Path

import database

# filhos antes dos pais (historicos e lancamentos primeiro)
TABLES_TO_CLEAR = [
    "tire_transactions",
    "tires",
    "revisions",
    "checklists",
    "diario_de_bordo",
    "solicitacoes_abastecimento",
    "refuelings",
    "comboio_transactions",
    "inactivity_alerts",
    "expenses",
    "orders",
    "daily_work_logs",
    "obra_crm_logs",
    "obra_contracts",
    "obras_historico_veiculos",
    "fines",
    "vehicles",
    "employees",
    "partners",
    "obras",
]


def confirm() -> bool:
    resp = input(
        "Este script vai apagar os dados operacionais do banco (veículos, obras, abastecimentos, despesas etc.).\n"
        "Usuários e avisos são mantidos. Os contadores voltam a zero.\n"
        "Deseja continuar? [s/N]: "
    )
    return resp.strip().lower() in {"s", "sim", "y", "yes"}


def clear_tables(conn: sqlite3.Connection):
    cur = conn.cursor()
    cur.execute("PRAGMA foreign_keys=OFF")
    try:
        for table in TABLES_TO_CLEAR:
            cur.execute(f"DELETE FROM {table}")
            cur.execute("DELETE FROM sqlite_sequence WHERE name=?", (table,))
        cur.execute("UPDATE counters SET last_number=0")
        conn.commit()
    finally:
        cur.execute("PRAGMA foreign_keys=ON")


def backup_database(db_path: Path, path: Path = None) -> Path:
    if not db_path.exists():
        raise FileNotFoundError(f"Banco nao encontrado em {db_path}")

    backup_path = path or Path(f"frota_obras_backup_{datetime.now().strftime('%Y%m%d_%H%M%S')}.db")
    shutil.copy2(db_path, backup_path)
    return backup_path


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Limpa os dados operacionais do banco frota_obras.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Mostra o que seria limpo sem executar alterações.",
    )
    parser.add_argument(
        "--backup",
        type=Path,
        help="Caminho para salvar o backup antes da limpeza. Se omitido, gera frota_obras_backup_YYYYmmdd_HHMMSS.db no diretório atual.",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Não pede confirmação.",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    db_path = Path(database.DB_PATH)

    if args.dry_run:
        print("Dry run: as seguintes tabelas seriam limpas:")
        for table in TABLES_TO_CLEAR:
            print(f"  - {table}")
        print("Nenhuma alteração foi feita.")
        return 0

    if not args.yes and not confirm():
        print("Operacao cancelada.")
        return 0

    backup_path = backup_database(db_path, args.backup)
    print(f"Backup criado em: {backup_path}")

    conn = sqlite3.connect(db_path)
    try:
        clear_tables(conn)
        conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        conn.execute("VACUUM")
    except sqlite3.Error as exc:
        raise RuntimeError("Falha ao limpar o banco") from exc
    finally:
        conn.close()

    print("Banco limpo. Reinicie o sistema para recarregar a aplicacao.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

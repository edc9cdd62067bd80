import sqlite3

import clear_database


def test_dry_run_nao_altera(client, admin_headers, vehicle, db_path, capsys):
    assert clear_database.main(["--dry-run"]) == 0
    assert "vehicles" in capsys.readouterr().out
    assert client.get(f"/api/vehicles/{vehicle}", headers=admin_headers).status_code == 200


def test_limpa_dados_operacionais_e_mantem_usuarios(client, admin_headers, vehicle, obra, db_path, tmp_path):
    client.post("/api/orders", json={"status": "Aberta", "total_value": 10}, headers=admin_headers)
    backup = tmp_path / "backup.db"

    assert clear_database.main(["--yes", "--backup", str(backup)]) == 0
    assert backup.exists()

    conn = sqlite3.connect(db_path)
    assert conn.execute("SELECT COUNT(*) FROM vehicles").fetchone()[0] == 0
    assert conn.execute("SELECT COUNT(*) FROM obras").fetchone()[0] == 0
    assert conn.execute("SELECT COUNT(*) FROM users").fetchone()[0] == 1
    assert conn.execute("SELECT last_number FROM counters WHERE name='purchaseOrderCounter'").fetchone()[0] == 0
    conn.close()

    antigo = sqlite3.connect(backup)
    assert antigo.execute("SELECT COUNT(*) FROM vehicles").fetchone()[0] == 1
    antigo.close()

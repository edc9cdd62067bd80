import os
import sqlite3

os.environ.setdefault("FROTA_SECRET", "segredo-de-teste")

import pytest
from fastapi.testclient import TestClient

import database
from auth import create_token, hash_password_pbkdf2


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = str(tmp_path / "frota_teste.db")
    monkeypatch.setattr(database, "DB_PATH", path)
    database.ensure_tables()
    return path


@pytest.fixture
def client(db_path):
    from api_server import app

    with TestClient(app) as c:
        yield c


def _criar_usuario(db_path, email, role, name, **extra):
    conn = sqlite3.connect(db_path)
    cols = ["email", "password", "role", "name"] + list(extra)
    vals = [email, hash_password_pbkdf2("1234"), role, name] + list(extra.values())
    cur = conn.execute(
        f"INSERT INTO users ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
        vals,
    )
    user_id = cur.lastrowid
    conn.commit()
    conn.close()
    return {"id": user_id, "email": email, "role": role}


@pytest.fixture
def admin_user(db_path):
    return _criar_usuario(db_path, "admin@frota.local", "admin", "Admin")


@pytest.fixture
def operador_user(db_path):
    return _criar_usuario(db_path, "op@frota.local", "operador", "Operador", can_access_refueling=1)


@pytest.fixture
def admin_headers(admin_user):
    return {"Authorization": f"Bearer {create_token(admin_user)}"}


@pytest.fixture
def operador_headers(operador_user):
    return {"Authorization": f"Bearer {create_token(operador_user)}"}


@pytest.fixture
def obra(client, admin_headers):
    r = client.post("/api/obras", json={"nome": "Duplicação BR-101", "valor_contrato": 0}, headers=admin_headers)
    assert r.status_code == 201
    return r.json()["id"]


@pytest.fixture
def vehicle(client, admin_headers):
    r = client.post(
        "/api/vehicles",
        json={"placa": "abc1d23", "registro_interno": "CB-01", "modelo": "Atego", "odometro": 1000, "horimetro": 50},
        headers=admin_headers,
    )
    assert r.status_code == 201
    return r.json()["id"]


@pytest.fixture
def posto(client, admin_headers):
    r = client.post(
        "/api/partners",
        json={"razao_social": "Posto Trevo", "fuel_prices": {"DIESEL S10": 6.0, "arla32": 4.0}},
        headers=admin_headers,
    )
    assert r.status_code == 201
    return r.json()["id"]

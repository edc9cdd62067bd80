import sqlite3

from auth import create_token, verify_token


def test_login_e_me(client, admin_user):
    r = client.post("/api/auth/login", json={"email": "ADMIN@frota.local", "password": "1234"})
    assert r.status_code == 200
    body = r.json()
    assert body["user"]["role"] == "admin"

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {body['token']}"})
    assert me.status_code == 200
    assert me.json()["email"] == "admin@frota.local"


def test_login_credenciais_invalidas(client, admin_user):
    r = client.post("/api/auth/login", json={"email": "admin@frota.local", "password": "errada"})
    assert r.status_code == 401


def test_senha_legada_migrada_no_login(client, db_path):
    conn = sqlite3.connect(db_path)
    conn.execute("INSERT INTO users (email, password, role) VALUES ('velho@frota.local', 'abcd', 'operador')")
    conn.commit()
    conn.close()

    r = client.post("/api/auth/login", json={"email": "velho@frota.local", "password": "abcd"})
    assert r.status_code == 200

    conn = sqlite3.connect(db_path)
    senha = conn.execute("SELECT password FROM users WHERE email='velho@frota.local'").fetchone()[0]
    conn.close()
    assert senha.startswith("pbkdf2_sha256$")


def test_register_duplicado(client):
    payload = {"email": "novo@frota.local", "password": "1234", "name": "Novo"}
    assert client.post("/api/auth/register", json=payload).status_code == 201
    assert client.post("/api/auth/register", json=payload).status_code == 409


def test_validate_password(client, admin_headers):
    ok = client.post("/api/auth/validate-password", json={"password": "1234"}, headers=admin_headers)
    assert ok.status_code == 200
    ruim = client.post("/api/auth/validate-password", json={"password": "x"}, headers=admin_headers)
    assert ruim.status_code == 401


def test_profile_can_access_refueling(client, operador_headers):
    r = client.get("/api/users/profile", headers=operador_headers)
    assert r.status_code == 200
    assert r.json()["canAccessRefueling"] is True


def test_token_adulterado_rejeitado(client, admin_user):
    token = create_token(admin_user)
    assert verify_token(token)["id"] == admin_user["id"]
    assert verify_token(token[:-2] + "xx") is None

    r = client.get("/api/auth/me", headers={"Authorization": "Bearer invalido"})
    assert r.status_code == 401


def test_rota_protegida_sem_token(client):
    assert client.get("/api/vehicles").status_code in (401, 403)


def test_ping(client, db_path):
    r = client.get("/ping")
    assert r.json() == {"ok": True, "db": db_path}

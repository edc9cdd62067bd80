def test_fluxo_aprovacao_de_cadastro(client, admin_headers):
    r = client.post("/api/registrationRequests", json={"email": "Maria@Obra.com", "name": "Maria"})
    assert r.status_code == 201
    req_id = r.json()["id"]

    pendentes = client.get("/api/admin/registration-requests", headers=admin_headers).json()
    assert [p["email"] for p in pendentes] == ["maria@obra.com"]

    r = client.post(
        "/api/admin/registration-requests/approve",
        json={"requestId": req_id, "role": "gestor", "password": "segura"},
        headers=admin_headers,
    )
    assert r.status_code == 200

    assert client.get("/api/registrationRequests", headers=admin_headers).json() == []
    login = client.post("/api/auth/login", json={"email": "maria@obra.com", "password": "segura"})
    assert login.status_code == 200
    assert login.json()["user"]["role"] == "gestor"


def test_aprovacao_inexistente_e_email_em_uso(client, admin_headers):
    r = client.post(
        "/api/admin/registration-requests/approve",
        json={"requestId": 999, "password": "1234"},
        headers=admin_headers,
    )
    assert r.status_code == 404

    req_id = client.post("/api/registrationRequests", json={"email": "admin@frota.local"}).json()["id"]
    r = client.post(
        "/api/admin/registration-requests/approve",
        json={"requestId": req_id, "password": "1234"},
        headers=admin_headers,
    )
    assert r.status_code == 409
    # a solicitacao continua pendente
    assert len(client.get("/api/registrationRequests", headers=admin_headers).json()) == 1


def test_operador_nao_aprova(client, operador_headers):
    r = client.get("/api/admin/registration-requests", headers=operador_headers)
    assert r.status_code == 403


def test_excluir_solicitacao(client, admin_headers):
    req_id = client.post("/api/registrationRequests", json={"email": "x@y.com"}).json()["id"]
    assert client.delete(f"/api/admin/registration-requests/{req_id}", headers=admin_headers).status_code == 204
    assert client.delete(f"/api/registrationRequests/{req_id}", headers=admin_headers).status_code == 404


def test_assign_role(client, admin_headers, operador_user):
    r = client.put("/api/admin/assign-role", json={"email": "op@frota.local", "role": "gestor"}, headers=admin_headers)
    assert r.status_code == 200
    r = client.put("/api/admin/assign-role", json={"email": "nao@existe.com", "role": "gestor"}, headers=admin_headers)
    assert r.status_code == 404
    r = client.put("/api/admin/assign-role", json={"email": "op@frota.local", "role": "rei"}, headers=admin_headers)
    assert r.status_code == 400


def test_desbloquear_usuario(client, admin_headers, operador_user, db_path):
    import sqlite3

    conn = sqlite3.connect(db_path)
    conn.execute(
        "UPDATE users SET bloqueado_abastecimento=1, tentativas_falhas_abastecimento=3 WHERE id=?",
        (operador_user["id"],),
    )
    conn.commit()
    conn.close()

    r = client.put(f"/api/admin/users/{operador_user['id']}/desbloquear", headers=admin_headers)
    assert r.status_code == 200

    conn = sqlite3.connect(db_path)
    row = conn.execute(
        "SELECT bloqueado_abastecimento, tentativas_falhas_abastecimento FROM users WHERE id=?",
        (operador_user["id"],),
    ).fetchone()
    conn.close()
    assert row == (0, 0)


def test_mensagem_de_atualizacao_upsert(client, admin_headers, operador_headers):
    assert client.get("/api/admin/update-message", headers=operador_headers).status_code == 404

    client.put("/api/admin/update-message", json={"message": "v1", "showPopup": True}, headers=admin_headers)
    client.put("/api/admin/update-message", json={"message": "v2", "showPopup": False}, headers=admin_headers)

    r = client.get("/api/admin/update-message", headers=operador_headers)
    assert r.json()["message"] == "v2"
    assert r.json()["show_popup"] is False
    assert len(client.get("/api/updates", headers=admin_headers).json()) == 1


def test_historico_de_avisos(client, admin_headers):
    assert client.post("/api/updates", json={"message": "  "}, headers=admin_headers).status_code == 400
    r = client.post("/api/updates", json={"message": "Nova versão"}, headers=admin_headers)
    assert r.status_code == 201
    update_id = r.json()["id"]
    assert client.delete(f"/api/updates/{update_id}", headers=admin_headers).status_code == 204
    assert client.delete(f"/api/updates/{update_id}", headers=admin_headers).status_code == 404


def test_contadores(client, admin_headers):
    r = client.get("/api/counters/refuelingCounter", headers=admin_headers)
    assert r.json() == {"name": "refuelingCounter", "last_number": 0}
    client.put("/api/counters/refuelingCounter", json={"last_number": 41}, headers=admin_headers)
    assert client.get("/api/counters/refuelingCounter", headers=admin_headers).json()["last_number"] == 41
    assert client.get("/api/counters/inexistente", headers=admin_headers).status_code == 404

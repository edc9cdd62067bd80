import pytest


@pytest.fixture
def motorista(client, admin_headers):
    return client.post("/api/employees", json={"name": "Pedro Motorista"}, headers=admin_headers).json()["id"]


def _iniciar(client, headers, motorista, vehicle=None, inicio="2024-05-13T07:00:00", **leituras):
    payload = {"employee_id": motorista, "start_time": inicio}
    if vehicle:
        payload["vehicle_id"] = vehicle
    if leituras:
        payload["start_readings"] = leituras
    return client.post("/api/diarioDeBordo/start", json=payload, headers=headers)


def test_jornada_completa_com_pausa(client, admin_headers, motorista, vehicle):
    r = _iniciar(client, admin_headers, motorista, vehicle, odometro=1050)
    assert r.status_code == 201
    diario_id = r.json()["id"]
    assert r.json()["status"] == "Em Andamento"
    assert client.get(f"/api/vehicles/{vehicle}", headers=admin_headers).json()["odometro"] == 1050

    assert client.put(f"/api/diarioDeBordo/{diario_id}/start-break", json={"time": "2024-05-13T12:00:00",
                      "motivo": "Almoço"}, headers=admin_headers).status_code == 200
    assert client.put(f"/api/diarioDeBordo/{diario_id}/start-break", json={},
                      headers=admin_headers).status_code == 409
    r = client.put(f"/api/diarioDeBordo/{diario_id}/end-break", json={"time": "2024-05-13T13:00:00"},
                   headers=admin_headers)
    assert r.json()["breaks"] == [{"inicio": "2024-05-13T12:00:00", "fim": "2024-05-13T13:00:00", "motivo": "Almoço"}]
    assert client.put(f"/api/diarioDeBordo/{diario_id}/end-break", json={},
                      headers=admin_headers).status_code == 409

    r = client.put(
        f"/api/diarioDeBordo/{diario_id}/end",
        json={"end_time": "2024-05-13T17:00:00", "end_readings": {"odometro": 1180}},
        headers=admin_headers,
    )
    assert r.status_code == 200
    diario = client.get(f"/api/diarioDeBordo/{diario_id}", headers=admin_headers).json()
    assert diario["status"] == "Finalizado"
    assert diario["end_readings"] == {"odometro": 1180}
    assert client.get(f"/api/vehicles/{vehicle}", headers=admin_headers).json()["odometro"] == 1180

    assert client.put(f"/api/diarioDeBordo/{diario_id}/end", json={}, headers=admin_headers).status_code == 409


def test_uma_jornada_aberta_por_motorista(client, admin_headers, motorista):
    assert _iniciar(client, admin_headers, motorista).status_code == 201
    r = _iniciar(client, admin_headers, motorista, inicio="2024-05-13T08:00:00")
    assert r.status_code == 409


def test_descanso_minimo_entre_jornadas(client, admin_headers, motorista):
    diario_id = _iniciar(client, admin_headers, motorista).json()["id"]
    client.put(f"/api/diarioDeBordo/{diario_id}/end", json={"end_time": "2024-05-13T20:00:00"}, headers=admin_headers)

    r = _iniciar(client, admin_headers, motorista, inicio="2024-05-14T06:00:00")
    assert r.status_code == 409
    assert r.json()["detail"].startswith("Descanso mínimo de 11h não cumprido")

    assert _iniciar(client, admin_headers, motorista, inicio="2024-05-14T07:00:00").status_code == 201


def test_fim_antes_do_inicio_e_leitura_regressiva(client, admin_headers, motorista, vehicle):
    diario_id = _iniciar(client, admin_headers, motorista, vehicle, odometro=1050).json()["id"]
    r = client.put(f"/api/diarioDeBordo/{diario_id}/end", json={"end_time": "2024-05-13T06:00:00"},
                   headers=admin_headers)
    assert r.status_code == 400
    r = client.put(f"/api/diarioDeBordo/{diario_id}/end",
                   json={"end_time": "2024-05-13T17:00:00", "end_readings": {"odometro": 1040}},
                   headers=admin_headers)
    assert r.status_code == 400


def test_fim_fecha_pausa_aberta(client, admin_headers, motorista):
    diario_id = _iniciar(client, admin_headers, motorista).json()["id"]
    client.put(f"/api/diarioDeBordo/{diario_id}/start-break", json={"time": "2024-05-13T15:00:00"},
               headers=admin_headers)
    client.put(f"/api/diarioDeBordo/{diario_id}/end", json={"end_time": "2024-05-13T16:00:00"}, headers=admin_headers)
    diario = client.get(f"/api/diarioDeBordo/{diario_id}", headers=admin_headers).json()
    assert diario["breaks"][0]["fim"] == "2024-05-13T16:00:00"


def test_motorista_inexistente(client, admin_headers):
    assert _iniciar(client, admin_headers, 999).status_code == 404


def test_crud_e_filtros(client, admin_headers, motorista):
    r = client.post("/api/diarioDeBordo", json={"employee_id": motorista, "status": "Finalizado",
                                                "start_time": "2024-05-01T07:00:00"}, headers=admin_headers)
    assert r.status_code == 201
    diario_id = r.json()["id"]
    assert client.post("/api/diarioDeBordo", json={}, headers=admin_headers).status_code == 400

    lista = client.get("/api/diarioDeBordo", params={"employee_id": motorista, "status": "Finalizado"},
                       headers=admin_headers).json()
    assert [d["id"] for d in lista] == [diario_id]

    client.put(f"/api/diarioDeBordo/{diario_id}", json={"observation": "ok"}, headers=admin_headers)
    assert client.get(f"/api/diarioDeBordo/{diario_id}", headers=admin_headers).json()["observation"] == "ok"
    assert client.delete(f"/api/diarioDeBordo/{diario_id}", headers=admin_headers).status_code == 204


def test_jornada_com_fuso_horario(client, admin_headers, motorista):
    r = _iniciar(client, admin_headers, motorista, inicio="2024-05-13T07:00:00-03:00")
    assert r.status_code == 201
    diario_id = r.json()["id"]
    assert "-03:00" not in r.json()["start_time"]

    r = client.put(f"/api/diarioDeBordo/{diario_id}/end", json={"end_time": "2024-05-14T17:00:00"},
                   headers=admin_headers)
    assert r.status_code == 200
    assert client.get(f"/api/diarioDeBordo/{diario_id}", headers=admin_headers).json()["status"] == "Finalizado"


def test_crud_rejeita_horario_invalido(client, admin_headers, motorista):
    r = client.post("/api/diarioDeBordo", json={"employee_id": motorista, "end_time": "ontem"},
                    headers=admin_headers)
    assert r.status_code == 400

    diario_id = client.post("/api/diarioDeBordo", json={"employee_id": motorista, "status": "Finalizado"},
                            headers=admin_headers).json()["id"]
    r = client.put(f"/api/diarioDeBordo/{diario_id}", json={"start_time": "amanha"}, headers=admin_headers)
    assert r.status_code == 400

    assert _iniciar(client, admin_headers, motorista, inicio="2024-05-14T07:00:00").status_code == 201


def test_descanso_usa_ultima_jornada_em_formatos_mistos(client, admin_headers, motorista):
    for fim in ("13/05/2024 20:00", "2024-05-10T20:00:00"):
        client.post("/api/diarioDeBordo", json={"employee_id": motorista, "status": "Finalizado", "end_time": fim},
                    headers=admin_headers)

    lista = client.get("/api/diarioDeBordo", params={"employee_id": motorista}, headers=admin_headers).json()
    assert sorted(d["end_time"] for d in lista) == ["2024-05-10T20:00:00", "2024-05-13T20:00:00"]

    r = _iniciar(client, admin_headers, motorista, inicio="2024-05-14T06:00:00")
    assert r.status_code == 409

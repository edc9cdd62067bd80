from datetime import date

import pytest

from manutencao import calcular_situacao

HOJE = date(2024, 5, 13)


@pytest.mark.parametrize(
    "revisao, odometro, horimetro, esperado",
    [
        ({}, 1000, 0, "sem_agendamento"),
        ({"proxima_revisao_odometro": 5000, "aviso_antecedencia_km_hr": 500}, 5100, 0, "vencida"),
        ({"proxima_revisao_odometro": 5000, "aviso_antecedencia_km_hr": 500}, 4600, 0, "atencao"),
        ({"proxima_revisao_odometro": 5000, "aviso_antecedencia_km_hr": 500}, 1000, 0, "ok"),
        # sem odometro compara pelo horimetro
        ({"proxima_revisao_odometro": 250, "aviso_antecedencia_km_hr": 20}, 0, 240, "atencao"),
        ({"proxima_revisao_data": "2024-05-10"}, 0, 0, "vencida"),
        ({"proxima_revisao_data": "2024-05-20", "aviso_antecedencia_dias": 10}, 0, 0, "atencao"),
        ({"proxima_revisao_data": "2024-07-01", "aviso_antecedencia_dias": 10}, 0, 0, "ok"),
        # pior das duas
        ({"proxima_revisao_odometro": 5000, "proxima_revisao_data": "2024-05-01"}, 1000, 0, "vencida"),
    ],
)
def test_calcular_situacao(revisao, odometro, horimetro, esperado):
    vehicle = {"odometro": odometro, "horimetro": horimetro}
    assert calcular_situacao(revisao, vehicle, hoje=HOJE) == esperado


def test_revisao_crud_e_conclusao(client, admin_headers, vehicle):
    r = client.post(
        "/api/revisions",
        json={"vehicle_id": vehicle, "tipo": "Troca de óleo", "descricao": "Óleo e filtros",
              "proxima_revisao_odometro": 1100, "aviso_antecedencia_km_hr": 200},
        headers=admin_headers,
    )
    assert r.status_code == 201
    rev_id = r.json()["id"]
    assert client.get(f"/api/revisions/{rev_id}", headers=admin_headers).json()["situacao"] == "atencao"

    r = client.put(
        f"/api/revisions/{rev_id}/complete",
        json={"history_entry": {"odometro": 1120, "oficina": "Própria"}},
        headers=admin_headers,
    )
    assert r.status_code == 200

    rev = client.get(f"/api/revisions/{rev_id}", headers=admin_headers).json()
    assert rev["situacao"] == "sem_agendamento"
    assert rev["proxima_revisao_odometro"] == 0
    assert rev["historico"][0]["tipo"] == "Troca de óleo"
    assert rev["historico"][0]["oficina"] == "Própria"
    assert client.get(f"/api/vehicles/{vehicle}", headers=admin_headers).json()["odometro"] == 1120

    assert client.delete(f"/api/revisions/{rev_id}", headers=admin_headers).status_code == 204
    assert client.get(f"/api/revisions/{rev_id}", headers=admin_headers).status_code == 404


def test_revisoes_ordenadas_por_gravidade(client, admin_headers, vehicle):
    client.post("/api/revisions", json={"vehicle_id": vehicle, "proxima_revisao_data": "2999-01-01"},
                headers=admin_headers)
    client.post("/api/revisions", json={"vehicle_id": vehicle, "proxima_revisao_odometro": 900},
                headers=admin_headers)
    lista = client.get("/api/revisions", params={"vehicle_id": vehicle}, headers=admin_headers).json()
    assert [r["situacao"] for r in lista] == ["vencida", "ok"]
    assert client.post("/api/revisions", json={}, headers=admin_headers).status_code == 400


def _pneu(client, headers, fire_number="FG-001"):
    return client.post("/api/tires", json={"fire_number": fire_number, "brand": "Pirelli", "size": "295/80R22.5"},
                       headers=headers)


def test_cadastro_de_pneu(client, admin_headers):
    r = _pneu(client, admin_headers)
    assert r.status_code == 201
    assert _pneu(client, admin_headers).status_code == 409
    assert client.post("/api/tires", json={"brand": "X"}, headers=admin_headers).status_code == 400

    pneus = client.get("/api/tires", headers=admin_headers).json()
    assert pneus[0]["status"] == "Estoque"
    assert pneus[0]["location"] == "Almoxarifado"


def test_instalar_remover_e_transferir(client, admin_headers, vehicle):
    p1 = _pneu(client, admin_headers, "FG-001").json()["id"]
    p2 = _pneu(client, admin_headers, "FG-002").json()["id"]

    r = client.post(
        "/api/tires/transaction",
        json={"tire_id": p1, "type": "install", "vehicle_id": vehicle, "position": "DD", "odometer": 1300},
        headers=admin_headers,
    )
    assert r.status_code == 200
    pneu = next(t for t in client.get("/api/tires", headers=admin_headers).json() if t["id"] == p1)
    assert (pneu["status"], pneu["position"], pneu["vehicle_placa"]) == ("Em Uso", "DD", "ABC1D23")
    assert client.get(f"/api/vehicles/{vehicle}", headers=admin_headers).json()["odometro"] == 1300

    ocupada = client.post("/api/tires/transaction",
                          json={"tire_id": p2, "type": "install", "vehicle_id": vehicle, "position": "DD"},
                          headers=admin_headers)
    assert ocupada.status_code == 409

    dupla = client.post("/api/tires/transaction",
                        json={"tire_id": p1, "type": "install", "vehicle_id": vehicle, "position": "TE"},
                        headers=admin_headers)
    assert dupla.status_code == 409

    sem_posicao = client.post("/api/tires/transaction", json={"tire_id": p2, "type": "install", "vehicle_id": vehicle},
                              headers=admin_headers)
    assert sem_posicao.status_code == 400

    r = client.post("/api/tires/transaction", json={"tire_id": p1, "type": "remove"}, headers=admin_headers)
    assert r.status_code == 200

    r = client.post(
        "/api/tires/transaction",
        json={"tire_id": p2, "type": "transfer_responsibility", "obra_name": "Ponte", "employee_name": "Ana"},
        headers=admin_headers,
    )
    assert r.status_code == 200
    pneu2 = next(t for t in client.get("/api/tires", headers=admin_headers).json() if t["id"] == p2)
    assert pneu2["location"] == "Obra: Ponte / Resp: Ana"

    historico = client.get(f"/api/tires/{p1}/history", headers=admin_headers).json()
    assert sorted(h["type"] for h in historico) == ["install", "remove"]
    remocao = next(h for h in historico if h["type"] == "remove")
    assert (remocao["vehicle_id"], remocao["position"]) == (vehicle, "DD")

    do_veiculo = client.get(f"/api/vehicles/{vehicle}/tires/history", headers=admin_headers).json()
    assert {h["fire_number"] for h in do_veiculo} == {"FG-001"}

import pytest


@pytest.fixture
def caminhao(client, admin_headers):
    r = client.post("/api/vehicles", json={"placa": "RCV1A11", "odometro": 5000}, headers=admin_headers)
    return r.json()["id"]


def _nivel(client, headers, vehicle_id, fuel="dieselS10"):
    v = client.get(f"/api/vehicles/{vehicle_id}", headers=headers).json()
    return (v["fuel_levels"] or {}).get(fuel, 0)


def _despesas(client, headers, obra_id):
    return client.get("/api/expenses", params={"obra_id": obra_id}, headers=headers).json()


def _entrada(client, headers, comboio, posto, obra, liters=1000, **extra):
    payload = {
        "comboio_vehicle_id": comboio,
        "partner_id": posto,
        "obra_id": obra,
        "fuel_type": "DIESEL S10",
        "liters": liters,
        "date": "2024-05-15",
    }
    payload.update(extra)
    return client.post("/api/comboioTransactions/entrada", json=payload, headers=headers)


def test_entrada_usa_preco_do_posto_e_gera_despesa_semanal(client, admin_headers, vehicle, posto, obra):
    r = _entrada(client, admin_headers, vehicle, posto, obra)
    assert r.status_code == 201
    tx = r.json()
    assert tx["unit_price"] == 6.0
    assert tx["value"] == 6000.0
    assert tx["partner_name"] == "Posto Trevo"
    assert _nivel(client, admin_headers, vehicle) == 1000

    despesas = _despesas(client, admin_headers, obra)
    assert len(despesas) == 1
    assert despesas[0]["amount"] == 6000.0
    assert despesas[0]["week_start_date"] == "2024-05-13"
    assert despesas[0]["description"] == "Combustível: diesel s10 - Posto Trevo"

    # mesma semana, mesmo posto e combustivel: soma na mesma despesa
    _entrada(client, admin_headers, vehicle, posto, obra, liters=100, date="2024-05-17")
    despesas = _despesas(client, admin_headers, obra)
    assert len(despesas) == 1
    assert despesas[0]["amount"] == 6600.0


def test_saida_e_drenagem_movem_o_saldo(client, admin_headers, vehicle, caminhao, posto, obra):
    _entrada(client, admin_headers, vehicle, posto, obra)

    r = client.post(
        "/api/comboioTransactions/saida",
        json={"comboio_vehicle_id": vehicle, "receiving_vehicle_id": caminhao, "fuel_type": "dieselS10",
              "liters": 300, "odometro": 5100},
        headers=admin_headers,
    )
    assert r.status_code == 201
    assert _nivel(client, admin_headers, vehicle) == 700
    assert client.get(f"/api/vehicles/{caminhao}", headers=admin_headers).json()["odometro"] == 5100

    r = client.post(
        "/api/comboioTransactions/drenagem",
        json={"comboio_vehicle_id": vehicle, "drained_vehicle_id": caminhao, "fuel_type": "dieselS10", "liters": 50},
        headers=admin_headers,
    )
    assert r.status_code == 201
    assert _nivel(client, admin_headers, vehicle) == 750

    lista = client.get("/api/comboioTransactions", params={"type": "saida"}, headers=admin_headers).json()
    assert len(lista) == 1


def test_saida_sem_saldo(client, admin_headers, vehicle, caminhao, posto, obra):
    _entrada(client, admin_headers, vehicle, posto, obra, liters=100)
    r = client.post(
        "/api/comboioTransactions/saida",
        json={"comboio_vehicle_id": vehicle, "receiving_vehicle_id": caminhao, "fuel_type": "dieselS10", "liters": 101},
        headers=admin_headers,
    )
    assert r.status_code == 409
    assert "Saldo insuficiente" in r.json()["detail"]
    assert _nivel(client, admin_headers, vehicle) == 100


def test_saida_para_o_proprio_comboio(client, admin_headers, vehicle):
    r = client.post(
        "/api/comboioTransactions/saida",
        json={"comboio_vehicle_id": vehicle, "receiving_vehicle_id": vehicle, "fuel_type": "dieselS10", "liters": 10},
        headers=admin_headers,
    )
    assert r.status_code == 400


def test_editar_entrada_recalcula_saldo_e_despesa(client, admin_headers, vehicle, caminhao, posto, obra):
    tx_id = _entrada(client, admin_headers, vehicle, posto, obra).json()["id"]
    client.post(
        "/api/comboioTransactions/saida",
        json={"comboio_vehicle_id": vehicle, "receiving_vehicle_id": caminhao, "fuel_type": "dieselS10", "liters": 400},
        headers=admin_headers,
    )

    r = client.put(f"/api/comboioTransactions/{tx_id}", json={"liters": 1200}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["value"] == 7200.0
    assert _nivel(client, admin_headers, vehicle) == 800
    assert _despesas(client, admin_headers, obra)[0]["amount"] == 7200.0

    # reduzir abaixo do que ja saiu deixaria o comboio negativo
    r = client.put(f"/api/comboioTransactions/{tx_id}", json={"liters": 300}, headers=admin_headers)
    assert r.status_code == 409
    assert _nivel(client, admin_headers, vehicle) == 800


def test_excluir_entrada_estorna_despesa(client, admin_headers, vehicle, posto, obra):
    tx_id = _entrada(client, admin_headers, vehicle, posto, obra).json()["id"]
    assert client.delete(f"/api/comboioTransactions/{tx_id}", headers=admin_headers).status_code == 204
    assert _nivel(client, admin_headers, vehicle) == 0
    assert _despesas(client, admin_headers, obra) == []
    assert client.get(f"/api/comboioTransactions/{tx_id}", headers=admin_headers).status_code == 404


def _saida(client, headers, comboio, destino, liters, **extra):
    payload = {"comboio_vehicle_id": comboio, "receiving_vehicle_id": destino, "fuel_type": "dieselS10",
               "liters": liters}
    payload.update(extra)
    return client.post("/api/comboioTransactions/saida", json=payload, headers=headers)


def _drenagem(client, headers, comboio, origem, liters):
    return client.post(
        "/api/comboioTransactions/drenagem",
        json={"comboio_vehicle_id": comboio, "drained_vehicle_id": origem, "fuel_type": "dieselS10", "liters": liters},
        headers=headers,
    )


def test_excluir_saida_devolve_ao_comboio(client, admin_headers, vehicle, caminhao, posto, obra):
    _entrada(client, admin_headers, vehicle, posto, obra)
    tx_id = _saida(client, admin_headers, vehicle, caminhao, 300).json()["id"]
    assert _nivel(client, admin_headers, vehicle) == 700

    assert client.delete(f"/api/comboioTransactions/{tx_id}", headers=admin_headers).status_code == 204
    assert _nivel(client, admin_headers, vehicle) == 1000
    assert _despesas(client, admin_headers, obra)[0]["amount"] == 6000.0


def test_excluir_drenagem_ja_consumida(client, admin_headers, vehicle, caminhao, posto, obra):
    _entrada(client, admin_headers, vehicle, posto, obra, liters=100)
    tx_id = _drenagem(client, admin_headers, vehicle, caminhao, 50).json()["id"]
    assert _nivel(client, admin_headers, vehicle) == 150
    _saida(client, admin_headers, vehicle, caminhao, 120)

    r = client.delete(f"/api/comboioTransactions/{tx_id}", headers=admin_headers)
    assert r.status_code == 409
    assert _nivel(client, admin_headers, vehicle) == 30

    _entrada(client, admin_headers, vehicle, posto, obra, liters=100)
    assert client.delete(f"/api/comboioTransactions/{tx_id}", headers=admin_headers).status_code == 204
    assert _nivel(client, admin_headers, vehicle) == 80


def test_excluir_entrada_ja_distribuida(client, admin_headers, vehicle, caminhao, posto, obra):
    tx_id = _entrada(client, admin_headers, vehicle, posto, obra).json()["id"]
    _saida(client, admin_headers, vehicle, caminhao, 400)

    r = client.delete(f"/api/comboioTransactions/{tx_id}", headers=admin_headers)
    assert r.status_code == 409
    assert "Saldo insuficiente" in r.json()["detail"]
    assert _nivel(client, admin_headers, vehicle) == 600
    assert _despesas(client, admin_headers, obra)[0]["amount"] == 6000.0
    assert client.get(f"/api/comboioTransactions/{tx_id}", headers=admin_headers).status_code == 200


def test_editar_saida(client, admin_headers, vehicle, caminhao, posto, obra):
    _entrada(client, admin_headers, vehicle, posto, obra)
    tx_id = _saida(client, admin_headers, vehicle, caminhao, 300, odometro=5100).json()["id"]

    r = client.put(f"/api/comboioTransactions/{tx_id}", json={"liters": 500}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["type"] == "saida"
    assert _nivel(client, admin_headers, vehicle) == 500

    r = client.put(f"/api/comboioTransactions/{tx_id}", json={"liters": 1200}, headers=admin_headers)
    assert r.status_code == 409
    assert _nivel(client, admin_headers, vehicle) == 500

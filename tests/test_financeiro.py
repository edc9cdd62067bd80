import pytest


def _despesas_da_ordem(client, headers):
    return client.get("/api/expenses", params={"category": "Ordem de Compra/Serviço"}, headers=headers).json()


def test_despesa_manual_crud(client, admin_headers, obra):
    r = client.post("/api/expenses", json={"obra_id": obra, "description": "Aluguel de container", "amount": 800},
                    headers=admin_headers)
    assert r.status_code == 201
    expense_id = r.json()["id"]
    assert client.put(f"/api/expenses/{expense_id}", json={"amount": 850}, headers=admin_headers).status_code == 200
    assert client.delete(f"/api/expenses/{expense_id}", headers=admin_headers).status_code == 204
    assert client.post("/api/expenses", json={"amount": 10}, headers=admin_headers).status_code == 400


def test_ordem_gera_despesa_com_numero_sequencial(client, admin_headers, obra):
    r1 = client.post("/api/orders", json={"status": "Aberta", "supplier": "Auto Peças Sul", "obra_id": obra,
                                          "total_value": 1500}, headers=admin_headers)
    r2 = client.post("/api/orders", json={"status": "Aberta", "supplier": "Borracharia", "total_value": 90},
                     headers=admin_headers)
    assert r1.status_code == 201
    assert (r1.json()["orderNumber"], r2.json()["orderNumber"]) == (1, 2)

    despesas = _despesas_da_ordem(client, admin_headers)
    descricoes = sorted(d["description"] for d in despesas)
    assert descricoes == [
        "Ordem Compra/Serviço #000001 - Auto Peças Sul",
        "Ordem Compra/Serviço #000002 - Borracharia",
    ]

    # despesa automatica nao e editavel diretamente
    expense_id = despesas[0]["id"]
    assert client.put(f"/api/expenses/{expense_id}", json={"amount": 1}, headers=admin_headers).status_code == 409
    assert client.delete(f"/api/expenses/{expense_id}", headers=admin_headers).status_code == 409

    assert [o["order_number"] for o in client.get("/api/orders", headers=admin_headers).json()] == [2, 1]


def test_ordem_pendente_de_valor(client, admin_headers, obra):
    order_id = client.post("/api/orders", json={"status": "Pendente de Valor", "obra_id": obra},
                           headers=admin_headers).json()["id"]
    assert _despesas_da_ordem(client, admin_headers) == []

    client.put(f"/api/orders/{order_id}", json={"status": "Aberta", "total_value": 320}, headers=admin_headers)
    despesas = _despesas_da_ordem(client, admin_headers)
    assert [d["amount"] for d in despesas] == [320.0]

    client.put(f"/api/orders/{order_id}", json={"total_value": 400}, headers=admin_headers)
    assert [d["amount"] for d in _despesas_da_ordem(client, admin_headers)] == [400.0]

    client.put(f"/api/orders/{order_id}", json={"status": "Pendente de Valor"}, headers=admin_headers)
    assert _despesas_da_ordem(client, admin_headers) == []


def test_cancelar_ordem(client, admin_headers, obra):
    order_id = client.post("/api/orders", json={"status": "Aberta", "total_value": 100, "obra_id": obra},
                           headers=admin_headers).json()["id"]
    assert client.put(f"/api/orders/{order_id}/cancel", headers=admin_headers).status_code == 200
    assert _despesas_da_ordem(client, admin_headers) == []
    assert client.put(f"/api/orders/{order_id}/cancel", headers=admin_headers).status_code == 409
    assert client.put(f"/api/orders/{order_id}", json={"total_value": 5}, headers=admin_headers).status_code == 409


def test_boletim_upsert_por_veiculo_e_dia(client, admin_headers, vehicle, obra):
    base = {"obra_id": obra, "vehicle_id": vehicle, "date": "2024-05-13",
            "morning_start": "07:00", "morning_end": "11:00", "afternoon_start": "13:00", "afternoon_end": "17:30"}
    r = client.post("/api/billing", json=base, headers=admin_headers)
    assert r.status_code == 200
    log_id = r.json()["id"]

    r = client.post("/api/billing", json={**base, "date": "2024-05-13T10:00:00", "total_hours": 9},
                    headers=admin_headers)
    assert r.json() == {"message": "Registro atualizado com sucesso.", "id": log_id}

    client.post("/api/billing", json={**base, "date": "2024-05-14"}, headers=admin_headers)

    lista = client.get("/api/billing", params={"obra_id": obra}, headers=admin_headers).json()
    assert [(b["date"], b["total_hours"]) for b in lista] == [("2024-05-14", 8.5), ("2024-05-13", 9.0)]
    assert lista[0]["registro_interno"] == "CB-01"

    filtrado = client.get("/api/billing", params={"obra_id": "all", "start_date": "2024-05-13",
                                                  "end_date": "2024-05-13"}, headers=admin_headers).json()
    assert len(filtrado) == 1

    assert client.delete(f"/api/billing/{log_id}", headers=admin_headers).status_code == 204
    assert client.delete(f"/api/billing/{log_id}", headers=admin_headers).status_code == 404


def test_boletim_veiculo_inexistente(client, admin_headers, obra):
    r = client.post("/api/billing", json={"obra_id": obra, "vehicle_id": 999, "date": "2024-05-13"},
                    headers=admin_headers)
    assert r.status_code == 404


@pytest.mark.parametrize("status_inicial", ["Aberta", "Pendente de Valor"])
def test_status_cancelada_pela_edicao_remove_despesa(client, admin_headers, obra, status_inicial):
    order_id = client.post("/api/orders", json={"status": status_inicial, "total_value": 100, "obra_id": obra},
                           headers=admin_headers).json()["id"]
    r = client.put(f"/api/orders/{order_id}", json={"status": "Cancelada"}, headers=admin_headers)
    assert r.status_code == 200
    assert _despesas_da_ordem(client, admin_headers) == []
    assert client.get(f"/api/orders/{order_id}", headers=admin_headers).json()["status"] == "Cancelada"
    assert client.put(f"/api/orders/{order_id}/cancel", headers=admin_headers).status_code == 409


def test_boletins_por_obra_no_caminho(client, admin_headers, vehicle, obra):
    outra = client.post("/api/obras", json={"nome": "Ponte Rio Claro"}, headers=admin_headers).json()["id"]
    for obra_id, dia in ((obra, "2024-05-13"), (outra, "2024-05-14")):
        client.post("/api/billing", json={"obra_id": obra_id, "vehicle_id": vehicle, "date": dia, "total_hours": 8},
                    headers=admin_headers)

    lista = client.get(f"/api/billing/obra/{obra}", headers=admin_headers).json()
    assert [b["date"] for b in lista] == ["2024-05-13"]
    assert len(client.get("/api/billing/obra/all", headers=admin_headers).json()) == 2

from datetime import date

from supervisor import calcular_kpis


def test_calcular_kpis_previsao_no_prazo():
    obra = {"id": 1, "nome": "Ponte", "status": "Ativa"}
    contrato = {
        "total_value": 100000,
        "total_hours_contracted": 1000,
        "start_date": "2024-05-01",
        "expected_end_date": "2024-12-31",
        "fiscal_nome": "Eng. Rita",
    }
    kpis = calcular_kpis(obra, contrato, total_gasto=25000, horas_realizadas=100, hoje=date(2024, 5, 11))

    assert kpis["responsavel"] == "Eng. Rita"
    assert kpis["kpi"]["saldo_financeiro"] == 75000
    assert kpis["kpi"]["saldo_horas"] == 900
    # maior entre 25% financeiro e 10% de horas
    assert kpis["kpi"]["percentual_conclusao"] == 25.0
    # 10 h/dia, faltam 900 h = 90 dias uteis
    assert kpis["previsao"]["data_termino_estimada"] == "2024-09-13"
    assert kpis["previsao"]["status"] == "no_prazo"


def test_calcular_kpis_sem_contrato():
    kpis = calcular_kpis({"id": 2, "nome": "Galpão", "status": None}, None, 0.0, 0.0)
    assert kpis["responsavel"] == "Não Definido"
    assert kpis["kpi"]["percentual_conclusao"] == 0.0
    assert kpis["previsao"] == {"data_termino_estimada": None, "status": "indefinido"}


def test_calcular_kpis_atrasado():
    contrato = {"total_hours_contracted": 1000, "start_date": "2024-05-01", "expected_end_date": "2024-06-30"}
    kpis = calcular_kpis({"id": 3, "nome": "Túnel", "status": "Ativa"}, contrato, 0.0, 100, hoje=date(2024, 5, 11))
    assert kpis["previsao"]["status"] == "atrasado"


def test_cockpit(client, admin_headers, obra, vehicle):
    r = client.post("/api/supervisor/contract", json={"obra_id": obra, "valor_total": 50000, "horas_totais": 400,
                                                      "fiscal_nome": "Rita"}, headers=admin_headers)
    assert r.status_code == 200
    client.post("/api/supervisor/contract", json={"obra_id": obra, "valor_total": 60000, "horas_totais": 400},
                headers=admin_headers)

    client.post("/api/expenses", json={"obra_id": obra, "description": "Brita", "amount": 6000}, headers=admin_headers)
    client.post("/api/billing", json={"obra_id": obra, "vehicle_id": vehicle, "date": "2024-05-13", "total_hours": 8},
                headers=admin_headers)
    client.post(f"/api/vehicles/{vehicle}/alocar", json={"obra_id": obra}, headers=admin_headers)

    # obra finalizada nao aparece no painel
    outra = client.post("/api/obras", json={"nome": "Antiga", "status": "Finalizada"}, headers=admin_headers).json()["id"]

    painel = client.get("/api/supervisor/dashboard", headers=admin_headers).json()
    assert [o["id"] for o in painel] == [obra]
    kpi = painel[0]["kpi"]
    assert (kpi["valor_total_contrato"], kpi["total_gasto"], kpi["saldo_financeiro"]) == (60000, 6000, 54000)
    assert kpi["horas_realizadas"] == 8
    assert painel[0]["fiscal_nome"] is None

    r = client.post("/api/supervisor/crm", json={"obra_id": obra, "tipo_interacao": "Visita",
                                                 "resumo_conversa": "Cliente satisfeito"}, headers=admin_headers)
    assert r.status_code == 201
    assert client.post("/api/supervisor/crm", json={"obra_id": outra + 100}, headers=admin_headers).status_code == 404

    detalhe = client.get(f"/api/supervisor/obra/{obra}", headers=admin_headers).json()
    assert [v["id"] for v in detalhe["vehicles"]] == [vehicle]
    assert detalhe["crm_history"][0]["supervisor_name"] == "Admin"
    assert client.get("/api/supervisor/obra/999", headers=admin_headers).status_code == 404

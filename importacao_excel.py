import logging
import sys
from pathlib import Path
from typing import Dict, Optional

import pandas as pd

from database import get_conn
from regras import safe_num

logger = logging.getLogger(__name__)

# cabecalho da planilha -> coluna em vehicles
COLUNAS = {
    "placa": "placa",
    "registro": "registro_interno",
    "registro interno": "registro_interno",
    "prefixo": "registro_interno",
    "modelo": "modelo",
    "marca": "marca",
    "ano": "ano",
    "tipo": "tipo",
    "grupo": "grupo",
    "odometro": "odometro",
    "odômetro": "odometro",
    "km": "odometro",
    "horimetro": "horimetro",
    "horímetro": "horimetro",
    "capacidade tanque": "capacidade_tanque",
}

NUMERICAS = ("odometro", "horimetro", "capacidade_tanque")


def ler_planilha(caminho_arquivo) -> pd.DataFrame:
    caminho = Path(caminho_arquivo)
    if caminho.suffix.lower() == ".csv":
        df = pd.read_csv(caminho, dtype=str, sep=None, engine="python")
    else:
        df = pd.read_excel(caminho, dtype=str)
    df.columns = [str(c).strip().lower() for c in df.columns]
    return df.rename(columns={c: COLUNAS[c] for c in df.columns if c in COLUNAS})


def _linha_para_veiculo(row: pd.Series) -> Optional[Dict]:
    dados = {}
    for coluna in set(COLUNAS.values()):
        if coluna not in row.index:
            continue
        valor = row[coluna]
        if pd.isna(valor) or str(valor).strip() == "":
            continue
        dados[coluna] = safe_num(valor) if coluna in NUMERICAS else str(valor).strip()
    if dados.get("placa"):
        dados["placa"] = dados["placa"].upper().replace(" ", "")
    if not dados.get("placa") and not dados.get("registro_interno"):
        return None
    return dados


def importar_excel(caminho_arquivo) -> Dict[str, int]:
    """
    Importa veiculos de uma planilha (.xlsx ou .csv).

    Atualiza o veiculo existente com a mesma placa (ou registro interno quando
    a linha nao tem placa) e cria os demais. Linhas sem identificacao sao
    ignoradas.
    """
    df = ler_planilha(caminho_arquivo)
    resumo = {"criados": 0, "atualizados": 0, "ignorados": 0}

    with get_conn(immediate=True) as conn:
        cursor = conn.cursor()
        for _, row in df.iterrows():
            dados = _linha_para_veiculo(row)
            if not dados:
                resumo["ignorados"] += 1
                continue

            if dados.get("placa"):
                cursor.execute("SELECT id FROM vehicles WHERE placa=?", (dados["placa"],))
            else:
                cursor.execute(
                    "SELECT id FROM vehicles WHERE registro_interno=? AND (placa IS NULL OR placa='')",
                    (dados["registro_interno"],),
                )
            existente = cursor.fetchone()

            if existente:
                sets = ", ".join(f"{k}=?" for k in dados)
                cursor.execute(f"UPDATE vehicles SET {sets} WHERE id=?", (*dados.values(), existente["id"]))
                resumo["atualizados"] += 1
            else:
                cols = ", ".join(dados)
                marks = ", ".join("?" for _ in dados)
                cursor.execute(f"INSERT INTO vehicles ({cols}) VALUES ({marks})", tuple(dados.values()))
                resumo["criados"] += 1

    logger.info("Importacao de %s concluida: %s", caminho_arquivo, resumo)
    return resumo


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    if len(sys.argv) != 2:
        print("Uso: python importacao_excel.py <planilha.xlsx|.csv>")
        raise SystemExit(1)
    print("Importação concluída com sucesso!", importar_excel(sys.argv[1]))

"""
Regras de negocio compartilhadas (combustivel, leituras, orcamento, jornada).
"""
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional, Union

FUEL_TYPES_MAP: Dict[str, str] = {
    "DIESEL S10": "dieselS10",
    "DIESEL S500": "dieselS500",
    "GASOLINA COMUM": "gasolinaComum",
    "GASOLINA ADITIVADA": "gasolinaAditivada",
    "ETANOL": "etanol",
    "ARLA 32": "arla32",
}

LIMITE_SALTO_KM = 2000
LIMITE_SALTO_HORAS = 100
LIMITE_ORCAMENTO_COMBUSTIVEL = 0.20
LITROS_TANQUE_CHEIO = 200
DESCANSO_MINIMO_HORAS = 11
MAX_TENTATIVAS_LEITURA = 3


def safe_num(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    try:
        n = float(value)
    except (TypeError, ValueError):
        return 0.0
    if n != n:  # NaN
        return 0.0
    return n


def normalize_fuel_type(value: Any) -> Optional[str]:
    if value is None:
        return None
    txt = str(value).strip()
    if not txt:
        return None
    return FUEL_TYPES_MAP.get(txt.upper(), txt)


def validate_meter_reading(current: Any, previous: Any, kind: str = "km") -> Optional[str]:
    """
    Valida leitura de odometro (kind='km') ou horimetro (kind='h').
    Retorna a mensagem de erro ou None se a leitura for aceitavel.
    """
    try:
        curr = float(current)
    except (TypeError, ValueError):
        return None
    if curr != curr or curr <= 0:
        return None

    try:
        prev = float(previous)
    except (TypeError, ValueError):
        return None
    if prev != prev:
        return None

    nome = "Odômetro" if kind == "km" else "Horímetro"
    if curr < prev:
        return f"{nome} menor que o anterior ({prev:g})."

    limite = LIMITE_SALTO_KM if kind == "km" else LIMITE_SALTO_HORAS
    if (curr - prev) > limite:
        return f"Salto excessivo de {nome} (> {limite}). Verifique a digitação."
    return None


def check_budget_limit(total_spent: Any, current_estimate: Any, contract_value: Any) -> bool:
    contrato = safe_num(contract_value)
    if contrato <= 0:
        return True
    limite = contrato * LIMITE_ORCAMENTO_COMBUSTIVEL
    return (safe_num(total_spent) + safe_num(current_estimate)) <= limite


def estimate_request_cost(liters: Any, full_tank: bool, price: float) -> float:
    litros = LITROS_TANQUE_CHEIO if full_tank else safe_num(liters)
    return litros * price


def as_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "true", "sim", "s", "yes")


def _hora_local(dt: datetime) -> datetime:
    # horarios gravados sao ingenuos no fuso do servidor
    if dt.tzinfo is None:
        return dt
    return dt.astimezone().replace(tzinfo=None)


def parse_datetime(value: Union[str, date, datetime, None]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _hora_local(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    txt = str(value).strip()
    if txt.endswith("Z"):
        txt = txt[:-1] + "+00:00"
    try:
        return _hora_local(datetime.fromisoformat(txt))
    except ValueError:
        pass
    for fmt in ("%d/%m/%Y %H:%M:%S", "%d/%m/%Y %H:%M", "%d/%m/%Y"):
        try:
            return datetime.strptime(txt, fmt)
        except ValueError:
            continue
    raise ValueError(f"Data invalida: {value}")


def week_start(value: Union[str, date, datetime]) -> date:
    """Segunda-feira da semana da data."""
    dt = parse_datetime(value) or datetime.now()
    d = dt.date()
    return d - timedelta(days=d.weekday())


def add_business_days(start: Union[date, datetime, None], days: int) -> date:
    current = (start or datetime.now())
    if isinstance(current, datetime):
        current = current.date()
    count = 0
    while count < days:
        current += timedelta(days=1)
        if current.weekday() < 5:
            count += 1
    return current


def rest_hours_between(end: Any, start: Any) -> float:
    fim = parse_datetime(end)
    inicio = parse_datetime(start)
    if fim is None or inicio is None:
        return float("inf")
    return (inicio - fim).total_seconds() / 3600.0


def hours_between_times(start: Optional[str], end: Optional[str]) -> float:
    """Horas entre dois horarios HH:MM do mesmo dia (0 se incompleto)."""
    if not start or not end:
        return 0.0
    try:
        h1 = datetime.strptime(start.strip()[:5], "%H:%M")
        h2 = datetime.strptime(end.strip()[:5], "%H:%M")
    except ValueError:
        return 0.0
    diff = (h2 - h1).total_seconds() / 3600.0
    return diff if diff > 0 else 0.0


def now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


def now_date_str() -> str:
    return datetime.now().strftime("%Y-%m-%d")

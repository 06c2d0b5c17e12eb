# backend/meta.py
import json
import hmac
import math
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import requests

logger = logging.getLogger(__name__)

GRAPH_HOST = "https://graph.facebook.com"
DEFAULT_VERSION = "v24.0"
REQUEST_TIMEOUT = 30  # segundos

TIMEFRAMES = ("this_week", "this_month", "last_7_days", "last_30_days")
DEFAULT_TIMEFRAME = "this_week"
MONTHLY_TIMEFRAMES = {"this_month", "last_30_days"}


class MetaAPIError(Exception):
    def __init__(self, status: int, message: str, code: Optional[int] = None, error_type: Optional[str] = None,
                 raw: Optional[dict] = None):
        super().__init__(message)
        self.status = status
        self.code = code
        self.error_type = error_type
        self.raw = raw or {}


def appsecret_proof(token: Optional[str], secret: Optional[str]) -> Optional[str]:
    if not token or not secret:
        return None
    return hmac.new(secret.encode(), token.encode(), hashlib.sha256).hexdigest()


def _decode_body(response) -> Any:
    text = response.text or ""
    try:
        return json.loads(text)
    except ValueError:
        return {"raw": text}


def request_json(
    method: str,
    url: str,
    *,
    params: Optional[dict] = None,
    data: Optional[dict] = None,
    timeout: int = REQUEST_TIMEOUT,
) -> Tuple[int, Any]:
    """
    Chamada HTTP genérica usada pelos fluxos OAuth.

    Erros do provedor (``error`` / ``error_message`` no corpo) não geram
    exceção aqui; quem chama decide. Apenas falhas de transporte viram
    MetaAPIError.
    """
    try:
        response = requests.request(method, url, params=params, data=data, timeout=timeout)
    except requests.exceptions.Timeout:
        logger.error("Request timeout after %ss: %s", timeout, url.split("?")[0])
        raise MetaAPIError(status=504, message=f"Request timeout after {timeout}s", error_type="timeout")
    except requests.exceptions.RequestException as e:
        # A mensagem do requests inclui a URL com access_token/client_secret.
        logger.error("Request exception (%s) em %s", type(e).__name__, url.split("?")[0])
        raise MetaAPIError(status=500, message=f"Request failed: {type(e).__name__}", error_type="request_exception")
    return response.status_code, _decode_body(response)


def gget(
    path: str,
    params: Optional[dict] = None,
    token: Optional[str] = None,
    *,
    version: str = DEFAULT_VERSION,
    timeout: int = REQUEST_TIMEOUT,
    app_secret: Optional[str] = None,
):
    """
    Faz uma requisição GET à Meta Graph API (uma única tentativa, sem retry).

    Args:
        path: Caminho da API (ex: "/me/accounts")
        params: Parâmetros da query string
        token: Token de acesso
        version: Versão da Graph API
        timeout: Timeout em segundos
        app_secret: Segredo do app, usado para o appsecret_proof

    Returns:
        dict: Resposta JSON da API

    Raises:
        MetaAPIError: Se a API responder com erro ou a requisição falhar
    """
    if not token:
        raise RuntimeError("Graph API access token is not configured")

    query = {"access_token": token}
    proof = appsecret_proof(token, app_secret)
    if proof:
        query["appsecret_proof"] = proof
    if params:
        query.update(params)

    url = f"{GRAPH_HOST}/{version}{path}?{urlencode(query, doseq=True)}"
    logger.debug("Graph GET %s", path)
    status, payload = request_json("GET", url, timeout=timeout)
    if 200 <= status < 300:
        return payload

    err = payload.get("error") if isinstance(payload, dict) else None
    if err is not None:
        detail = json.dumps(err)
    else:
        detail = payload.get("raw") if isinstance(payload, dict) and "raw" in payload else json.dumps(payload)
    logger.error("Meta API error on %s: %s", path, detail)
    raise MetaAPIError(
        status=status,
        message=f"Graph API {status}: {detail}",
        code=err.get("code") if isinstance(err, dict) else None,
        error_type=err.get("type") if isinstance(err, dict) else None,
        raw=payload if isinstance(payload, dict) else {"raw": payload},
    )


def clamp_int(value: Any, fallback: int, minimum: int, maximum: int) -> int:
    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return fallback
    else:
        return fallback
    if not math.isfinite(number):
        return fallback
    return max(minimum, min(maximum, int(number)))


def timeframe_days(timeframe: Optional[str]) -> int:
    return 30 if timeframe in MONTHLY_TIMEFRAMES else 7


def period_for_timeframe(timeframe: Optional[str]) -> str:
    return "this_month" if timeframe in MONTHLY_TIMEFRAMES else "this_week"


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def timeframe_range(timeframe: Optional[str], today: Optional[date] = None) -> Tuple[str, str]:
    """Janela [since, until) em datas ISO; until é a data UTC de hoje."""
    until = today or utc_today()
    since = until - timedelta(days=timeframe_days(timeframe))
    return since.isoformat(), until.isoformat()


def _coerce_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        raw = value.strip().replace(',', '.')
        try:
            return int(raw)
        except ValueError:
            pass
        try:
            number = float(raw)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    if isinstance(value, dict):
        total = 0
        has_value = False
        for inner in value.values():
            coerced = _coerce_number(inner)
            if coerced is not None:
                total += coerced
                has_value = True
        return total if has_value else None
    return None


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass
class MetricPoint:
    value: Optional[float]
    end_time: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"value": self.value}
        if self.end_time is not None:
            payload["end_time"] = self.end_time
        return payload


@dataclass
class MetricValue:
    """Métrica normalizada: escalar, série temporal ou breakdown."""

    name: str
    period: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    value: Any = None
    values: Optional[List[MetricPoint]] = field(default=None)

    @property
    def kind(self) -> str:
        if isinstance(self.value, (int, float)) and not isinstance(self.value, bool):
            return "scalar"
        if self.values:
            return "series"
        if isinstance(self.value, dict):
            return "breakdown"
        return "empty"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"name": self.name}
        for key in ("period", "title", "description"):
            current = getattr(self, key)
            if current is not None:
                payload[key] = current
        if self.values is not None:
            payload["values"] = [point.to_dict() for point in self.values]
        if self.value is not None:
            payload["value"] = self.value
        return payload


def _metric_from_entry(item: Any) -> Optional[MetricValue]:
    if not isinstance(item, dict):
        return None
    name = item.get("name")
    if not isinstance(name, str) or not name:
        return None

    def _text(key: str) -> Optional[str]:
        current = item.get(key)
        return current if isinstance(current, str) else None

    values = None
    raw_values = item.get("values")
    if isinstance(raw_values, list):
        values = [
            MetricPoint(value=_coerce_number(entry.get("value")), end_time=entry.get("end_time"))
            for entry in raw_values
            if isinstance(entry, dict)
        ]

    value = item.get("value")
    if value is None:
        total_value = item.get("total_value")
        if isinstance(total_value, dict) and total_value.get("value") is not None:
            value = total_value.get("value")

    return MetricValue(
        name=name,
        period=_text("period"),
        title=_text("title"),
        description=_text("description"),
        value=value,
        values=values,
    )


def to_metric_values(payload: Any) -> List[MetricValue]:
    if not isinstance(payload, dict):
        return []
    data = payload.get("data")
    if not isinstance(data, list):
        return []
    metrics: List[MetricValue] = []
    for item in data:
        metric = _metric_from_entry(item)
        if metric is not None:
            metrics.append(metric)
    return metrics


def latest_value(metric: Optional[MetricValue]) -> Optional[float]:
    if metric is None:
        return None
    if metric.kind == "scalar":
        return metric.value
    if metric.values:
        return metric.values[-1].value
    return None


def insights_to_numbers(payload: Any) -> Dict[str, float]:
    numbers: Dict[str, float] = {}
    for metric in to_metric_values(payload):
        current = latest_value(metric)
        if current is not None:
            numbers[metric.name] = current
    return numbers


def media_engagement(item: Dict[str, Any], insights: Optional[Dict[str, float]] = None) -> float:
    insights = insights or {}
    return (
        (_coerce_number(item.get("like_count")) or 0)
        + (_coerce_number(item.get("comments_count")) or 0)
        + (insights.get("saved") or 0)
        + (insights.get("shares") or 0)
    )


def story_completion_rate(insights: Dict[str, float]) -> int:
    impressions = insights.get("impressions")
    exits = insights.get("exits")
    if not impressions or impressions <= 0 or not exits:
        return 0
    return round_half_up((1 - exits / impressions) * 100)

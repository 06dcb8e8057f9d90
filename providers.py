"""
=============================================================================
PROVIDERS.PY — Adaptadores de Telemetría (Fitbit / Google Fit)
=============================================================================
Traen los pasos y el peso diarios de los últimos días desde el proveedor
del usuario. El backfill los escribe en el historial.

Reglas:
  - Toda llamada HTTP lleva timeout, y no se reintenta: si falla, falla.
  - Un fallo SIEMPRE es explícito (ExternalProviderError), nunca una lista
    de ceros: el backfill necesita saberlo para saltar al usuario.
      401 / 403 → token caducado (lo refresca otro servicio)
      429       → límite de peticiones
      otro >=400, timeout, conexión → error genérico
  - Los pesos se devuelven siempre en libras.
"""

import os
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

import pytz
import requests

import daykeys
from errors import ExternalProviderError
from models import DataSource, HistorySource, User

logger = logging.getLogger("fitchallenge.providers")

PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10"))
# PROVIDER_TIMEOUT_SECONDS → tiempo máximo por llamada HTTP al proveedor

FITBIT_API_BASE = "https://api.fitbit.com/1/user"
GOOGLE_FIT_AGGREGATE_URL = "https://www.googleapis.com/fitness/v1/users/me/dataset:aggregate"
GOOGLE_FIT_STEPS_TYPE = "com.google.step_count.delta"

KG_TO_LBS = 2.20462


@dataclass
class DailyTelemetry:
    """Lo que el proveedor sabe de un día"""
    day: date
    steps: int = 0
    weight: Optional[float] = None


def kg_to_lbs(kg) -> Optional[float]:
    """Kilos → libras con 2 decimales. None si el valor no es un número válido."""
    try:
        value = float(kg)
    except (TypeError, ValueError):
        return None
    if value <= 0:
        return None
    return round(value * KG_TO_LBS, 2)


# =============================================================================
# ===================== BASE ==================================================
# =============================================================================

class TelemetryProvider:
    name = "provider"
    source_tag = HistorySource.device_sync

    def __init__(self, access_token: Optional[str], timeout: float = PROVIDER_TIMEOUT_SECONDS):
        self.access_token = access_token
        self.timeout = timeout

    def fetch_daily_history(self, start: date, end: date,
                            timezone: Optional[str] = None) -> list[DailyTelemetry]:
        """
        Historial diario entre start y end (incluidos).
        Un payload inesperado (HTML, JSON sin las claves de siempre...) también
        es un fallo del proveedor, no un error del job.
        """
        try:
            return self._fetch_daily_history(start, end, timezone)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ExternalProviderError(self.name, f"Respuesta malformada: {type(e).__name__}: {e}")

    def _fetch_daily_history(self, start: date, end: date,
                             timezone: Optional[str] = None) -> list[DailyTelemetry]:
        raise NotImplementedError

    def _headers(self) -> dict:
        if not self.access_token:
            raise ExternalProviderError(self.name, "El usuario no tiene token de acceso", http_status=401)
        return {"Authorization": f"Bearer {self.access_token}"}

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        """Una llamada HTTP con timeout. Los errores de red → ExternalProviderError."""
        try:
            return requests.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout:
            raise ExternalProviderError(self.name, f"Timeout tras {self.timeout}s")
        except requests.exceptions.RequestException as e:
            raise ExternalProviderError(self.name, f"Error de conexión: {e}")

    def _check_status(self, response: requests.Response, what: str):
        status = response.status_code
        if status in (401, 403):
            raise ExternalProviderError(self.name, f"Token caducado o sin permisos ({what})", http_status=status)
        if status == 429:
            raise ExternalProviderError(self.name, f"Límite de peticiones alcanzado ({what})", http_status=status)
        if status >= 400:
            raise ExternalProviderError(self.name, f"HTTP {status} en {what}: {response.text[:200]}", http_status=status)


# =============================================================================
# ===================== FITBIT ================================================
# =============================================================================

class FitbitProvider(TelemetryProvider):
    """Series diarias de pasos y peso. Con Accept-Language en_US el peso viene en libras."""

    name = "fitbit"
    source_tag = HistorySource.device_sync

    def __init__(self, access_token: Optional[str], provider_user_id: Optional[str] = None,
                 timeout: float = PROVIDER_TIMEOUT_SECONDS):
        super().__init__(access_token, timeout)
        self.provider_user_id = provider_user_id or "-"

    def _headers(self) -> dict:
        headers = super()._headers()
        headers["Accept-Language"] = "en_US"
        return headers

    def _fetch_daily_history(self, start: date, end: date,
                             timezone: Optional[str] = None) -> list[DailyTelemetry]:
        # Fitbit ya devuelve días locales del usuario: la zona no hace falta
        headers = self._headers()
        base = f"{FITBIT_API_BASE}/{self.provider_user_id}"
        span = f"{start.isoformat()}/{end.isoformat()}"

        steps_response = self._request("GET", f"{base}/activities/steps/date/{span}.json", headers=headers)
        self._check_status(steps_response, "pasos")

        weight_response = self._request("GET", f"{base}/body/log/weight/date/{span}.json", headers=headers)
        weights = {}
        if weight_response.status_code == 404:
            logger.info(f"ℹ️ Fitbit sin registros de peso para {self.provider_user_id} ({span})")
        else:
            self._check_status(weight_response, "peso")
            weights = self._parse_weights(weight_response.json())

        history = []
        for item in steps_response.json().get("activities-steps", []):
            day = date.fromisoformat(item["dateTime"])
            if day < start or day > end:
                continue
            history.append(DailyTelemetry(
                day=day,
                steps=int(item.get("value") or 0),
                weight=weights.get(day),
            ))
        return history

    @staticmethod
    def _parse_weights(payload: dict) -> dict:
        """Un peso por día (el último registrado ese día gana)"""
        weights = {}
        for entry in payload.get("weight", []):
            if not entry.get("date") or entry.get("weight") is None:
                continue
            value = float(entry["weight"])
            if entry.get("unit") == "kg":
                value = kg_to_lbs(value)
            if value:
                weights[date.fromisoformat(entry["date"])] = value
        return weights


# =============================================================================
# ===================== GOOGLE FIT ============================================
# =============================================================================

class GoogleFitProvider(TelemetryProvider):
    """Buckets diarios agregados de pasos. Este endpoint no trae peso."""

    name = "google-fit"
    source_tag = HistorySource.aggregate_sync

    def _fetch_daily_history(self, start: date, end: date,
                             timezone: Optional[str] = None) -> list[DailyTelemetry]:
        tz = daykeys.resolve_timezone(timezone)
        start_instant = tz.localize(datetime.combine(start, datetime.min.time()))
        end_instant = tz.localize(datetime.combine(end + timedelta(days=1), datetime.min.time()))

        body = {
            "aggregateBy": [{"dataTypeName": GOOGLE_FIT_STEPS_TYPE}],
            # Buckets de día de calendario en la zona del usuario (respeta el horario de verano)
            "bucketByTime": {"period": {"type": "day", "value": 1, "timeZoneId": tz.zone}},
            "startTimeMillis": int(start_instant.timestamp() * 1000),
            "endTimeMillis": int(end_instant.timestamp() * 1000),
        }
        response = self._request("POST", GOOGLE_FIT_AGGREGATE_URL, headers=self._headers(), json=body)
        self._check_status(response, "agregado de pasos")

        history = []
        for bucket in response.json().get("bucket", []):
            start_millis = bucket.get("startTimeMillis")
            if start_millis is None:
                logger.warning("⚠️ Bucket de Google Fit sin startTimeMillis, se ignora")
                continue
            instant = datetime.fromtimestamp(int(start_millis) / 1000, tz=pytz.utc)
            day = daykeys.day_key(instant, tz.zone)
            if day < start or day > end:
                continue
            history.append(DailyTelemetry(day=day, steps=self._bucket_steps(bucket)))
        return history

    @staticmethod
    def _bucket_steps(bucket: dict) -> int:
        for dataset in bucket.get("dataset", []):
            source_id = dataset.get("dataSourceId") or ""
            if dataset.get("dataTypeName") != GOOGLE_FIT_STEPS_TYPE and "step_count.delta" not in source_id:
                continue
            points = dataset.get("point") or []
            if points and points[0].get("value"):
                return int(points[0]["value"][0].get("intVal") or 0)
        return 0


def get_provider(user: User) -> Optional[TelemetryProvider]:
    """El adaptador que toca según el data_source del usuario. None = solo manual."""
    if user.data_source == DataSource.fitbit.value:
        return FitbitProvider(user.provider_access_token, user.provider_user_id)
    if user.data_source == DataSource.google_fit.value:
        return GoogleFitProvider(user.provider_access_token)
    return None

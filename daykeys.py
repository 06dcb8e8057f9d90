"""
=============================================================================
DAYKEYS.PY — Normalizador de Claves de Día
=============================================================================
Convierte cualquier instante en el DÍA DE CALENDARIO local que le toca en
una zona horaria IANA. Ese día (un datetime.date) es la unidad de
idempotencia de todo el sistema:
  - un punto de pasos por usuario y día
  - un registro de historial por usuario y día

¿Por qué un date y no un timestamp de medianoche?
  Porque un date es estable dentro del día y estrictamente creciente entre
  días, incluso cuando cambia el horario de verano (el día del cambio dura
  23 o 25 horas, pero sigue siendo "un día").

Usa pytz para las zonas horarias, igual que el scheduler.
"""

import os
import logging
from datetime import date, datetime, timedelta
from typing import Optional, Union

import pytz

logger = logging.getLogger("fitchallenge.daykeys")

# ─────────────────────────────────────────────────────────────────────────────
# CONFIGURACIÓN
# ─────────────────────────────────────────────────────────────────────────────

APP_TIMEZONE = os.getenv("APP_TIMEZONE", "America/New_York")
# APP_TIMEZONE → zona por defecto del proceso (jobs, días, cron)

DayKey = date

WEEKDAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
# Índice = date.weekday() (lunes = 0)


def resolve_timezone(timezone: Optional[str] = None):
    """
    Devuelve el objeto pytz de la zona pedida.
    Si la zona es inválida (o None) → zona por defecto del proceso.
    """
    try:
        return pytz.timezone(timezone or APP_TIMEZONE)
    except pytz.UnknownTimeZoneError:
        logger.warning(f"⚠️ Zona horaria desconocida '{timezone}', usando {APP_TIMEZONE}")
        return pytz.timezone(APP_TIMEZONE)


def day_key(instant: Union[datetime, date], timezone: Optional[str] = None) -> DayKey:
    """
    Día de calendario local que contiene `instant` en `timezone`.

    - datetime con zona → se convierte a la zona pedida
    - datetime naive    → se interpreta como UTC
    - date              → ya es un día, se devuelve tal cual
    """
    if not isinstance(instant, datetime):
        return instant

    tz = resolve_timezone(timezone)
    if instant.tzinfo is None:
        instant = pytz.utc.localize(instant)
    return instant.astimezone(tz).date()


def today(timezone: Optional[str] = None) -> DayKey:
    """Clave del día actual en la zona dada"""
    return day_key(datetime.now(pytz.utc), timezone)


def day_range(start: DayKey, end: DayKey) -> list[DayKey]:
    """Todos los días entre start y end (ambos incluidos)"""
    days = []
    current = start
    while current <= end:
        days.append(current)
        current += timedelta(days=1)
    return days


# =============================================================================
# ===================== DÍA DE PESAJE =========================================
# =============================================================================

def weekday_index(weekday_name: Optional[str]) -> Optional[int]:
    """"monday" → 0 ... "sunday" → 6. None si no es un día válido."""
    if not weekday_name:
        return None
    name = weekday_name.strip().lower()
    if name not in WEEKDAY_NAMES:
        return None
    return WEEKDAY_NAMES.index(name)


def first_weigh_in_day(start_day: DayKey, weigh_in_day: Optional[str]) -> Optional[DayKey]:
    """
    Primer día de pesaje en o después del inicio del desafío.

    Ejemplo: desafío empieza el jueves, pesaje los lunes → el lunes siguiente.
    Si empieza justo en lunes → ese mismo día.
    """
    index = weekday_index(weigh_in_day)
    if index is None:
        return None
    days_until = (index - start_day.weekday()) % 7
    return start_day + timedelta(days=days_until)

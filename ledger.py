"""
=============================================================================
LEDGER.PY — Historial Diario de Pasos y Peso
=============================================================================
Un registro por (usuario, día). Es la FUENTE DE VERDAD: los puntos de pasos
se recalculan siempre desde aquí.

Reglas del upsert:
  - Si no existe el registro → se crea (steps por defecto 0, weight NULL)
  - steps, si viene, SIEMPRE sobrescribe
  - weight, si viene, sobrescribe SALVO que el peso guardado sea manual y
    la escritura nueva no lo sea (el peso manual gana a la sincronización)
  - Una escritura manual sin peso no cambia el origen del registro
  - Reaplicar la misma escritura N veces deja el registro idéntico
    (ni siquiera cambia updated_at)

Todo se hace en UNA sentencia INSERT ... ON CONFLICT DO UPDATE, así que un
job nocturno y una petición en vivo pueden escribir el mismo día a la vez.
"""

import os
import logging
from datetime import date, datetime
from typing import Optional, Union

from sqlalchemy import and_, case
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import PersistenceConflictError, ValidationError
from models import FitnessHistory, HistorySource

logger = logging.getLogger("fitchallenge.ledger")

# ─────────────────────────────────────────────────────────────────────────────
# CONFIGURACIÓN
# ─────────────────────────────────────────────────────────────────────────────

UPSERT_MAX_RETRIES = int(os.getenv("UPSERT_MAX_RETRIES", "3"))
# UPSERT_MAX_RETRIES → reintentos si dos escritores crean el mismo día a la vez

MANUAL = HistorySource.manual.value

ON_CONFLICT_DIALECTS = {"sqlite": sqlite_insert, "postgresql": pg_insert}


def _normalize_source(source: Union[HistorySource, str]) -> str:
    value = source.value if isinstance(source, HistorySource) else str(source)
    if value not in {s.value for s in HistorySource}:
        raise ValidationError(f"Origen de historial desconocido: {value}", field="source")
    return value


def _validate(steps: Optional[int], weight: Optional[float]):
    if steps is not None and steps < 0:
        raise ValidationError("Los pasos no pueden ser negativos", field="steps")
    if weight is not None and weight <= 0:
        raise ValidationError("El peso debe ser mayor que 0", field="weight")


# =============================================================================
# ===================== UPSERT ================================================
# =============================================================================

def upsert(
    db: Session,
    user_id: int,
    day: date,
    steps: Optional[int] = None,
    weight: Optional[float] = None,
    source: Union[HistorySource, str] = HistorySource.device_sync,
) -> FitnessHistory:
    """
    Crea o fusiona el registro de (user_id, day) y devuelve el resultado.

    Si choca con la clave única (dos inserts simultáneos en un motor sin
    ON CONFLICT), se reintenta; tras UPSERT_MAX_RETRIES → PersistenceConflictError.
    """
    source = _normalize_source(source)
    _validate(steps, weight)
    dialect = db.get_bind().dialect.name

    for attempt in range(1, UPSERT_MAX_RETRIES + 1):
        try:
            if dialect in ON_CONFLICT_DIALECTS:
                _upsert_on_conflict(db, dialect, user_id, day, steps, weight, source)
            else:
                _upsert_select_then_write(db, user_id, day, steps, weight, source)
            db.commit()
            break
        except IntegrityError as e:
            db.rollback()
            if not _is_unique_violation(e):
                # FK, NOT NULL, CHECK... reintentar no lo arregla
                raise
            logger.warning(f"⚠️ Conflicto en upsert ({user_id}, {day}), intento {attempt}/{UPSERT_MAX_RETRIES}")
    else:
        raise PersistenceConflictError(
            f"No se pudo guardar el historial de {user_id} para {day} tras {UPSERT_MAX_RETRIES} intentos"
        )

    return get_entry(db, user_id, day)


def _is_unique_violation(error: IntegrityError) -> bool:
    """Solo el choque con la clave única (user_id, day) merece reintento"""
    if getattr(error.orig, "sqlstate", None) == "23505" or getattr(error.orig, "pgcode", None) == "23505":
        return True
    message = str(error.orig)
    return "UNIQUE constraint failed" in message or "uq_history_user_day" in message


def _upsert_on_conflict(db: Session, dialect: str, user_id: int, day: date,
                        steps: Optional[int], weight: Optional[float], source: str):
    """INSERT ... ON CONFLICT (user_id, day) DO UPDATE con la precedencia en SQL"""
    insert = ON_CONFLICT_DIALECTS[dialect]
    now = datetime.utcnow()
    current = FitnessHistory.__table__.c

    stmt = insert(FitnessHistory.__table__).values(
        user_id=user_id,
        day=day,
        steps=steps if steps is not None else 0,
        weight=weight,
        source=source,
        created_at=now,
        updated_at=now,
    )
    excluded = stmt.excluded

    new_steps = excluded.steps if steps is not None else current.steps

    if source == MANUAL:
        if weight is not None:
            new_weight = excluded.weight
            new_source = excluded.source
        else:
            # Manual sin peso (solo pasos) no convierte en manual un peso sincronizado
            new_weight = current.weight
            new_source = current.source
    else:
        # Peso manual ya guardado → intocable para la sincronización
        manual_locked = and_(current.source == MANUAL, current.weight.isnot(None))
        if weight is not None:
            new_weight = case((manual_locked, current.weight), else_=excluded.weight)
        else:
            new_weight = current.weight
        new_source = case((manual_locked, current.source), else_=excluded.source)

    unchanged = and_(
        current.steps.is_not_distinct_from(new_steps),
        current.weight.is_not_distinct_from(new_weight),
        current.source.is_not_distinct_from(new_source),
    )

    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "day"],
        set_={
            "steps": new_steps,
            "weight": new_weight,
            "source": new_source,
            "updated_at": case((unchanged, current.updated_at), else_=excluded.updated_at),
        },
    )
    db.execute(stmt)


def merge_fields(existing: Optional[FitnessHistory], steps: Optional[int],
                 weight: Optional[float], source: str) -> tuple:
    """
    Misma regla de precedencia que el ON CONFLICT, en Python.
    Devuelve (steps, weight, source) resultantes.
    """
    if existing is None:
        return (steps if steps is not None else 0, weight, source)

    new_steps = steps if steps is not None else existing.steps
    manual_locked = existing.source == MANUAL and existing.weight is not None

    if source != MANUAL and manual_locked:
        return (new_steps, existing.weight, existing.source)

    if source == MANUAL and weight is None:
        return (new_steps, existing.weight, existing.source)

    new_weight = weight if weight is not None else existing.weight
    return (new_steps, new_weight, source)


def _upsert_select_then_write(db: Session, user_id: int, day: date,
                              steps: Optional[int], weight: Optional[float], source: str):
    """Para motores sin ON CONFLICT: leer con bloqueo y escribir"""
    existing = db.query(FitnessHistory).filter(
        FitnessHistory.user_id == user_id,
        FitnessHistory.day == day
    ).with_for_update().first()

    new_steps, new_weight, new_source = merge_fields(existing, steps, weight, source)

    if existing is None:
        db.add(FitnessHistory(
            user_id=user_id, day=day, steps=new_steps, weight=new_weight, source=new_source
        ))
        db.flush()
        return

    if (existing.steps, existing.weight, existing.source) != (new_steps, new_weight, new_source):
        existing.steps = new_steps
        existing.weight = new_weight
        existing.source = new_source
        existing.updated_at = datetime.utcnow()


# =============================================================================
# ===================== LECTURAS ==============================================
# =============================================================================

def get_entry(db: Session, user_id: int, day: date) -> Optional[FitnessHistory]:
    return db.query(FitnessHistory).populate_existing().filter(
        FitnessHistory.user_id == user_id,
        FitnessHistory.day == day
    ).first()


def query(db: Session, user_id: int, start: Optional[date] = None,
          end: Optional[date] = None) -> list[FitnessHistory]:
    """
    Registros del usuario entre start y end (incluidos), ordenados por día.
    Es una foto: para datos frescos hay que volver a llamar.
    """
    q = db.query(FitnessHistory).populate_existing().filter(FitnessHistory.user_id == user_id)
    if start is not None:
        q = q.filter(FitnessHistory.day >= start)
    if end is not None:
        q = q.filter(FitnessHistory.day <= end)
    return q.order_by(FitnessHistory.day.asc()).all()


def most_recent_weight(db: Session, user_id: int, on_or_before: Optional[date] = None) -> Optional[float]:
    """Último peso no nulo del historial (por día). None si nunca se pesó."""
    q = db.query(FitnessHistory).filter(
        FitnessHistory.user_id == user_id,
        FitnessHistory.weight.isnot(None)
    )
    if on_or_before is not None:
        q = q.filter(FitnessHistory.day <= on_or_before)
    entry = q.order_by(FitnessHistory.day.desc()).first()
    return entry.weight if entry else None


def has_entry_after(db: Session, user_id: int, day: date) -> bool:
    return db.query(FitnessHistory.id).filter(
        FitnessHistory.user_id == user_id,
        FitnessHistory.day > day
    ).first() is not None


def manual_weight_for_day(db: Session, user_id: int, day: date) -> Optional[float]:
    """Peso anotado a mano para ese día concreto, si lo hay"""
    entry = get_entry(db, user_id, day)
    if entry and entry.source == MANUAL and entry.weight is not None:
        return entry.weight
    return None


# =============================================================================
# ===================== CORRECCIÓN DE ADMINISTRADOR ===========================
# =============================================================================

def delete_entry(db: Session, user_id: int, day: date) -> bool:
    """
    Borra un registro del historial. Es el ÚNICO borrado permitido y solo lo
    usa la corrección de un administrador. Devuelve True si existía.
    """
    deleted = db.query(FitnessHistory).filter(
        FitnessHistory.user_id == user_id,
        FitnessHistory.day == day
    ).delete(synchronize_session=False)
    db.commit()
    if deleted:
        logger.info(f"🗑️ Registro de historial borrado: usuario {user_id}, día {day}")
    return bool(deleted)

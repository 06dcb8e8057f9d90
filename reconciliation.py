"""
=============================================================================
RECONCILIATION.PY — Recalcular Puntos de Pasos desde el Historial
=============================================================================
El historial es la fuente de verdad. Este job descarta lo que haya guardado
en el participante y vuelve a contar, día a día, cuántos días del desafío
llegaron al objetivo de pasos.

  - Es una repetición COMPLETA, no un parche: si un bug, una carrera o una
    edición manual dejó mal los puntos, la siguiente ejecución los arregla.
  - Correrlo dos veces seguidas da el mismo resultado.
  - Nunca toca weight_loss_points (se puede combinar con el scorer de peso
    en cualquier orden).

Se ejecuta cada hora desde el scheduler y tras cada backfill.
"""

import os
import logging
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import challenges
import daykeys
import ledger
from errors import FitChallengeError
from models import Challenge, ChallengeParticipant
from scoring import apply_weight_loss, goal_reached

logger = logging.getLogger("fitchallenge.reconciliation")

RECONCILE_LOOKBACK_DAYS = int(os.getenv("RECONCILE_LOOKBACK_DAYS", "7"))
# RECONCILE_LOOKBACK_DAYS → días tras el fin de un desafío en los que se sigue recalculando


def should_reconcile(challenge: Challenge, today: date,
                     lookback_days: int = RECONCILE_LOOKBACK_DAYS) -> bool:
    """Solo desafíos en curso o terminados hace menos de lookback_days"""
    if today < challenge.start_date:
        return False
    if challenge.end_date is None:
        return True
    return today <= challenge.end_date + timedelta(days=lookback_days)


def count_qualifying_days(entries, step_goal: int) -> tuple[int, Optional[date]]:
    """
    Días distintos con steps >= step_goal y el último de ellos.
    Devuelve (0, None) si no hay ninguno: es un resultado normal, no un error.
    """
    qualifying_days = {entry.day for entry in entries if goal_reached(entry.steps, step_goal)}
    if not qualifying_days:
        return 0, None
    return len(qualifying_days), max(qualifying_days)


def reconcile(db: Session, participant: ChallengeParticipant, challenge: Challenge,
              today: Optional[date] = None) -> ChallengeParticipant:
    """
    Recalcula los campos de pasos del participante desde el historial.

    Ventana: [inicio del desafío, min(fin, hoy)]
      step_goal_points    = nº de días que cumplieron el objetivo
      last_step_day       = último día que lo cumplió (NULL si ninguno)
      last_step_point_day = igual, para que el awarder no repita ese día
      total_points        = step_goal_points + weight_loss_points

    Todo en un único UPDATE.
    """
    today = today or daykeys.today()
    window_end = challenges.window_end(challenge, today)

    entries = ledger.query(db, participant.user_id, challenge.start_date, window_end)
    count, last_day = count_qualifying_days(entries, challenge.step_goal)

    values = {
        "step_goal_points": count,
        "total_points": count + ChallengeParticipant.weight_loss_points,
        "last_step_day": last_day,
        "last_step_point_day": last_day,
        "updated_at": datetime.utcnow(),
    }
    # El progreso del día solo se corrige si el último registro es de hoy
    if entries and entries[-1].day == today:
        values["last_step_count"] = entries[-1].steps

    previous = participant.step_goal_points
    db.execute(
        update(ChallengeParticipant)
        .where(ChallengeParticipant.id == participant.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(participant)

    if previous != count:
        logger.info(
            f"🔧 Corregido: usuario {participant.user_id} en desafío {challenge.id} "
            f"puntos de pasos {previous} → {count}"
        )
    return participant


def reconcile_user(db: Session, user_id: int, today: Optional[date] = None) -> int:
    """Recalcula todos los desafíos del usuario que sigan siendo elegibles"""
    today = today or daykeys.today()
    reconciled = 0
    for participant in challenges.list_user_participations(db, user_id):
        if should_reconcile(participant.challenge, today):
            reconcile(db, participant, participant.challenge, today)
            reconciled += 1
    return reconciled


def reconcile_all(db: Session, today: Optional[date] = None) -> dict:
    """
    El job horario. Un participante que falle no para a los demás.

    Devuelve un resumen: desafíos, participantes, corregidos y fallidos.
    """
    today = today or daykeys.today()
    summary = {"challenges": 0, "participants": 0, "corrected": 0, "failed": 0}

    candidates = db.query(Challenge).filter(Challenge.start_date <= today).order_by(Challenge.id).all()
    for challenge in candidates:
        if not should_reconcile(challenge, today):
            continue
        summary["challenges"] += 1

        for participant in challenges.list_participants(db, challenge.id):
            previous = participant.step_goal_points
            try:
                reconcile(db, participant, challenge, today)
            except (SQLAlchemyError, FitChallengeError) as e:
                db.rollback()
                summary["failed"] += 1
                logger.error(f"❌ Error recalculando usuario {participant.user_id} en desafío {challenge.id}: {e}")
                continue

            summary["participants"] += 1
            if participant.step_goal_points != previous:
                summary["corrected"] += 1

    logger.info(
        f"📊 Recalculo: {summary['challenges']} desafíos, {summary['participants']} participantes, "
        f"{summary['corrected']} corregidos, {summary['failed']} fallidos"
    )
    return summary


# =============================================================================
# ===================== CORRECCIÓN DE ADMINISTRADOR ===========================
# =============================================================================

def remove_history_entry(db: Session, user_id: int, day: date, today: Optional[date] = None) -> dict:
    """
    Un administrador borra un día del historial. Después se recalculan los
    desafíos elegibles del usuario: pasos desde el historial y peso desde el
    último pesaje que quede.
    """
    today = today or daykeys.today()
    deleted = ledger.delete_entry(db, user_id, day)

    reconciled = 0
    for participant in challenges.list_user_participations(db, user_id):
        if not should_reconcile(participant.challenge, today):
            continue

        db.execute(
            update(ChallengeParticipant)
            .where(ChallengeParticipant.id == participant.id)
            .values(last_weight=ledger.most_recent_weight(db, user_id))
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(participant)

        reconcile(db, participant, participant.challenge, today)
        apply_weight_loss(db, participant, today)
        reconciled += 1

    return {"user_id": user_id, "day": day, "deleted": deleted, "challenges_reconciled": reconciled}

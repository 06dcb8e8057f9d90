"""
=============================================================================
SCORING.PY — Sistema de Puntos del Desafío
=============================================================================
Gestiona:
  - Puntos por objetivo de pasos (máximo UNO por usuario y día de calendario)
  - Puntos por pérdida de peso (% perdido, redondeo "medio hacia arriba")
  - Confirmación del peso inicial (una sola vez, el día de pesaje)
  - Registro manual de peso y sincronización en vivo del dispositivo

Invariante que se respeta SIEMPRE:
  total_points == step_goal_points + weight_loss_points

Todas las escrituras son UPDATEs atómicos que recalculan total_points en la
misma sentencia: un job y una petición pueden tocar al mismo participante a
la vez sin pisarse.
"""

import os
import math
import enum
import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy import case, or_, update
from sqlalchemy.orm import Session

import challenges
import daykeys
import ledger
from errors import NotFoundError, ValidationError
from models import Challenge, ChallengeParticipant, HistorySource

logger = logging.getLogger("fitchallenge.scoring")

DEFAULT_STEP_GOAL = int(os.getenv("DEFAULT_STEP_GOAL", "10000"))

MAX_WEIGHT_LBS = 1500
# MAX_WEIGHT_LBS → por encima es un error de tecleo, no un peso


def recompute_total(state: ChallengeParticipant) -> ChallengeParticipant:
    state.total_points = (state.step_goal_points or 0) + (state.weight_loss_points or 0)
    return state


def _total_expression(step_goal_points, weight_loss_points):
    return step_goal_points + weight_loss_points


# =============================================================================
# ===================== OBJETIVO DE PASOS =====================================
# =============================================================================
# Un punto por día de calendario (clave de día), NO por ventana de 24 horas:
# un punto a las 23:00 no impide otro a las 06:00 del día siguiente.

def goal_reached(steps: int, step_goal: Optional[int]) -> bool:
    """Un objetivo <= 0 es inválido: se trata como inalcanzable"""
    if step_goal is None or step_goal <= 0:
        return False
    return (steps or 0) >= step_goal


def step_point_available(last_point_day: Optional[date], today: date) -> bool:
    """¿Ha empezado un día nuevo desde el último punto?"""
    return last_point_day is None or last_point_day < today


def evaluate_step_goal(state: ChallengeParticipant, today_steps: int, today: date,
                       step_goal: int) -> ChallengeParticipant:
    """
    Evalúa un dato de pasos sobre el estado en memoria.

      1. last_step_count = today_steps (siempre, es el progreso del día)
      2. Punto solo si llega al objetivo Y no hubo punto hoy
      3. Si hay punto: +1, y last_step_point_day = last_step_day = today
      4. total_points se recalcula en cualquier caso
    """
    state.last_step_count = today_steps

    if goal_reached(today_steps, step_goal) and step_point_available(state.last_step_point_day, today):
        state.step_goal_points = (state.step_goal_points or 0) + 1
        state.last_step_point_day = today
        state.last_step_day = today

    return recompute_total(state)


def record_steps(db: Session, participant: ChallengeParticipant, today_steps: int,
                 today: date, step_goal: int) -> bool:
    """
    Versión persistida de evaluate_step_goal.

    El punto se da con un UPDATE condicional sobre last_step_point_day:
    si dos procesos evalúan el mismo día a la vez, solo uno encuentra la fila.
    Devuelve True si se otorgó el punto.
    """
    now = datetime.utcnow()
    awarded = False
    Participant = ChallengeParticipant

    # El contador es el progreso del día más reciente: un día atrasado no lo pisa
    if ledger.has_entry_after(db, participant.user_id, today):
        step_count = Participant.last_step_count
    else:
        step_count = case(
            (or_(Participant.last_step_day.is_(None), Participant.last_step_day <= today), today_steps),
            else_=Participant.last_step_count,
        )

    if goal_reached(today_steps, step_goal):
        result = db.execute(
            update(Participant)
            .where(
                Participant.id == participant.id,
                or_(Participant.last_step_point_day.is_(None), Participant.last_step_point_day < today)
            )
            .values(
                step_goal_points=Participant.step_goal_points + 1,
                total_points=_total_expression(Participant.step_goal_points + 1, Participant.weight_loss_points),
                last_step_point_day=today,
                last_step_day=today,
                last_step_count=step_count,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        awarded = result.rowcount == 1

    if not awarded:
        db.execute(
            update(Participant)
            .where(Participant.id == participant.id)
            .values(
                last_step_count=step_count,
                total_points=_total_expression(Participant.step_goal_points, Participant.weight_loss_points),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

    db.commit()
    db.refresh(participant)

    if awarded:
        logger.info(
            f"👟 Punto de pasos: usuario {participant.user_id} en desafío {participant.challenge_id} "
            f"({today_steps}/{step_goal} el {today}) → {participant.step_goal_points} puntos de pasos"
        )
    return awarded


def reset_daily_step_counts(db: Session) -> int:
    """Medianoche: el progreso diario vuelve a 0. Los puntos no se tocan."""
    result = db.execute(
        update(ChallengeParticipant)
        .values(last_step_count=0)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


# =============================================================================
# ===================== PÉRDIDA DE PESO =======================================
# =============================================================================
# 1 punto por cada 1% de peso perdido respecto al peso inicial.
# Redondeo: .5 o más → arriba, menos de .5 → abajo. Nunca negativo.

def round_weight_loss_points(percentage: float) -> int:
    safe_percentage = max(0.0, percentage)
    decimal = safe_percentage % 1
    if decimal >= 0.5:
        return math.ceil(safe_percentage)
    return math.floor(safe_percentage)


def weight_loss_score(starting_weight: Optional[float], current_weight: Optional[float]) -> int:
    """
    Puntos por pérdida de peso.

      score(200, 194)   → 3   (3.0%)
      score(200, 193.5) → 3   (3.25% → abajo)
      score(200, 189)   → 6   (5.5%  → arriba)
      score(200, 205)   → 0   (ganar peso no resta)
    """
    if not starting_weight:
        return 0
    if current_weight is None:
        current_weight = starting_weight

    # Multiplicar antes de dividir evita que 5.5 acabe en 5.4999999...
    percent_lost = (starting_weight - current_weight) * 100 / starting_weight
    return round_weight_loss_points(round(percent_lost, 9))


def resolve_current_weight(db: Session, participant: ChallengeParticipant,
                           today: Optional[date] = None) -> Optional[float]:
    """
    El peso "más autorizado" que conocemos, en este orden:
      1. Un peso MANUAL del historial para hoy
      2. participant.last_weight
      3. El último peso del historial
      4. El peso inicial (0% perdido)
    """
    today = today or daykeys.today()

    manual_today = ledger.manual_weight_for_day(db, participant.user_id, today)
    if manual_today is not None:
        return manual_today
    if participant.last_weight is not None:
        return participant.last_weight

    recent = ledger.most_recent_weight(db, participant.user_id)
    if recent is not None:
        return recent
    return participant.starting_weight


def persist_weight_loss_points(db: Session, participant: ChallengeParticipant, points: int):
    """Guarda los puntos de peso y el total en una sola sentencia"""
    Participant = ChallengeParticipant
    db.execute(
        update(Participant)
        .where(Participant.id == participant.id)
        .values(
            weight_loss_points=points,
            total_points=_total_expression(Participant.step_goal_points, points),
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(participant)


def apply_weight_loss(db: Session, participant: ChallengeParticipant,
                      today: Optional[date] = None) -> int:
    """Recalcula los puntos de peso y los guarda solo si han cambiado"""
    current_weight = resolve_current_weight(db, participant, today)
    points = weight_loss_score(participant.starting_weight, current_weight)

    if points != participant.weight_loss_points or \
            participant.total_points != (participant.step_goal_points or 0) + points:
        old_points = participant.weight_loss_points
        persist_weight_loss_points(db, participant, points)
        logger.info(
            f"⚖️ Puntos de peso: usuario {participant.user_id} en desafío {participant.challenge_id} "
            f"{old_points} → {points} (inicial {participant.starting_weight}, actual {current_weight})"
        )
    return points


# =============================================================================
# ===================== PESO INICIAL ==========================================
# =============================================================================
# Máquina de estados: Unconfirmed → Confirmed, una sola vez, sin vuelta atrás.
#
# Se confirma con un peso registrado en un día que:
#   - es igual o posterior al inicio del desafío, Y
#   - es el día de pesaje configurado (ej. lunes), O todavía no ha llegado el
#     primer día de pesaje (red de seguridad para quien empieza a mitad de semana)

class StartingWeightState(str, enum.Enum):
    unconfirmed = "unconfirmed"
    confirmed = "confirmed"


def starting_weight_state(participant: ChallengeParticipant) -> StartingWeightState:
    if participant.starting_weight is None:
        return StartingWeightState.unconfirmed
    return StartingWeightState.confirmed


def starting_weight_due(challenge: Challenge, day: date) -> bool:
    """¿Un peso registrado ese día confirmaría el peso inicial?"""
    if day < challenge.start_date:
        return False

    first_weigh_in = daykeys.first_weigh_in_day(challenge.start_date, challenge.weigh_in_day)
    if first_weigh_in is None:
        # Sin día de pesaje configurado → vale cualquier día desde el inicio
        return True
    return day.weekday() == first_weigh_in.weekday() or day < first_weigh_in


def confirm_starting_weight(db: Session, participant: ChallengeParticipant,
                            challenge: Challenge, day: date, weight: float) -> bool:
    """
    Intenta la transición Unconfirmed → Confirmed.
    El UPDATE solo encuentra la fila si starting_weight sigue siendo NULL.
    """
    if starting_weight_state(participant) == StartingWeightState.confirmed:
        return False
    if not starting_weight_due(challenge, day):
        return False

    result = db.execute(
        update(ChallengeParticipant)
        .where(
            ChallengeParticipant.id == participant.id,
            ChallengeParticipant.starting_weight.is_(None)
        )
        .values(starting_weight=weight, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(participant)

    confirmed = result.rowcount == 1
    if confirmed:
        logger.info(
            f"🎯 Peso inicial confirmado: usuario {participant.user_id} en desafío "
            f"{participant.challenge_id} = {weight} lbs ({day})"
        )
    return confirmed


def record_weight(db: Session, participant: ChallengeParticipant, challenge: Challenge,
                  day: date, weight: float, today: Optional[date] = None) -> ChallengeParticipant:
    """
    Tras guardar un peso en el historial:
      1. last_weight = último peso del historial (respeta la precedencia manual)
      2. Se ofrece el peso a la máquina de estados del peso inicial
      3. Se recalculan los puntos de peso
    """
    today = today or daykeys.today()
    latest = ledger.most_recent_weight(db, participant.user_id)

    db.execute(
        update(ChallengeParticipant)
        .where(ChallengeParticipant.id == participant.id)
        .values(last_weight=latest if latest is not None else weight, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(participant)

    confirm_starting_weight(db, participant, challenge, day, weight)
    apply_weight_loss(db, participant, today)
    return participant


# =============================================================================
# ===================== REGISTRO MANUAL DE PESO ===============================
# =============================================================================

def validate_weight(weight: float):
    if weight is None or weight <= 0 or weight > MAX_WEIGHT_LBS:
        raise ValidationError(f"Peso fuera de rango: {weight}", field="weight")


def log_manual_weight(db: Session, user_id: int, challenge_id: int, weight: float,
                      day: Optional[date] = None, today: Optional[date] = None) -> ChallengeParticipant:
    """
    El usuario anota su peso a mano:
      1. Historial con source=manual (gana a cualquier sincronización)
      2. Peso actual, peso inicial y puntos de peso del participante
    """
    validate_weight(weight)
    today = today or daykeys.today()
    day = day or today
    if day > today:
        raise ValidationError(f"No se puede registrar un peso en el futuro ({day})", field="day")

    challenge = challenges.get_challenge(db, challenge_id)
    if challenge is None:
        raise NotFoundError("Desafío", challenge_id)
    participant = challenges.get_participant(db, challenge_id, user_id)
    if participant is None:
        raise NotFoundError("Participante", f"{challenge_id}/{user_id}")

    ledger.upsert(db, user_id, day, weight=weight, source=HistorySource.manual)
    logger.info(f"📝 Peso manual: usuario {user_id} = {weight} lbs ({day})")

    return record_weight(db, participant, challenge, day, weight, today)


# =============================================================================
# ===================== SINCRONIZACIÓN EN VIVO ================================
# =============================================================================

def sync_daily_telemetry(db: Session, user_id: int, instant, steps: int,
                         weight: Optional[float] = None, timezone: Optional[str] = None,
                         source: HistorySource = HistorySource.device_sync) -> list[ChallengeParticipant]:
    """
    Un dato del dispositivo llega en vivo:
      1. Se calcula su día (zona horaria) y se guarda en el historial
      2. Para cada desafío del usuario que contiene ese día → objetivo de pasos
      3. Si trae peso → peso actual / inicial / puntos de peso

    Devuelve los participantes actualizados.
    """
    if weight is not None:
        validate_weight(weight)

    day = daykeys.day_key(instant, timezone)
    entry = ledger.upsert(db, user_id, day, steps=steps, weight=weight, source=source)

    updated = []
    for participant in challenges.list_user_participations(db, user_id):
        challenge = participant.challenge
        if not challenges.contains_day(challenge, day):
            continue

        record_steps(db, participant, entry.steps, day, challenge.step_goal)
        if weight is not None and entry.weight is not None:
            # entry.weight ya respeta la precedencia: si ese día hay un peso manual, es ese
            record_weight(db, participant, challenge, day, entry.weight, today=day)
        updated.append(participant)

    return updated

"""
=============================================================================
LEADERBOARD.PY — Clasificación del Desafío
=============================================================================
Se calcula al leer:
  1. Para cada participante se resuelve el peso "más autorizado" y se
     recalculan los puntos de peso y el total al vuelo
  2. Si lo guardado no coincide, se intenta corregir en la BD (si falla,
     la respuesta sigue siendo correcta: solo se registra un aviso)
  3. Orden: total descendente, empate → nombre alfabético
  4. Ranking de competición: los empatados comparten puesto y el siguiente
     salta a su posición real ([10, 10, 7] → [1, 1, 3])
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import challenges
import daykeys
from errors import NotFoundError
from models import Challenge, ChallengeParticipant
from scoring import DEFAULT_STEP_GOAL, goal_reached, persist_weight_loss_points, \
    resolve_current_weight, weight_loss_score

logger = logging.getLogger("fitchallenge.leaderboard")


@dataclass
class LeaderboardEntry:
    user_id: int
    name: str
    rank: int
    total_points: int
    step_goal_points: int
    weight_loss_points: int
    step_goal_days_achieved: int
    starting_weight: Optional[float]
    current_weight: Optional[float]
    last_step_count: int
    step_goal: int
    step_goal_met: bool


def assign_ranks(scores: list[int]) -> list[int]:
    """Ranking de competición sobre una lista ya ordenada de mayor a menor"""
    ranks = []
    for position, score in enumerate(scores, start=1):
        if ranks and score == scores[position - 2]:
            ranks.append(ranks[-1])
        else:
            ranks.append(position)
    return ranks


def _repair(db: Session, participant: ChallengeParticipant, points: int):
    """Corrección oportunista. Un fallo aquí no rompe la clasificación."""
    try:
        persist_weight_loss_points(db, participant, points)
        logger.info(f"🔧 Puntos de peso corregidos al leer: usuario {participant.user_id} → {points}")
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"⚠️ No se pudo guardar la corrección de {participant.user_id}: {e}")


def _build_entry(db: Session, participant: ChallengeParticipant, challenge: Challenge,
                 today: date) -> LeaderboardEntry:
    current_weight = resolve_current_weight(db, participant, today)
    weight_points = weight_loss_score(participant.starting_weight, current_weight)
    step_points = participant.step_goal_points or 0
    total = step_points + weight_points

    if weight_points != participant.weight_loss_points or total != participant.total_points:
        _repair(db, participant, weight_points)

    step_goal = challenge.step_goal if challenge.step_goal and challenge.step_goal > 0 else DEFAULT_STEP_GOAL
    last_step_count = participant.last_step_count or 0

    return LeaderboardEntry(
        user_id=participant.user_id,
        name=participant.user.name,
        rank=0,
        total_points=total,
        step_goal_points=step_points,
        weight_loss_points=weight_points,
        step_goal_days_achieved=step_points,
        starting_weight=participant.starting_weight,
        current_weight=current_weight if current_weight is not None else participant.starting_weight,
        last_step_count=last_step_count,
        step_goal=step_goal,
        step_goal_met=goal_reached(last_step_count, challenge.step_goal),
    )


def build_leaderboard(db: Session, challenge_id: int, today: Optional[date] = None) -> list[LeaderboardEntry]:
    challenge = challenges.get_challenge(db, challenge_id)
    if challenge is None:
        raise NotFoundError("Desafío", challenge_id)
    today = today or daykeys.today()

    entries = [
        _build_entry(db, participant, challenge, today)
        for participant in challenges.list_participants(db, challenge_id)
    ]
    entries.sort(key=lambda e: (-e.total_points, e.name.casefold()))

    for entry, rank in zip(entries, assign_ranks([e.total_points for e in entries])):
        entry.rank = rank
    return entries


def user_rank(db: Session, challenge_id: int, user_id: int,
              today: Optional[date] = None) -> LeaderboardEntry:
    """Puesto de un único participante dentro de la clasificación completa"""
    for entry in build_leaderboard(db, challenge_id, today):
        if entry.user_id == user_id:
            return entry
    raise NotFoundError("Participante", f"{challenge_id}/{user_id}")

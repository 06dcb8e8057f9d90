"""
=============================================================================
CHALLENGES.PY — Desafíos y Participantes
=============================================================================
Acceso de solo lectura a la ventana de cada desafío (lo gestiona otro
servicio) y el almacén de participantes, con clave única
(challenge_id, user_id).

Las búsquedas son "consultivas": devuelven None si no existe. Quien
necesite que exista (la API) decide si eso es un 404.
"""

import logging
from datetime import date
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

import ledger
from models import Challenge, ChallengeParticipant, User

logger = logging.getLogger("fitchallenge.challenges")


# =============================================================================
# ===================== VENTANA DEL DESAFÍO ===================================
# =============================================================================

def get_challenge(db: Session, challenge_id: int) -> Optional[Challenge]:
    return db.get(Challenge, challenge_id)


def window_end(challenge: Challenge, today: date) -> date:
    """Último día que cuenta hoy: el fin del desafío, o hoy si aún no acabó"""
    if challenge.end_date is None:
        return today
    return min(challenge.end_date, today)


def contains_day(challenge: Challenge, day: date) -> bool:
    """¿El día cae dentro de [inicio, fin] del desafío?"""
    if day < challenge.start_date:
        return False
    return challenge.end_date is None or day <= challenge.end_date


def list_active_challenges(db: Session, today: date) -> list[Challenge]:
    """Desafíos empezados y no terminados (fin abierto = activo)"""
    return db.query(Challenge).filter(
        Challenge.start_date <= today,
        (Challenge.end_date.is_(None)) | (Challenge.end_date >= today)
    ).order_by(Challenge.id).all()


# =============================================================================
# ===================== PARTICIPANTES =========================================
# =============================================================================

def get_participant(db: Session, challenge_id: int, user_id: int) -> Optional[ChallengeParticipant]:
    return db.query(ChallengeParticipant).populate_existing().filter(
        ChallengeParticipant.challenge_id == challenge_id,
        ChallengeParticipant.user_id == user_id
    ).first()


def list_participants(db: Session, challenge_id: int) -> list[ChallengeParticipant]:
    return db.query(ChallengeParticipant).options(
        joinedload(ChallengeParticipant.user)
    ).filter(
        ChallengeParticipant.challenge_id == challenge_id
    ).order_by(ChallengeParticipant.id).all()


def list_user_participations(db: Session, user_id: int) -> list[ChallengeParticipant]:
    return db.query(ChallengeParticipant).options(
        joinedload(ChallengeParticipant.challenge)
    ).filter(
        ChallengeParticipant.user_id == user_id
    ).order_by(ChallengeParticipant.id).all()


def join_challenge(db: Session, challenge: Challenge, user: User) -> ChallengeParticipant:
    """
    Crea el estado de puntuación del usuario en el desafío.

    starting_weight empieza en NULL: se confirma el primer día de pesaje.
    last_weight arranca con el último peso conocido del historial.
    Si ya participaba, devuelve el registro existente.
    """
    existing = get_participant(db, challenge.id, user.id)
    if existing:
        return existing

    participant = ChallengeParticipant(
        challenge_id=challenge.id,
        user_id=user.id,
        starting_weight=None,
        last_weight=ledger.most_recent_weight(db, user.id),
        last_step_count=0,
        step_goal_points=0,
        weight_loss_points=0,
        total_points=0,
    )
    db.add(participant)
    try:
        db.commit()
    except IntegrityError:
        # Otro proceso lo creó entre medias
        db.rollback()
        return get_participant(db, challenge.id, user.id)

    db.refresh(participant)
    logger.info(f"✅ {user.name} se unió a '{challenge.name}'")
    return participant


def leave_challenge(db: Session, challenge_id: int, user_id: int) -> bool:
    """Borra el estado de puntuación. El historial del usuario se conserva."""
    deleted = db.query(ChallengeParticipant).filter(
        ChallengeParticipant.challenge_id == challenge_id,
        ChallengeParticipant.user_id == user_id
    ).delete(synchronize_session=False)
    db.commit()
    if deleted:
        logger.info(f"👋 Usuario {user_id} salió del desafío {challenge_id}")
    return bool(deleted)

"""
=============================================================================
BACKFILL.PY — Job Nocturno de Sincronización
=============================================================================
Cada noche, para cada usuario que participa en algún desafío activo:

  1. Pide al proveedor los últimos BACKFILL_DAYS días
  2. Escribe TODOS los días en el historial, también los de 0 pasos
     (así "sin datos" sigue siendo distinto de "0 pasos confirmados")
  3. Recalcula los puntos de pasos desde el historial
  4. Recalcula los puntos de peso

Si un usuario falla (token caducado, límite de peticiones, timeout...) se
registra y se sigue con el siguiente. Al usuario que falla no se le toca
nada: ni historial ni puntos.
"""

import os
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import challenges
import daykeys
import ledger
from errors import ExternalProviderError, FitChallengeError
from models import User
from providers import TelemetryProvider, get_provider
from reconciliation import reconcile
from scoring import apply_weight_loss

logger = logging.getLogger("fitchallenge.backfill")

BACKFILL_DAYS = int(os.getenv("BACKFILL_DAYS", "30"))
# BACKFILL_DAYS → días hacia atrás que se piden al proveedor cada noche


@dataclass
class BackfillReport:
    users_synced: int = 0
    users_skipped: int = 0
    users_failed: int = 0
    days_written: int = 0
    participants_reconciled: int = 0
    failures: dict = field(default_factory=dict)
    # failures → {user_id: motivo}


def users_in_active_challenges(db: Session, today: date) -> list[User]:
    """Usuarios distintos con al menos una participación en un desafío activo"""
    users = {}
    for challenge in challenges.list_active_challenges(db, today):
        for participant in challenges.list_participants(db, challenge.id):
            users.setdefault(participant.user_id, participant.user)
    return list(users.values())


def sync_user_history(db: Session, user: User, provider: TelemetryProvider,
                      start: date, end: date, timezone: Optional[str] = None) -> int:
    """
    Trae el historial del proveedor y lo escribe día a día.
    Devuelve cuántos días se escribieron. El fetch va ANTES de cualquier
    escritura: si el proveedor falla, el historial queda como estaba.
    """
    history = provider.fetch_daily_history(start, end, timezone)

    written = 0
    for item in history:
        if item.day < start or item.day > end:
            continue
        ledger.upsert(db, user.id, item.day, steps=item.steps, weight=item.weight,
                      source=provider.source_tag)
        written += 1
    return written


def refresh_user_scores(db: Session, user: User, today: date) -> int:
    """Recalcula pasos y peso en todos los desafíos activos del usuario"""
    refreshed = 0
    for participant in challenges.list_user_participations(db, user.id):
        challenge = participant.challenge
        if not challenges.contains_day(challenge, today):
            continue

        latest_weight = ledger.most_recent_weight(db, user.id)
        if latest_weight is not None and latest_weight != participant.last_weight:
            participant.last_weight = latest_weight
            db.commit()

        reconcile(db, participant, challenge, today)
        apply_weight_loss(db, participant, today)
        refreshed += 1
    return refreshed


def run_backfill(
    db: Session,
    today: Optional[date] = None,
    days: int = BACKFILL_DAYS,
    provider_factory: Callable[[User], Optional[TelemetryProvider]] = get_provider,
    timezone: Optional[str] = None,
) -> BackfillReport:
    today = today or daykeys.today(timezone)
    start = today - timedelta(days=days - 1)
    report = BackfillReport()

    users = users_in_active_challenges(db, today)
    logger.info(f"🌙 Backfill: {len(users)} usuarios, del {start} al {today}")

    for user in users:
        provider = provider_factory(user)

        if provider is None:
            logger.info(f"⏭️ {user.name} no tiene proveedor, solo se recalcula")
            report.users_skipped += 1
        else:
            try:
                report.days_written += sync_user_history(db, user, provider, start, today, timezone)
                report.users_synced += 1
            except ExternalProviderError as e:
                db.rollback()
                reason = "token caducado" if e.auth_expired else "límite de peticiones" if e.rate_limited else e.detail
                logger.warning(f"⚠️ Backfill saltado para {user.name} (id {user.id}): {reason}")
                report.users_failed += 1
                report.failures[user.id] = reason
                continue
            except (SQLAlchemyError, FitChallengeError) as e:
                db.rollback()
                logger.error(f"❌ Error guardando historial de {user.name} (id {user.id}): {e}")
                report.users_failed += 1
                report.failures[user.id] = str(e)
                continue

        try:
            report.participants_reconciled += refresh_user_scores(db, user, today)
        except (SQLAlchemyError, FitChallengeError) as e:
            db.rollback()
            logger.error(f"❌ Error recalculando puntos de {user.name} (id {user.id}): {e}")
            report.failures[user.id] = str(e)

    logger.info(
        f"✅ Backfill terminado: {report.users_synced} sincronizados, {report.users_skipped} sin proveedor, "
        f"{report.users_failed} fallidos, {report.days_written} días escritos, "
        f"{report.participants_reconciled} participantes recalculados"
    )
    return report

"""
=============================================================================
SCHEDULER.PY — Jobs Programados del Motor de Puntuación
=============================================================================
Tareas:
  1. Cada hora (minuto 05): recalcular puntos de pasos desde el historial
  2. A las 23:55: backfill nocturno desde Fitbit / Google Fit
  3. A las 00:00: poner a 0 el progreso diario de pasos

Usa APScheduler con CronTrigger en la zona APP_TIMEZONE.

BackgroundScheduler corre los jobs en su propio hilo: un backfill lento no
bloquea las peticiones HTTP. Cada job abre su propia sesión de BD y la
cierra al terminar. Si un job se cae, no pasa nada: el recálculo es una
repetición completa y la siguiente ejecución deja todo bien.
"""

import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from database import SessionLocal
from daykeys import APP_TIMEZONE
from backfill import run_backfill
from reconciliation import reconcile_all
from scoring import reset_daily_step_counts

logger = logging.getLogger("fitchallenge.scheduler")

scheduler: BackgroundScheduler = None

JOB_OPTIONS = {"max_instances": 1, "coalesce": True, "replace_existing": True}
# max_instances=1 → un job lento no se solapa consigo mismo
# coalesce=True → si se perdieron varias ejecuciones, solo se recupera una


# =============================================================================
# ===================== JOBS ==================================================
# =============================================================================

def reconcile_step_points():
    """Cada hora. Corrige cualquier desvío entre puntos guardados e historial."""
    db = SessionLocal()
    try:
        reconcile_all(db)
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error en el recálculo horario: {e}")
    finally:
        db.close()


def nightly_backfill():
    """A las 23:55. Trae los últimos días del proveedor y recalcula."""
    db = SessionLocal()
    try:
        run_backfill(db)
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error en el backfill nocturno: {e}")
    finally:
        db.close()


def daily_reset():
    """A medianoche. Solo el progreso visible del día; los puntos no cambian."""
    db = SessionLocal()
    try:
        count = reset_daily_step_counts(db)
        logger.info(f"🌅 Nuevo día: progreso de pasos reiniciado para {count} participantes")
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error reiniciando el progreso diario: {e}")
    finally:
        db.close()


# =============================================================================
# ===================== INICIALIZAR SCHEDULER =================================
# =============================================================================

def create_scheduler(timezone: str = APP_TIMEZONE) -> BackgroundScheduler:
    global scheduler

    scheduler = BackgroundScheduler(timezone=timezone)

    scheduler.add_job(
        reconcile_step_points,
        CronTrigger(minute=5, timezone=timezone),
        id="reconcile_step_points",
        name="Recalcular puntos de pasos",
        **JOB_OPTIONS
    )

    scheduler.add_job(
        nightly_backfill,
        CronTrigger(hour=23, minute=55, timezone=timezone),
        id="nightly_backfill",
        name="Backfill nocturno",
        **JOB_OPTIONS
    )

    scheduler.add_job(
        daily_reset,
        CronTrigger(hour=0, minute=0, timezone=timezone),
        id="daily_reset",
        name="Reiniciar progreso diario",
        **JOB_OPTIONS
    )

    logger.info(f"⏰ Scheduler configurado ({timezone}): recálculo horario + backfill 23:55 + reset 00:00")
    return scheduler


def start_scheduler():
    """Arranca el scheduler"""
    global scheduler
    if scheduler and not scheduler.running:
        scheduler.start()
        logger.info("⏰ Scheduler arrancado")


def stop_scheduler():
    """Para el scheduler"""
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("⏰ Scheduler parado")

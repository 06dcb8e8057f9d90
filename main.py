"""
=============================================================================
MAIN.PY — La API del Motor de Puntuación de FitChallenge
=============================================================================
Este archivo define los endpoints de la API REST. El login, el refresco de
tokens OAuth y la gestión de desafíos viven en otros servicios: aquí solo
está la frontera del motor de puntuación.

Organización por secciones:
  1. TRACKING      → Peso manual, sincronización en vivo
  2. HISTORY       → Historial diario de pasos y peso
  3. PARTICIPANTS  → Unirse / salir de un desafío, estado de puntuación
  4. LEADERBOARD   → Clasificación y puesto de un usuario
  5. ADMIN         → Recálculo, backfill y corrección del historial
"""

import os
import logging
import traceback
from datetime import datetime, date, timedelta
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

import challenges
import daykeys
import ledger
import leaderboard
from backfill import run_backfill
from database import get_db, init_db
from errors import FitChallengeError, NotFoundError, ValidationError
from models import User
from reconciliation import reconcile_all, remove_history_entry
from schemas import (
    BackfillReportResponse, HistoryCorrectionResponse, HistoryEntryResponse,
    LeaderboardEntryResponse, ManualWeightLog, ParticipantResponse,
    ReconcileReportResponse, SyncResponse, TelemetrySync
)
from scoring import log_manual_weight, sync_daily_telemetry

# ─────────────────────────────────────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s"
)
logger = logging.getLogger("fitchallenge.api")

SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() in ("1", "true", "yes")
# SCHEDULER_ENABLED → false en tests o en procesos sueltos (sin jobs programados)

HISTORY_DEFAULT_DAYS = 30


# ─────────────────────────────────────────────────────────────────────────────
# LIFESPAN (Arranque y apagado)
# ─────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Arranque:
      1. Inicializar BD (crear tablas)
      2. Arrancar scheduler (recálculo, backfill, reset diario)

    Apagado:
      - Parar el scheduler limpiamente
    """
    logger.info("🚀 Arrancando FitChallenge...")

    init_db()
    logger.info("✅ Base de datos inicializada")

    if SCHEDULER_ENABLED:
        from scheduler import create_scheduler, start_scheduler
        create_scheduler()
        start_scheduler()
    else:
        logger.warning("⚠️ Scheduler desactivado (SCHEDULER_ENABLED=false)")

    logger.info("🎉 FitChallenge operativo")

    yield  # ← La aplicación está corriendo

    logger.info("🛑 Apagando FitChallenge...")
    if SCHEDULER_ENABLED:
        from scheduler import stop_scheduler
        stop_scheduler()
    logger.info("👋 Apagado completo")


# ─────────────────────────────────────────────────────────────────────────────
# APLICACIÓN FASTAPI
# ─────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="FitChallenge Scoring API",
    description="Puntos por objetivo de pasos y pérdida de peso en desafíos de fitness",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─────────────────────────────────────────────────────────────────────────────
# ERROR HANDLERS
# ─────────────────────────────────────────────────────────────────────────────
# Los errores del núcleo llevan su código HTTP. Cualquier otro error no
# manejado devuelve un JSON con el error real en vez de un genérico 500.

@app.exception_handler(FitChallengeError)
async def fitchallenge_exception_handler(request: Request, exc: FitChallengeError):
    logger.warning(f"⚠️ {exc.error_code} en {request.url.path}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error_code": exc.error_code}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Captura errores no manejados y devuelve detalles útiles"""
    error_msg = str(exc)
    error_trace = traceback.format_exc()
    logger.error(f"❌ Error no manejado en {request.url}: {error_msg}\n{error_trace}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": error_msg,
            "type": type(exc).__name__,
            "path": str(request.url)
        }
    )


def get_user_or_404(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("Usuario", user_id)
    return user


# =============================================================================
# ===================== HEALTH CHECK ==========================================
# =============================================================================

@app.get("/", tags=["Health"])
def health_check():
    """Verifica que la API está viva"""
    return {
        "status": "ok",
        "app": "FitChallenge Scoring",
        "version": "1.0.0",
        "timezone": daykeys.APP_TIMEZONE,
        "timestamp": datetime.utcnow().isoformat()
    }


# =============================================================================
# ===================== SECCIÓN 1: TRACKING ===================================
# =============================================================================

@app.post("/tracking/weight", response_model=ParticipantResponse, tags=["Tracking"])
def log_weight(data: ManualWeightLog, db: Session = Depends(get_db)):
    """
    Peso anotado a mano. Gana a cualquier sincronización del mismo día y
    puede confirmar el peso inicial si es día de pesaje.
    """
    get_user_or_404(db, data.user_id)
    return log_manual_weight(db, data.user_id, data.challenge_id, data.weight, data.day)


@app.post("/tracking/sync", response_model=SyncResponse, tags=["Tracking"])
def sync_telemetry(data: TelemetrySync, db: Session = Depends(get_db)):
    """Lectura en vivo del dispositivo: historial + objetivo de pasos + peso"""
    get_user_or_404(db, data.user_id)
    instant = data.recorded_at or datetime.utcnow()
    participants = sync_daily_telemetry(
        db, data.user_id, instant, data.steps,
        weight=data.weight, timezone=data.timezone, source=data.source
    )
    return {"day": daykeys.day_key(instant, data.timezone), "participants": participants}


# =============================================================================
# ===================== SECCIÓN 2: HISTORY ====================================
# =============================================================================

@app.get("/history/{user_id}", response_model=list[HistoryEntryResponse], tags=["History"])
def get_history(
    user_id: int,
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    db: Session = Depends(get_db)
):
    """Historial del usuario, de más antiguo a más reciente (por defecto, últimos 30 días)"""
    get_user_or_404(db, user_id)
    end = end or daykeys.today()
    start = start or end - timedelta(days=HISTORY_DEFAULT_DAYS - 1)
    if start > end:
        raise ValidationError(f"Rango inválido: {start} > {end}", field="start")
    return ledger.query(db, user_id, start, end)


# =============================================================================
# ===================== SECCIÓN 3: PARTICIPANTS ===============================
# =============================================================================

@app.post("/challenges/{challenge_id}/participants/{user_id}",
          response_model=ParticipantResponse, tags=["Participants"])
def join(challenge_id: int, user_id: int, db: Session = Depends(get_db)):
    challenge = challenges.get_challenge(db, challenge_id)
    if challenge is None:
        raise NotFoundError("Desafío", challenge_id)
    user = get_user_or_404(db, user_id)
    return challenges.join_challenge(db, challenge, user)


@app.get("/challenges/{challenge_id}/participants/{user_id}",
         response_model=ParticipantResponse, tags=["Participants"])
def get_participant_state(challenge_id: int, user_id: int, db: Session = Depends(get_db)):
    participant = challenges.get_participant(db, challenge_id, user_id)
    if participant is None:
        raise NotFoundError("Participante", f"{challenge_id}/{user_id}")
    return participant


@app.delete("/challenges/{challenge_id}/participants/{user_id}", tags=["Participants"])
def leave(challenge_id: int, user_id: int, db: Session = Depends(get_db)):
    if not challenges.leave_challenge(db, challenge_id, user_id):
        raise NotFoundError("Participante", f"{challenge_id}/{user_id}")
    return {"ok": True, "message": "Participante eliminado del desafío"}


# =============================================================================
# ===================== SECCIÓN 4: LEADERBOARD ================================
# =============================================================================

@app.get("/leaderboard/{challenge_id}", response_model=list[LeaderboardEntryResponse], tags=["Leaderboard"])
def get_leaderboard(challenge_id: int, db: Session = Depends(get_db)):
    return leaderboard.build_leaderboard(db, challenge_id)


@app.get("/leaderboard/{challenge_id}/users/{user_id}",
         response_model=LeaderboardEntryResponse, tags=["Leaderboard"])
def get_user_rank(challenge_id: int, user_id: int, db: Session = Depends(get_db)):
    return leaderboard.user_rank(db, challenge_id, user_id)


# =============================================================================
# ===================== SECCIÓN 5: ADMIN ======================================
# =============================================================================

@app.post("/admin/reconcile", response_model=ReconcileReportResponse, tags=["Admin"])
def trigger_reconcile(db: Session = Depends(get_db)):
    """Lanza el recálculo horario ahora mismo"""
    return reconcile_all(db)


@app.post("/admin/backfill", response_model=BackfillReportResponse, tags=["Admin"])
def trigger_backfill(days: Optional[int] = Query(None, ge=1, le=90), db: Session = Depends(get_db)):
    """Lanza el backfill nocturno ahora mismo"""
    if days is None:
        return run_backfill(db)
    return run_backfill(db, days=days)


@app.delete("/admin/history/{user_id}/{day}", response_model=HistoryCorrectionResponse, tags=["Admin"])
def delete_history_entry(user_id: int, day: date, db: Session = Depends(get_db)):
    """Borra un día del historial y recalcula los desafíos del usuario"""
    get_user_or_404(db, user_id)
    if ledger.get_entry(db, user_id, day) is None:
        raise NotFoundError("Registro de historial", f"{user_id}/{day}")
    return remove_history_entry(db, user_id, day)

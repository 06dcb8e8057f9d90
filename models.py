"""
=============================================================================
MODELS.PY — Modelos (Tablas) de la Base de Datos
=============================================================================
Cada clase = una tabla. Cada atributo = una columna.

RELACIONES:
  USER
  ├── fitness_history[]        (ledger: un registro por usuario y día)
  └── participations[] ──→ CHALLENGE
                                └── participants[]

  ChallengeParticipant es el "estado de puntuación" de un usuario dentro de
  un desafío: puntos por objetivo de pasos, puntos por pérdida de peso y total.
  FitnessHistory es la fuente de verdad: de ahí se recalculan los puntos.
"""

from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Float, Date, DateTime, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship
from database import Base
import enum


# =============================================================================
# ===================== ENUMS (Tipos predefinidos) ============================
# =============================================================================

class HistorySource(str, enum.Enum):
    """De dónde viene un registro del historial"""
    device_sync = "device-sync"          # Sincronización diaria del dispositivo (Fitbit)
    manual = "manual"                    # El usuario lo anotó a mano (gana siempre al peso)
    aggregate_sync = "aggregate-sync"    # Buckets agregados (Google Fit)


class DataSource(str, enum.Enum):
    """Proveedor de telemetría configurado para el usuario"""
    fitbit = "fitbit"
    google_fit = "google-fit"
    manual = "manual"                    # Sin proveedor: solo registros manuales


# =============================================================================
# ===================== TABLA 1: USERS ========================================
# =============================================================================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=True, index=True)

    # ── Proveedor de telemetría ──
    data_source = Column(String(20), default=DataSource.google_fit.value)
    provider_user_id = Column(String(100), nullable=True)
    # provider_user_id → id del usuario en Fitbit ("-" = el dueño del token)
    provider_access_token = Column(String(2048), nullable=True)
    # El refresco del token OAuth lo hace otro servicio; aquí solo se lee

    created_at = Column(DateTime, default=datetime.utcnow)

    history = relationship("FitnessHistory", back_populates="user", cascade="all, delete-orphan")
    participations = relationship("ChallengeParticipant", back_populates="user", cascade="all, delete-orphan")


# =============================================================================
# ===================== TABLA 2: CHALLENGES ===================================
# =============================================================================
# Ventana del desafío. Es de solo lectura para el motor de puntuación:
# la crea y la edita el servicio de gestión de desafíos.

class Challenge(Base):
    __tablename__ = "challenges"

    id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String(200), nullable=False)
    step_goal = Column(Integer, nullable=False, default=10000)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    # end_date → NULL = desafío abierto (se usa "hoy" como fin)
    weigh_in_day = Column(String(10), nullable=True)
    # weigh_in_day → "monday", "tuesday"... día de pesaje oficial

    created_at = Column(DateTime, default=datetime.utcnow)

    participants = relationship("ChallengeParticipant", back_populates="challenge", cascade="all, delete-orphan")


# =============================================================================
# ===================== TABLA 3: CHALLENGE_PARTICIPANTS =======================
# =============================================================================
# Estado de puntuación por (desafío, participante).
# Invariante: total_points == step_goal_points + weight_loss_points

class ChallengeParticipant(Base):
    __tablename__ = "challenge_participants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    challenge_id = Column(Integer, ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # ── Peso ──
    starting_weight = Column(Float, nullable=True)
    # starting_weight → se fija UNA vez, el primer día de pesaje confirmado
    last_weight = Column(Float, nullable=True)

    # ── Pasos ──
    last_step_count = Column(Integer, default=0, nullable=False)
    last_step_day = Column(Date, nullable=True)
    last_step_point_day = Column(Date, nullable=True)
    # last_step_point_day → día (calendario local) del último punto de pasos

    # ── Puntos ──
    step_goal_points = Column(Integer, default=0, nullable=False)
    weight_loss_points = Column(Integer, default=0, nullable=False)
    total_points = Column(Integer, default=0, nullable=False)

    joined_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('challenge_id', 'user_id', name='uq_challenge_participant'),
    )

    challenge = relationship("Challenge", back_populates="participants")
    user = relationship("User", back_populates="participations")

    @property
    def step_goal_days_achieved(self) -> int:
        """Días con objetivo cumplido. Siempre igual a step_goal_points."""
        return self.step_goal_points or 0


# =============================================================================
# ===================== TABLA 4: FITNESS_HISTORY ==============================
# =============================================================================
# El ledger: un registro por usuario y día (clave de día local).
# Solo se borra por corrección explícita de un administrador.

class FitnessHistory(Base):
    __tablename__ = "fitness_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    day = Column(Date, nullable=False, index=True)
    steps = Column(Integer, default=0, nullable=False)
    weight = Column(Float, nullable=True)
    # weight → en libras; NULL si ese día no hubo pesaje
    source = Column(String(20), nullable=False, default=HistorySource.device_sync.value)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'day', name='uq_history_user_day'),
    )

    user = relationship("User", back_populates="history")

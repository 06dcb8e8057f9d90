"""
=============================================================================
DATABASE.PY — Configuración de la Base de Datos
=============================================================================
Conexión al almacén durable donde viven el historial (ledger), los
participantes (estado de puntuación) y los desafíos.

En DESARROLLO: SQLite (un archivo .db)
En PRODUCCIÓN: PostgreSQL

→ Si existe la variable de entorno DATABASE_URL, se usa esa.
→ Si no existe, SQLite local.

Todas las escrituras del motor de puntuación son UPSERTs o UPDATEs
atómicos, así que el mismo esquema funciona con varios escritores a la vez
(peticiones HTTP + jobs programados).
"""

import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

# ─────────────────────────────────────────────────────────────────────────────
# CONEXIÓN
# ─────────────────────────────────────────────────────────────────────────────

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./fitchallenge.db")

# Los proveedores cloud dan la URL con "postgres://" pero SQLAlchemy necesita
# "postgresql://". Usamos psycopg (v3) como driver → "postgresql+psycopg://"
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql+psycopg://", 1)
elif DATABASE_URL.startswith("postgresql://"):
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+psycopg://", 1)

# ─────────────────────────────────────────────────────────────────────────────
# ENGINE
# ─────────────────────────────────────────────────────────────────────────────
# check_same_thread=False → SQLite no permite acceso desde varios hilos por
# defecto, y el scheduler corre en hilos distintos a los de la API.
# SQLite en memoria ("sqlite://") necesita UNA sola conexión compartida,
# si no cada conexión vería una base de datos vacía distinta.

engine_args = {}
if DATABASE_URL.startswith("sqlite"):
    engine_args["connect_args"] = {"check_same_thread": False}
    if DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
        engine_args["poolclass"] = StaticPool

engine = create_engine(DATABASE_URL, echo=False, **engine_args)

# ─────────────────────────────────────────────────────────────────────────────
# SESSION
# ─────────────────────────────────────────────────────────────────────────────

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# ─────────────────────────────────────────────────────────────────────────────
# BASE
# ─────────────────────────────────────────────────────────────────────────────

Base = declarative_base()


def get_db():
    """
    Generador que crea una sesión de BD y la cierra al terminar.

    Se usa como dependencia en FastAPI:
      @app.get("/algo")
      def mi_endpoint(db: Session = Depends(get_db)):
          ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Crea todas las tablas si no existen. Se llama una vez al arrancar."""
    # Importar los modelos registra sus tablas en Base.metadata
    import models  # noqa: F401

    Base.metadata.create_all(bind=engine)

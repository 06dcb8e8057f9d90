"""
=============================================================================
ERRORS.PY — Errores del Motor de Puntuación
=============================================================================
Taxonomía de errores del núcleo. No dependen de HTTP: main.py los traduce
a respuestas JSON con su código de estado.

  ValidationError          → datos de entrada malos (422)
  NotFoundError            → desafío / participante inexistente (404)
  ExternalProviderError    → Fitbit / Google Fit falló (502)
  PersistenceConflictError → choque de clave única que no se resolvió (409)
"""

from typing import Optional


class FitChallengeError(Exception):
    """Base de todos los errores del núcleo"""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(FitChallengeError):
    """Objetivo, peso o día inválidos. Se rechaza antes de tocar la BD."""

    status_code = 422
    error_code = "VALIDATION_ERROR"

    def __init__(self, detail: str, field: Optional[str] = None):
        super().__init__(detail)
        self.field = field
        if field:
            self.error_code = f"VALIDATION_ERROR_{field.upper()}"


class NotFoundError(FitChallengeError):
    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, resource: str, identifier):
        super().__init__(f"{resource} no encontrado: {identifier}")
        self.resource = resource
        self.identifier = identifier


class ExternalProviderError(FitChallengeError):
    """
    El proveedor de telemetría no respondió bien: timeout, token caducado,
    límite de peticiones...

    El backfill lo captura, lo registra y sigue con el siguiente usuario.
    """

    status_code = 502
    error_code = "PROVIDER_ERROR"

    def __init__(self, provider: str, detail: str, http_status: Optional[int] = None):
        super().__init__(f"[{provider}] {detail}")
        self.provider = provider
        self.http_status = http_status

    @property
    def auth_expired(self) -> bool:
        return self.http_status in (401, 403)

    @property
    def rate_limited(self) -> bool:
        return self.http_status == 429


class PersistenceConflictError(FitChallengeError):
    """Un upsert siguió chocando con la clave única tras todos los reintentos"""

    status_code = 409
    error_code = "PERSISTENCE_CONFLICT"

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url

from .config import Settings, get_settings


logger = logging.getLogger(__name__)


def get_engine(settings: Optional[Settings] = None) -> Engine:
    settings = settings or get_settings()
    url = make_url(settings.database_url)

    # Log básico de parámetros de conexión (sin contraseña)
    logger.info(
        "[DB] Crear engine backend=%s host=%s db=%s user=%s",
        url.get_backend_name(),
        url.host,
        url.database,
        url.username,
    )

    kwargs = {"pool_pre_ping": True, "echo": settings.db_echo}
    if url.get_backend_name() != "sqlite":
        kwargs.update(pool_size=settings.db_pool_size, max_overflow=10, pool_recycle=300)
    else:
        # El writer de persistencia escribe desde threads propios
        kwargs["connect_args"] = {"check_same_thread": False}

    engine = create_engine(url, **kwargs)

    # Test de conexión: ayuda a ver en logs si el gateway realmente llega a la BD
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("[DB] Test de conexión OK")
    except Exception:
        logger.exception("[DB] Test de conexión FALLÓ")

    return engine

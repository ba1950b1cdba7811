from __future__ import annotations

from collections.abc import Callable, Generator
from contextlib import AbstractContextManager, contextmanager
from uuid import UUID

from loguru import logger
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from config import get_settings
from src.db.models.base import Base

settings = get_settings()

engine = create_engine(settings.database_url, echo=settings.log_level == "DEBUG", pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)

SessionFactory = Callable[[], AbstractContextManager[Session]]

_FNV64_OFFSET = 0xCBF29CE484222325
_FNV64_PRIME = 0x100000001B3
_UNIQUE_VIOLATION = "23505"


def init_db() -> None:
    """Initialize database tables."""
    import src.db.models  # noqa: F401  (registers every table on Base.metadata)

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables initialized")


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:  # Intentionally broad - rollback on any error before re-raising
        session.rollback()
        raise
    finally:
        session.close()


# ========================================
# Advisory locks & constraint errors
# ========================================


def advisory_key64(namespace: str, id_: UUID | str) -> int:
    """
    Derive a signed 64-bit advisory lock key from a namespace and an ID.

    FNV-1a over ``"<namespace>:<id>"``, reinterpreted as int64 so it fits
    ``pg_advisory_xact_lock(bigint)``.
    """
    h = _FNV64_OFFSET
    for b in f"{namespace}:{id_}".encode("utf-8"):
        h ^= b
        h = (h * _FNV64_PRIME) & 0xFFFFFFFFFFFFFFFF
    if h >= 1 << 63:
        h -= 1 << 64
    return h


def advisory_xact_lock(session: Session, namespace: str, id_: UUID | str) -> None:
    """Take a transaction-scoped advisory lock; released on commit/rollback."""
    session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": advisory_key64(namespace, id_)})


def is_unique_violation(exc: BaseException | None, constraint: str = "") -> bool:
    """
    Detect a unique-constraint violation anywhere in the exception chain.

    Matches SQLSTATE 23505 on the DBAPI error (``pgcode``) or the text
    "sqlstate 23505" in wrapped messages. When ``constraint`` is given, the
    violated constraint name must match too (if the driver reports it).
    """
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        orig = getattr(exc, "orig", None)
        for candidate in (orig, exc):
            if candidate is None:
                continue
            code = getattr(candidate, "pgcode", None) or getattr(candidate, "sqlstate", None)
            matched = code == _UNIQUE_VIOLATION or "sqlstate 23505" in str(candidate).lower()
            if not matched:
                continue
            if not constraint:
                return True
            diag = getattr(candidate, "diag", None)
            name = getattr(diag, "constraint_name", None) if diag is not None else None
            if name is None or name == constraint or constraint in str(candidate):
                return True
        exc = exc.__cause__ or exc.__context__
    return False

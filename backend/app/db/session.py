from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from backend.app.core.config import get_settings


def make_engine(database_url: str, statement_timeout_ms: int = 0) -> Engine:
    """
    Engine avec un timeout sur chaque point bloquant côté DB.
    - Postgres : statement_timeout
    - SQLite : attente max sur le verrou fichier
    """
    connect_args: dict = {}
    if database_url.startswith("postgresql") and statement_timeout_ms:
        connect_args["options"] = f"-c statement_timeout={statement_timeout_ms}"
    elif database_url.startswith("sqlite"):
        connect_args["timeout"] = max(statement_timeout_ms / 1000, 1)
        connect_args["check_same_thread"] = False
    return create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)


def make_session_factory(bind: Engine) -> sessionmaker:
    # expire_on_commit=False : les items réclamés restent lisibles après le commit du claim
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


_settings = get_settings()
engine = make_engine(_settings.database_url, _settings.db_statement_timeout_ms)
SessionLocal = make_session_factory(engine)

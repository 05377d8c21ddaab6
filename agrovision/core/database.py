import threading
import weakref

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, Session

from agrovision.core.config import settings

_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

engine = create_engine(
    settings.database_url,
    echo=settings.debug,
    connect_args=_connect_args,
)

_schema_lock = threading.Lock()
_ready_engines: "weakref.WeakSet[Engine]" = weakref.WeakSet()


def ensure_schema(bind: Engine) -> None:
    """Create tables and indexes on first use of an engine. Safe to call repeatedly."""
    if bind in _ready_engines:
        return
    with _schema_lock:
        if bind in _ready_engines:
            return
        import agrovision.models.chat  # noqa: F401 - ensure models are registered
        SQLModel.metadata.create_all(bind)
        _ready_engines.add(bind)


def init_db() -> None:
    ensure_schema(engine)


def get_session():
    with Session(engine) as session:
        yield session

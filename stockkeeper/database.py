import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from stockkeeper.config import settings
from stockkeeper.exceptions import ContentionError

logger = logging.getLogger(__name__)

_DEPTH_KEY = "unit_of_work_depth"
# Connection execution option marking a transaction opened by unit_of_work
WRITE_TRANSACTION = "stockkeeper_write"


def create_db_engine(url: str, lock_timeout: float | None = None) -> Engine:
    """Build an engine whose write transactions take their locks up front.

    SQLite has no SELECT ... FOR UPDATE, so transactions opened by
    unit_of_work start with BEGIN IMMEDIATE and writers queue on the busy
    timeout. Everything else gets a deferred BEGIN and, with WAL, never
    blocks a writer.
    """
    timeout = settings.LOCK_TIMEOUT_SECONDS if lock_timeout is None else lock_timeout
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
    elif url.startswith("postgresql"):
        connect_args["options"] = f"-c lock_timeout={int(timeout * 1000)}"

    engine = create_engine(url, connect_args=connect_args)

    if url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin(conn):
            if conn.get_execution_options().get(WRITE_TRANSACTION):
                conn.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                conn.exec_driver_sql("BEGIN")

    return engine


engine = create_db_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_lock_timeout(exc: OperationalError) -> bool:
    orig = exc.orig
    # 55P03 = lock_not_available (Postgres lock_timeout / NOWAIT)
    if getattr(orig, "pgcode", None) == "55P03":
        return True
    # MySQL ER_LOCK_WAIT_TIMEOUT
    if getattr(orig, "args", None) and orig.args[0] == 1205:
        return True
    message = str(orig).lower()
    return "database is locked" in message or "lock timeout" in message


def begin_write(db: Session) -> None:
    """Make sure ``db`` is inside a write transaction.

    A read-only transaction left open by earlier queries is committed first
    so the write transaction starts from a fresh snapshot.
    """
    if db.in_transaction():
        if db.connection().get_execution_options().get(WRITE_TRANSACTION):
            return
        db.commit()
    db.connection(execution_options={WRITE_TRANSACTION: True})


@contextmanager
def unit_of_work(db: Session):
    """Run a block as one transaction on ``db``.

    Reentrant: a unit of work opened inside another joins the outer one and
    leaves commit / rollback to it. The outermost one opens a write
    transaction (BEGIN IMMEDIATE on SQLite). Lock wait timeouts surface as
    ContentionError after the transaction has been rolled back.
    """
    depth = db.info.get(_DEPTH_KEY, 0)
    outermost = depth == 0
    db.info[_DEPTH_KEY] = depth + 1
    try:
        if outermost:
            begin_write(db)
        yield db
        if outermost:
            db.commit()
    except OperationalError as e:
        if outermost:
            db.rollback()
        if is_lock_timeout(e):
            logger.warning("Lock wait timed out: %s", e.orig)
            raise ContentionError("Stock is being updated by another request, retry shortly") from e
        raise
    except BaseException:
        if outermost:
            db.rollback()
        raise
    finally:
        db.info[_DEPTH_KEY] = depth


def init_db(bind: Engine | None = None):
    # Import all models so Base.metadata knows about them
    import stockkeeper.models.audit_log  # noqa: F401
    import stockkeeper.models.cart  # noqa: F401
    import stockkeeper.models.inventory_log  # noqa: F401
    import stockkeeper.models.order  # noqa: F401
    import stockkeeper.models.product  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)

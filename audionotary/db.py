"""
Record store for registered works.

One engine (connection pool) per process; callers acquire a session through
``Store.session()`` which commits on success, rolls back on error and always
closes. The ``works`` table keeps its legacy physical column names
(``cid_audio``, ``sha256_audio``, ``payload_json``) so existing database files
migrate in place.
"""
import json
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import (
    Boolean,
    Column,
    Index,
    Integer,
    Text,
    create_engine,
    event,
    inspect,
    select,
    text,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .errors import PersistenceError

logger = logging.getLogger(__name__)

Base = declarative_base()


class Work(Base):
    __tablename__ = "works"

    id = Column(Integer, primary_key=True, autoincrement=True)
    address = Column(Text, nullable=False, default="", server_default="")
    title = Column(Text)
    artist = Column(Text)
    storage_id = Column("cid_audio", Text)
    content_hash = Column("sha256_audio", Text, nullable=False)
    fingerprint = Column(Text)
    notarized = Column(Boolean, nullable=False, default=False, server_default=text("0"))
    oracle_commitment = Column(Text, default="", server_default="")
    payload_json = Column(Text)
    created_at = Column(Integer, nullable=False, default=0, server_default=text("0"))

    def decoded_payload(self) -> Any:
        """Stored payload as structured data; legacy non-JSON text passes through."""
        raw = self.payload_json
        if raw is None or raw == "":
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            return raw

    def __repr__(self):
        return f"<Work(id={self.id}, content_hash={self.content_hash}, cid={self.storage_id})>"


Index("ux_works_sha256", Work.content_hash, unique=True)
Index("ix_works_cid", Work.storage_id)


# Columns added to older schemas, with defaults safe for existing rows
_COLUMN_PATCHES = [
    ("address",           "address TEXT NOT NULL DEFAULT ''"),
    ("title",             "title TEXT"),
    ("artist",            "artist TEXT"),
    ("cid_audio",         "cid_audio TEXT"),
    ("sha256_audio",      "sha256_audio TEXT"),
    ("fingerprint",       "fingerprint TEXT"),
    ("payload_json",      "payload_json TEXT"),
    ("notarized",         "notarized INTEGER NOT NULL DEFAULT 0"),
    ("oracle_commitment", "oracle_commitment TEXT DEFAULT ''"),
    ("created_at",        "created_at INTEGER NOT NULL DEFAULT 0"),
]


def make_engine(database_url: str) -> Engine:
    """Build the process-wide engine. SQLite files get WAL and a busy timeout."""
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        raise PersistenceError(f"Unsupported database backend: {url.get_backend_name()}")

    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False, "timeout": 30},  # Required for SQLite
        echo=False,
    )

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.close()

    return engine


def migrate(engine: Engine) -> None:
    """Idempotently bring the ``works`` table to the current schema.

    Creates the table when absent, adds missing columns, back-fills legacy
    NULLs and ensures both indexes. Never deletes rows: duplicate content
    hashes left by an older schema abort the migration instead.
    """
    database = engine.url.database
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)

    try:
        with engine.begin() as conn:
            if not inspect(conn).has_table("works"):
                Base.metadata.create_all(conn)
                logger.info("[MIGRATE] Created table works")
                return

            existing = {c["name"] for c in inspect(conn).get_columns("works")}
            for name, definition in _COLUMN_PATCHES:
                if name not in existing:
                    conn.execute(text(f"ALTER TABLE works ADD COLUMN {definition}"))
                    existing.add(name)
                    logger.info(f"[MIGRATE] Added column: {name}")

            conn.execute(text("UPDATE works SET address = '' WHERE address IS NULL"))
            conn.execute(text(
                "UPDATE works SET oracle_commitment = '' WHERE oracle_commitment IS NULL"
            ))
            if "artist_name" in existing:
                conn.execute(text(
                    "UPDATE works SET artist = artist_name WHERE artist IS NULL"
                ))

            indexes = inspect(conn).get_indexes("works")
            has_unique_hash = any(
                ix.get("unique") and ix.get("column_names") == ["sha256_audio"]
                for ix in indexes
            )
            if not has_unique_hash:
                duplicates = conn.execute(text(
                    "SELECT COUNT(*) FROM (SELECT sha256_audio FROM works "
                    "GROUP BY sha256_audio HAVING COUNT(*) > 1)"
                )).scalar()
                if duplicates:
                    raise PersistenceError(
                        f"Cannot enforce unique content hash: {duplicates} hash(es) "
                        "are registered more than once",
                        details={"duplicate_hashes": duplicates},
                    )
                conn.execute(text(
                    "CREATE UNIQUE INDEX IF NOT EXISTS ux_works_sha256 ON works(sha256_audio)"
                ))
            conn.execute(text("CREATE INDEX IF NOT EXISTS ix_works_cid ON works(cid_audio)"))
    except SQLAlchemyError as e:
        raise PersistenceError(f"Migration failed: {e}") from e
    logger.info("[MIGRATE] Schema up to date")


class Store:
    """Pool-owning record store with scoped session acquisition."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine = make_engine(database_url)
        self._sessions = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self._sessions()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Database error: {e}") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def migrate(self) -> None:
        migrate(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    def upsert_work(
        self,
        *,
        address: str,
        storage_id: str,
        content_hash: str,
        payload: Dict[str, Any],
        notarized: bool,
        title: Optional[str] = None,
        artist: Optional[str] = None,
        fingerprint: Optional[str] = None,
        oracle_commitment: Optional[str] = None,
        created_at: Optional[int] = None,
    ) -> Work:
        """Insert a work, or overwrite the row holding the same content hash."""
        table = Work.__table__
        values = {
            "address": address,
            "title": title,
            "artist": artist,
            "cid_audio": storage_id,
            "sha256_audio": content_hash,
            "fingerprint": fingerprint,
            "notarized": notarized,
            # Older schemas declare this column NOT NULL
            "oracle_commitment": oracle_commitment or "",
            "payload_json": json.dumps(payload),
            "created_at": created_at if created_at is not None else int(time.time()),
        }
        stmt = sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.sha256_audio],
            set_={name: stmt.excluded[name] for name in values if name != "sha256_audio"},
        )
        with self.session() as db:
            db.execute(stmt)
            return db.execute(
                select(Work).where(Work.content_hash == content_hash)
            ).scalar_one()

    def get_by_content_hash(self, content_hash: str) -> Optional[Work]:
        with self.session() as db:
            return db.execute(
                select(Work).where(Work.content_hash == content_hash).limit(1)
            ).scalar_one_or_none()

    def get_by_storage_id(self, storage_id: str) -> Optional[Work]:
        with self.session() as db:
            return db.execute(
                select(Work).where(Work.storage_id == storage_id).order_by(Work.id.desc()).limit(1)
            ).scalar_one_or_none()

    def count(self) -> int:
        with self.session() as db:
            return db.execute(text("SELECT COUNT(*) FROM works")).scalar()

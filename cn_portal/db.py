# cn_portal/db.py
import os
import uuid
import datetime
from contextlib import contextmanager
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy import create_engine, func, or_
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.exc import (
    SQLAlchemyError, IntegrityError, OperationalError, InterfaceError, DisconnectionError,
)

from cn_portal import monitoring

# Default dev DB: on Vercel api/index.py sets DATABASE_URL to /tmp before import
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./cn_portal.db")

def _make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)

engine = _make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

# Columns copied between API dicts and the ORM row
RECORD_FIELDS = (
    "s_no", "module", "scenario_steps", "status", "offshore_comments", "onsite_comments",
    "date", "tester", "offshore_reviewer", "open", "addressed_by", "defect_should_be_raised",
    "drop_name", "priority", "assigned_to", "reason", "keywords", "row_hash", "scenario_hash",
)

# Columns scanned by the substring search used by the assistant endpoint
SUBSTRING_SEARCH_FIELDS = (
    "module", "scenario_steps", "status", "offshore_comments", "onsite_comments",
    "keywords", "assigned_to", "reason",
)


class StoreError(Exception):
    """Any failure of the record store."""


class DuplicateRecordError(StoreError):
    """Insert rejected by the unique constraint on row_hash."""


class StoreUnavailableError(StoreError):
    """The store could not be reached (connection refused, dropped, locked...)."""


def reconfigure(url: str):
    """Reconfigure the DB engine and session factory at runtime (for tests)."""
    global engine, SessionLocal
    engine = _make_engine(url)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    # Create tables if they don't exist
    try:
        # import models lazily
        import cn_portal.models as models  # noqa: F841
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as e:
        # surface in logs; don't crash the app at import time
        monitoring.logger.warning("DB init failed", extra={"error": str(e)})


def _classify(exc: SQLAlchemyError) -> StoreError:
    if isinstance(exc, IntegrityError):
        detail = str(getattr(exc, "orig", exc)).lower()
        if "row_hash" in detail or "unique" in detail or "duplicate key" in detail:
            return DuplicateRecordError(detail)
        return StoreError(detail)
    if isinstance(exc, (OperationalError, InterfaceError, DisconnectionError)):
        return StoreUnavailableError(str(exc))
    return StoreError(str(exc))


@contextmanager
def _session():
    """Yield a session; SQLAlchemy failures are rolled back and re-raised as StoreError subclasses."""
    db: Optional[Session] = None
    try:
        db = SessionLocal()
        yield db
    except SQLAlchemyError as e:
        if db is not None:
            try:
                db.rollback()
            except SQLAlchemyError:
                pass
        raise _classify(e) from e
    except (OverflowError, ValueError) as e:
        # driver-level bind failures (e.g. an integer sqlite cannot store)
        if db is not None:
            try:
                db.rollback()
            except SQLAlchemyError:
                pass
        raise StoreError(f"value rejected by the store: {e}") from e
    finally:
        if db is not None:
            db.close()


def _iso(ts) -> Optional[str]:
    return ts.isoformat() if hasattr(ts, "isoformat") else ts


def _clarification_to_dict(rec) -> Dict[str, Any]:
    out = {"id": rec.id}
    for f in RECORD_FIELDS:
        out[f] = getattr(rec, f)
    out["first_seen_at"] = _iso(rec.first_seen_at)
    out["updated_at"] = _iso(rec.updated_at)
    out["source_upload_id"] = rec.source_upload_id
    return out


def _upload_to_dict(up) -> Dict[str, Any]:
    return {
        "id": up.id,
        "filename": up.filename,
        "sheet_name": up.sheet_name,
        "uploaded_at": _iso(up.uploaded_at),
        "total_rows_in_file": up.total_rows_in_file,
        "added_count": up.added_count,
        "duplicates_skipped": up.duplicates_skipped,
    }


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Clarifications
# ---------------------------------------------------------------------------
def insert_clarification(fields: Dict[str, Any], source_upload_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Insert a new record with a fresh id and first_seen_at.
    fields must already carry row_hash, scenario_hash and keywords.
    Raises DuplicateRecordError when row_hash is already stored.
    """
    from cn_portal.models import Clarification
    now = _now()
    with _session() as db:
        rec = Clarification(
            id=str(uuid.uuid4()),
            first_seen_at=now,
            updated_at=now,
            source_upload_id=source_upload_id,
            **{f: fields.get(f) for f in RECORD_FIELDS},
        )
        db.add(rec)
        db.commit()
        db.refresh(rec)
        return _clarification_to_dict(rec)


def get_clarification(record_id: str) -> Optional[Dict[str, Any]]:
    from cn_portal.models import Clarification
    with _session() as db:
        rec = db.get(Clarification, record_id)
        return _clarification_to_dict(rec) if rec else None


def get_clarification_by_hash(row_hash: str) -> Optional[Dict[str, Any]]:
    from cn_portal.models import Clarification
    with _session() as db:
        rec = db.query(Clarification).filter(Clarification.row_hash == row_hash).first()
        return _clarification_to_dict(rec) if rec else None


def get_clarification_by_scenario_hash(scenario_hash: str) -> Optional[Dict[str, Any]]:
    from cn_portal.models import Clarification
    with _session() as db:
        rec = (
            db.query(Clarification)
            .filter(Clarification.scenario_hash == scenario_hash)
            .order_by(Clarification.first_seen_at.asc())
            .first()
        )
        return _clarification_to_dict(rec) if rec else None


def update_clarification(record_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Overwrite the stored fields of an existing record in place.
    id, first_seen_at and source_upload_id are never touched.
    Returns None if no record has that id.
    """
    from cn_portal.models import Clarification
    with _session() as db:
        rec = db.get(Clarification, record_id)
        if rec is None:
            return None
        for f in RECORD_FIELDS:
            if f in fields:
                setattr(rec, f, fields[f])
        rec.updated_at = _now()
        db.commit()
        db.refresh(rec)
        return _clarification_to_dict(rec)


def _apply_filters(query, filters: Optional[Dict[str, Any]]):
    from cn_portal.models import Clarification
    if not filters:
        return query
    for col in ("status", "priority", "module", "assigned_to"):
        val = filters.get(col)
        if val:
            query = query.filter(getattr(Clarification, col) == val)
    date_from = filters.get("date_from")
    if date_from:
        query = query.filter(Clarification.date >= date_from)
    date_to = filters.get("date_to")
    if date_to:
        # compare on the prefix so "2024-03-01" includes "2024-03-01T00:00:00"
        query = query.filter(func.substr(Clarification.date, 1, len(date_to)) <= date_to)
    term = filters.get("search")
    if term:
        query = query.filter(_substring_clause(term))
    return query


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _substring_clause(term: str):
    from cn_portal.models import Clarification
    pattern = f"%{_escape_like(term)}%"
    return or_(*[getattr(Clarification, c).ilike(pattern, escape="\\") for c in SUBSTRING_SEARCH_FIELDS])


def _ordered(query):
    from cn_portal.models import Clarification
    # numbered rows by s_no first, then unnumbered rows newest first
    return query.order_by(
        Clarification.s_no.is_(None),
        Clarification.s_no.asc(),
        Clarification.first_seen_at.desc(),
    )


def list_clarifications(filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    """Full scan (optionally filtered). This is what the search corpus is built from."""
    from cn_portal.models import Clarification
    with _session() as db:
        q = _ordered(_apply_filters(db.query(Clarification), filters))
        return [_clarification_to_dict(r) for r in q.all()]


def count_clarifications() -> int:
    from cn_portal.models import Clarification
    with _session() as db:
        return db.query(func.count(Clarification.id)).scalar() or 0


def substring_search(term: str, offset: int = 0, limit: int = 20) -> List[Dict[str, Any]]:
    from cn_portal.models import Clarification
    with _session() as db:
        q = (
            db.query(Clarification)
            .filter(_substring_clause(term))
            .order_by(Clarification.first_seen_at.desc())
            .offset(max(0, offset))
            .limit(max(0, limit))
        )
        return [_clarification_to_dict(r) for r in q.all()]


def count_substring_matches(term: str) -> int:
    from cn_portal.models import Clarification
    with _session() as db:
        return db.query(func.count(Clarification.id)).filter(_substring_clause(term)).scalar() or 0


def get_filter_options() -> Dict[str, List[str]]:
    from cn_portal.models import Clarification
    out: Dict[str, List[str]] = {}
    with _session() as db:
        for key, col in (("statuses", "status"), ("priorities", "priority"),
                         ("modules", "module"), ("assignees", "assigned_to")):
            column = getattr(Clarification, col)
            rows = db.query(column).filter(column != "").distinct().order_by(column).all()
            out[key] = [r[0] for r in rows]
    return out


# ---------------------------------------------------------------------------
# Uploads & audit
# ---------------------------------------------------------------------------
def save_upload(record: Dict[str, Any]) -> str:
    """
    Persist one upload audit row. record keys:
      - id (optional; generated if missing)
      - filename, sheet_name
      - total_rows_in_file, added_count, duplicates_skipped
    Returns the upload id.
    """
    from cn_portal.models import Upload
    with _session() as db:
        up = Upload(
            id=record.get("id") or str(uuid.uuid4()),
            filename=record.get("filename") or "",
            sheet_name=record.get("sheet_name") or "",
            uploaded_at=_now(),
            total_rows_in_file=int(record.get("total_rows_in_file") or 0),
            added_count=int(record.get("added_count") or 0),
            duplicates_skipped=int(record.get("duplicates_skipped") or 0),
        )
        db.add(up)
        db.commit()
        return up.id


def list_uploads(limit: Optional[int] = None) -> List[Dict[str, Any]]:
    from cn_portal.models import Upload
    with _session() as db:
        q = db.query(Upload).order_by(Upload.uploaded_at.desc())
        if limit:
            q = q.limit(limit)
        return [_upload_to_dict(u) for u in q.all()]


def save_search_log(user_id: str, search_term: str, match_count: int) -> None:
    """Best-effort audit row for the assistant's record lookups."""
    from cn_portal.models import SearchLog
    try:
        with _session() as db:
            db.add(SearchLog(user_id=user_id, search_term=search_term[:255], match_count=match_count))
            db.commit()
    except StoreError as e:
        monitoring.logger.warning("Audit log write failed", extra={"error": str(e)})


def list_search_logs() -> List[Tuple[str, str, int]]:
    from cn_portal.models import SearchLog
    with _session() as db:
        rows = db.query(SearchLog).order_by(SearchLog.id.asc()).all()
        return [(r.user_id, r.search_term, r.match_count) for r in rows]


def clear_all_data() -> None:
    """Administrative wipe (tests and local resets only)."""
    from cn_portal.models import Clarification, Upload, SearchLog
    with _session() as db:
        db.query(Clarification).delete()
        db.query(Upload).delete()
        db.query(SearchLog).delete()
        db.commit()

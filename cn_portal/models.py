# cn_portal/models.py
from sqlalchemy import Column, Integer, String, DateTime, Text
import datetime

from cn_portal.db import Base


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class Clarification(Base):
    __tablename__ = "clarifications"

    id = Column(String(36), primary_key=True)
    s_no = Column(Integer, nullable=True, index=True)
    module = Column(String(255), nullable=False, default="", index=True)
    scenario_steps = Column(Text, nullable=False, default="")
    status = Column(String(64), nullable=False, default="", index=True)
    offshore_comments = Column(Text, nullable=False, default="")
    onsite_comments = Column(Text, nullable=False, default="")
    date = Column(String(64), nullable=False, default="", index=True)
    tester = Column(String(255), nullable=False, default="")
    offshore_reviewer = Column(String(255), nullable=False, default="")
    open = Column(String(64), nullable=False, default="")
    addressed_by = Column(String(255), nullable=False, default="")
    defect_should_be_raised = Column(String(255), nullable=False, default="")
    drop_name = Column(String(255), nullable=False, default="")
    priority = Column(String(64), nullable=False, default="", index=True)
    assigned_to = Column(String(255), nullable=False, default="", index=True)
    reason = Column(Text, nullable=False, default="")
    keywords = Column(Text, nullable=False, default="")
    # dedupe key; uniqueness here is what settles concurrent ingestion races
    row_hash = Column(String(64), unique=True, index=True, nullable=False)
    scenario_hash = Column(String(64), index=True, nullable=False)
    first_seen_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)
    source_upload_id = Column(String(36), nullable=True, index=True)


class Upload(Base):
    __tablename__ = "uploads"

    id = Column(String(36), primary_key=True)
    filename = Column(String(512), nullable=False)
    sheet_name = Column(String(255), nullable=False, default="")
    uploaded_at = Column(DateTime, default=_utcnow, index=True)
    total_rows_in_file = Column(Integer, nullable=False, default=0)
    added_count = Column(Integer, nullable=False, default=0)
    duplicates_skipped = Column(Integer, nullable=False, default=0)


class SearchLog(Base):
    __tablename__ = "bot_search_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), nullable=False)
    search_term = Column(String(255), nullable=False)
    match_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=_utcnow)

# cn_portal/ingestion.py
import os
import uuid
from typing import Dict, Any, Optional, Iterable

from pydantic import ValidationError

# Import modules (not bare functions) so monkeypatching in tests works correctly
import cn_portal.processors.hashing as _hashing
import cn_portal.processors.keywords as _keywords
from cn_portal.schemas import ClarificationIn
from cn_portal import monitoring
from cn_portal import db as dbmod

# Single-record create dedupe policies
DEDUPE_ROW_HASH = "row_hash"
DEDUPE_SCENARIO = "scenario"
DEDUPE_POLICIES = (DEDUPE_ROW_HASH, DEDUPE_SCENARIO)

SINGLE_CREATE_DEDUPE = os.getenv("SINGLE_CREATE_DEDUPE", DEDUPE_ROW_HASH).strip().lower()

# Batch statuses
STATUS_OK = "success"
STATUS_PARTIAL = "partial"

DUPLICATE_MESSAGE = "A clarification with the same content already exists"


class ClarificationIngestor:
    """
    Insert/skip/update decisions for clarification records.

    Bulk ingestion is append-only: a row whose row_hash is already stored is
    skipped, never merged. Single-record edits rewrite the record in place.
    """

    def __init__(self, dedupe_policy: str = SINGLE_CREATE_DEDUPE):
        if dedupe_policy not in DEDUPE_POLICIES:
            raise ValueError(f"Unknown dedupe policy {dedupe_policy!r}; expected one of {DEDUPE_POLICIES}")
        self.dedupe_policy = dedupe_policy

    def _new_upload_id(self) -> str:
        return str(uuid.uuid4())

    def prepare(self, raw: Any) -> Dict[str, Any]:
        """Validate one incoming row and attach its derived fields."""
        if isinstance(raw, ClarificationIn):
            rec = raw
        elif isinstance(raw, dict):
            rec = ClarificationIn.model_validate(raw)
        else:
            raise TypeError(f"Expected a mapping for a clarification row, got {type(raw).__name__}")
        fields = rec.model_dump()
        fields["keywords"] = _keywords.extract_keywords_from_row(fields)
        fields["row_hash"] = _hashing.compute_row_hash(fields)
        fields["scenario_hash"] = _hashing.compute_scenario_hash(fields)
        return fields

    # ------------------------------------------------------------------
    # Bulk path
    # ------------------------------------------------------------------
    def ingest_batch(
        self,
        rows: Iterable[Any],
        filename: str,
        sheet_name: str = "",
        upload_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Append-only ingestion of a batch.

        Returns counts for every batch, empty and all-duplicate ones included:
          {status, upload_id, filename, sheet_name, added_count, duplicates_skipped,
           failed_rows, total_rows_in_batch, total_rows_now_in_store[, error]}

        A single row's store failure is counted and the batch continues; losing
        the store connection stops the batch and reports what was done so far.
        """
        rows = list(rows)
        upload_id = upload_id or self._new_upload_id()
        result: Dict[str, Any] = {
            "status": STATUS_OK,
            "upload_id": upload_id,
            "filename": filename,
            "sheet_name": sheet_name,
            "added_count": 0,
            "duplicates_skipped": 0,
            "failed_rows": 0,
            "total_rows_in_batch": len(rows),
            "total_rows_now_in_store": 0,
        }

        for n, raw in enumerate(rows, start=1):
            try:
                fields = self.prepare(raw)
            except (TypeError, ValidationError) as e:
                monitoring.logger.warning(
                    "Row rejected at validation",
                    extra={"upload_id": upload_id, "row": n, "error": str(e)},
                )
                result["failed_rows"] += 1
                continue
            try:
                if dbmod.get_clarification_by_hash(fields["row_hash"]):
                    result["duplicates_skipped"] += 1
                    continue
                dbmod.insert_clarification(fields, source_upload_id=upload_id)
                result["added_count"] += 1
            except dbmod.DuplicateRecordError:
                # lost the race to a concurrent insert of the same content
                result["duplicates_skipped"] += 1
            except dbmod.StoreUnavailableError as e:
                monitoring.logger.error(
                    "Store unavailable during ingestion; aborting batch",
                    extra={"upload_id": upload_id, "row": n, "error": str(e)},
                )
                result["status"] = STATUS_PARTIAL
                result["error"] = f"Store unavailable after {n - 1} of {len(rows)} rows: {e}"
                break
            except dbmod.StoreError as e:
                monitoring.logger.warning(
                    "Row failed during ingestion",
                    extra={"upload_id": upload_id, "row": n, "error": str(e)},
                )
                result["failed_rows"] += 1

        monitoring.inc_ingested("added", result["added_count"])
        monitoring.inc_ingested("duplicate", result["duplicates_skipped"])
        monitoring.inc_ingested("failed", result["failed_rows"])
        monitoring.inc_upload(result["status"])

        self._finish_batch(result)
        monitoring.logger.info("Ingestion batch finished", extra={
            k: result[k] for k in ("upload_id", "status", "added_count",
                                   "duplicates_skipped", "failed_rows", "total_rows_in_batch")
        })
        return result

    def _finish_batch(self, result: Dict[str, Any]) -> None:
        """Write the upload audit row and fill in the store total (best-effort when the store is down)."""
        try:
            dbmod.save_upload({
                "id": result["upload_id"],
                "filename": result["filename"],
                "sheet_name": result["sheet_name"],
                "total_rows_in_file": result["total_rows_in_batch"],
                "added_count": result["added_count"],
                "duplicates_skipped": result["duplicates_skipped"],
            })
        except dbmod.StoreError as e:
            monitoring.logger.warning("Upload audit write failed", extra={"upload_id": result["upload_id"], "error": str(e)})
        try:
            result["total_rows_now_in_store"] = dbmod.count_clarifications()
            monitoring.set_store_records(result["total_rows_now_in_store"])
        except dbmod.StoreError as e:
            monitoring.logger.warning("Store count failed", extra={"error": str(e)})

    # ------------------------------------------------------------------
    # Single-record path
    # ------------------------------------------------------------------
    def _find_duplicate(self, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if self.dedupe_policy == DEDUPE_SCENARIO:
            return dbmod.get_clarification_by_scenario_hash(fields["scenario_hash"])
        return dbmod.get_clarification_by_hash(fields["row_hash"])

    def save_record(self, data: Dict[str, Any], record_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Create (record_id is None) or edit one record.

        Returns {"success": bool, "error"?: str, "isDuplicate"?: bool, "record"?: dict}.
        Duplicates are reported in the result, never raised. StoreUnavailableError
        propagates so the caller can tell an outage from a rejected save.
        """
        if record_id:
            return self._update(record_id, data)
        return self._create(data)

    def _create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        fields = self.prepare(data)
        try:
            if self._find_duplicate(fields):
                return {"success": False, "isDuplicate": True, "error": DUPLICATE_MESSAGE}
            rec = dbmod.insert_clarification(fields)
        except dbmod.DuplicateRecordError:
            return {"success": False, "isDuplicate": True, "error": DUPLICATE_MESSAGE}
        except dbmod.StoreUnavailableError:
            raise
        except dbmod.StoreError as e:
            return {"success": False, "error": str(e)}
        monitoring.inc_ingested("added")
        return {"success": True, "record": rec}

    def _update(self, record_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            existing = dbmod.get_clarification(record_id)
            if existing is None:
                return {"success": False, "error": "Record not found"}
            # partial edits keep stored values for fields not sent
            merged = {k: existing.get(k) for k in ClarificationIn.model_fields}
            merged.update({k: v for k, v in (data or {}).items() if k in ClarificationIn.model_fields})
            fields = self.prepare(merged)
            rec = dbmod.update_clarification(record_id, fields)
        except dbmod.DuplicateRecordError:
            # the edit made this row identical to another stored row
            return {"success": False, "isDuplicate": True, "error": DUPLICATE_MESSAGE}
        except dbmod.StoreUnavailableError:
            raise
        except dbmod.StoreError as e:
            return {"success": False, "error": str(e)}
        if rec is None:
            return {"success": False, "error": "Record not found"}
        return {"success": True, "record": rec}


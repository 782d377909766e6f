# cn_portal/app.py
import json
import re
import time
from typing import Optional, Dict, Any

# Load .env BEFORE any cn_portal imports (they read env vars at import time)
from dotenv import load_dotenv
load_dotenv(override=True)

from fastapi import FastAPI, Request, File, UploadFile, Query, Body
from fastapi.responses import JSONResponse, Response, PlainTextResponse, StreamingResponse

from cn_portal.assistant import CNAssistant
from cn_portal.ingestion import ClarificationIngestor
from cn_portal.llm_wrapper import LLMError
from cn_portal.processors import spreadsheet
from cn_portal.reports import compute_stats, export_csv
from cn_portal.schemas import ClarificationBatch, SearchRequest, ChatRequest
from cn_portal.search.cache import SearchCache, cached
from cn_portal.search.engine import get_engine
from cn_portal import monitoring
from cn_portal import auth as authmod
from cn_portal import db as dbmod

app = FastAPI(title="CN Portal API")

# Initialize DB tables on startup
dbmod.init_db()

# instantiate once
ingestor = ClarificationIngestor()
assistant = CNAssistant()
search_cache = SearchCache()
count_cache = SearchCache(ttl_seconds=60)

API_KEY_HEADER = "x-api-key"

BOT_QUERY_MAX = 200
BOT_PAGE_SIZE_MAX = 100
_UNSAFE_QUERY_RE = re.compile(r"[<>'\"`;\\]")


def _error(status_code: int, error_code: str, message: str, details: Optional[Dict[str, Any]] = None,
           headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "request_id": None,
            "status": "error",
            "error_code": error_code,
            "message": message,
            "details": details or {},
        },
        headers=headers,
    )


def _internal_error(where: str, e: Exception) -> JSONResponse:
    monitoring.logger.exception(f"Unexpected error in {where} handler")
    return _error(500, "E_INTERNAL", "Internal server error", {"exception": str(e)})


def _store_unavailable(e: Exception) -> JSONResponse:
    monitoring.logger.error("Store unavailable", extra={"error": str(e)})
    return _error(503, "E_STORE_UNAVAILABLE", "Record store unavailable", {"exception": str(e)})


def _invalidate_caches():
    # any write can change search results and match counts
    search_cache.clear()
    count_cache.clear()


# ---------------------------------------------------------------------------
# Auth + rate-limit middleware (runs first on /api/* paths)
# ---------------------------------------------------------------------------
@app.middleware("http")
async def api_key_and_rate_limit_middleware(request: Request, call_next):
    path = request.url.path
    if not path.startswith("/api/"):
        return await call_next(request)

    api_key = request.headers.get(API_KEY_HEADER)
    if not authmod.is_key_allowed(api_key):
        return JSONResponse(status_code=401, content={"detail": "Missing or invalid API key"})

    allowed, _ = authmod.check_rate_limit(api_key or "")
    if not allowed:
        return _error(429, "E_RATE_LIMIT", "Rate limit exceeded",
                      headers={"Retry-After": str(authmod.RATE_LIMIT_WINDOW_SECONDS)})

    return await call_next(request)


# ---------------------------------------------------------------------------
# Metrics middleware
# ---------------------------------------------------------------------------
@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    endpoint = request.url.path
    method = request.method
    status = "500"
    try:
        response = await call_next(request)
        status = str(response.status_code)
        return response
    except Exception:
        monitoring.logger.exception("Unhandled exception in request", extra={"path": endpoint})
        raise
    finally:
        monitoring.observe_request(start, endpoint, method, status)


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------
@app.post("/api/clarifications/upload")
async def upload_clarifications(file: UploadFile = File(...)):
    """
    POST /api/clarifications/upload (multipart, field "file")
    Accepts .xlsx/.xls (sheet "clarification") or .csv. Returns ingestion counts.
    """
    filename = file.filename or "upload"
    content = await file.read()
    monitoring.logger.info("Received upload", extra={"upload_filename": filename, "bytes": len(content)})
    try:
        rows, sheet_name = spreadsheet.read_upload(content, filename)
    except spreadsheet.SpreadsheetError as e:
        monitoring.inc_upload("rejected")
        return _error(400, "E_BAD_FILE", str(e), {"reason": e.code, "available_sheets": e.available_sheets})
    try:
        result = ingestor.ingest_batch(rows, filename=filename, sheet_name=sheet_name)
    except Exception as e:
        return _internal_error("/api/clarifications/upload", e)
    _invalidate_caches()
    return JSONResponse(status_code=200, content=result)


@app.post("/api/clarifications/batch")
async def batch_clarifications(req: ClarificationBatch):
    """
    POST /api/clarifications/batch
    Body: { "rows": [ {...}, ... ], "filename": "...", "sheet_name": "..." }
    """
    try:
        result = ingestor.ingest_batch(req.rows, filename=req.filename,
                                       sheet_name=req.sheet_name, upload_id=req.upload_id)
    except Exception as e:
        return _internal_error("/api/clarifications/batch", e)
    _invalidate_caches()
    return JSONResponse(status_code=200, content=result)


@app.post("/api/clarifications")
async def create_clarification(data: Dict[str, Any] = Body(...)):
    try:
        result = ingestor.save_record(data)
    except dbmod.StoreUnavailableError as e:
        return _store_unavailable(e)
    except Exception as e:
        return _internal_error("/api/clarifications", e)
    if result.get("success"):
        _invalidate_caches()
    return JSONResponse(status_code=200, content=result)


@app.put("/api/clarifications/{record_id}")
async def edit_clarification(record_id: str, data: Dict[str, Any] = Body(...)):
    try:
        result = ingestor.save_record(data, record_id=record_id)
    except dbmod.StoreUnavailableError as e:
        return _store_unavailable(e)
    except Exception as e:
        return _internal_error("/api/clarifications/{id}", e)
    if result.get("success"):
        _invalidate_caches()
    return JSONResponse(status_code=200, content=result)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
@app.get("/api/clarifications")
def list_clarifications(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    module: Optional[str] = None,
    assigned_to: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    search: Optional[str] = None,
):
    filters = {
        "status": status, "priority": priority, "module": module, "assigned_to": assigned_to,
        "date_from": date_from, "date_to": date_to, "search": search,
    }
    try:
        items = dbmod.list_clarifications(filters)
    except dbmod.StoreUnavailableError as e:
        return _store_unavailable(e)
    return {"items": items, "total": len(items)}


@app.get("/api/clarifications/filters")
def filter_options():
    try:
        return dbmod.get_filter_options()
    except dbmod.StoreUnavailableError as e:
        return _store_unavailable(e)


@app.get("/api/clarifications/export")
def export_clarifications(status: Optional[str] = None, priority: Optional[str] = None,
                          module: Optional[str] = None, assigned_to: Optional[str] = None):
    filters = {"status": status, "priority": priority, "module": module, "assigned_to": assigned_to}
    try:
        payload = export_csv(dbmod.list_clarifications(filters))
    except dbmod.StoreUnavailableError as e:
        return _store_unavailable(e)
    return Response(
        content=payload,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="clarifications-export.csv"'},
    )


@app.get("/api/clarifications/{record_id}")
def get_clarification(record_id: str):
    try:
        rec = dbmod.get_clarification(record_id)
    except dbmod.StoreUnavailableError as e:
        return _store_unavailable(e)
    if not rec:
        return _error(404, "E_NOT_FOUND", "Clarification not found", {"id": record_id})
    return {"status": "success", "record": rec}


@app.get("/api/uploads")
def list_uploads(limit: Optional[int] = Query(default=None, ge=1)):
    try:
        return {"items": dbmod.list_uploads(limit)}
    except dbmod.StoreUnavailableError as e:
        return _store_unavailable(e)


@app.get("/api/stats")
def stats():
    try:
        return compute_stats(dbmod.list_clarifications(), dbmod.list_uploads())
    except dbmod.StoreUnavailableError as e:
        return _store_unavailable(e)


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------
def _corpus():
    # generator so a cache hit never loads the store
    yield from dbmod.list_clarifications()


@app.post("/api/search")
async def fuzzy_search(req: SearchRequest):
    """
    POST /api/search
    Body: { "query": "...", "topK": 20 }
    Returns { results, suggestions, stats }.
    """
    try:
        resp = get_engine().search(req.query, _corpus(), top_k=req.topK, cache=search_cache)
    except dbmod.StoreUnavailableError as e:
        return _store_unavailable(e)
    except Exception as e:
        return _internal_error("/api/search", e)
    st = resp["stats"]
    if req.query.strip():
        monitoring.inc_search_cache("hit" if st.get("cached") else "miss")
        monitoring.observe_search(st["matchingMs"], st["totalMs"])
    return JSONResponse(status_code=200, content=resp)


def sanitize_query(q: str) -> str:
    return _UNSAFE_QUERY_RE.sub("", q or "").strip()[:BOT_QUERY_MAX]


@app.get("/api/bot/search")
def bot_search(request: Request, q: str = "", page: int = Query(default=0, ge=0),
               size: int = Query(default=1, ge=1, le=BOT_PAGE_SIZE_MAX)):
    """
    GET /api/bot/search?q=...&page=0&size=1
    Substring lookup for the chat widget: {items, page, total_matches}.
    """
    api_key = request.headers.get(API_KEY_HEADER)
    if not authmod.check_bot_search_limit(api_key):
        return _error(429, "E_RATE_LIMIT", "Rate limit exceeded. Please wait a few seconds.",
                      headers={"Retry-After": str(authmod.BOT_SEARCH_WINDOW_SECONDS)})

    term = sanitize_query(q)
    if not term:
        return {"items": [], "page": 0, "total_matches": 0}

    user_id = authmod.caller_identity(api_key)
    try:
        total, hit = cached(count_cache, ("count", term.lower()),
                            lambda: dbmod.count_substring_matches(term))
        items = dbmod.substring_search(term, offset=page * size, limit=size)
    except dbmod.StoreUnavailableError as e:
        return _store_unavailable(e)
    monitoring.inc_search_cache("hit" if hit else "miss")
    monitoring.logger.info("Bot search", extra={"term": term, "page": page, "size": size,
                                                "total_matches": total, "user": user_id})
    if page == 0:
        dbmod.save_search_log(user_id, term, total)
    return {"items": items, "page": page, "total_matches": total}


# ---------------------------------------------------------------------------
# Assistant
# ---------------------------------------------------------------------------
def _sse(payload: Any) -> str:
    return f"data: {json.dumps(payload)}\n\n"


@app.post("/api/chat")
def chat(req: ChatRequest):
    """
    POST /api/chat
    Body: { "messages": [ {"role": "user", "content": "..."} ], "stream": true }
    Streams text/event-stream lines `data: {"delta": "..."}` ending with `data: [DONE]`.
    With "stream": false the whole reply comes back as { "reply", "model" }.
    """
    messages = [m.model_dump() for m in req.messages]
    if not req.stream:
        try:
            out = assistant.reply(messages, dbmod.list_clarifications(), dbmod.list_uploads(5))
        except dbmod.StoreUnavailableError as e:
            monitoring.inc_chat("error")
            return _store_unavailable(e)
        except LLMError as e:
            monitoring.inc_chat("error")
            monitoring.logger.error("Assistant unavailable", extra={"error": str(e)})
            return _error(502, "E_LLM", "AI service temporarily unavailable", {"exception": str(e)})
        monitoring.inc_chat("ok")
        return JSONResponse({"reply": out.get("text", ""), "model": out.get("model")})

    try:
        records = dbmod.list_clarifications()
        uploads = dbmod.list_uploads(5)
        chunks = assistant.stream_reply(messages, records, uploads)
        # pull the first chunk now so provider failures get a proper status code
        first = next(chunks, None)
    except dbmod.StoreUnavailableError as e:
        monitoring.inc_chat("error")
        return _store_unavailable(e)
    except LLMError as e:
        monitoring.inc_chat("error")
        monitoring.logger.error("Assistant unavailable", extra={"error": str(e)})
        return _error(502, "E_LLM", "AI service temporarily unavailable", {"exception": str(e)})

    def event_stream():
        try:
            if first is not None:
                yield _sse({"delta": first})
            for delta in chunks:
                yield _sse({"delta": delta})
            monitoring.inc_chat("ok")
        except LLMError as e:
            monitoring.inc_chat("error")
            monitoring.logger.error("Assistant stream broke", extra={"error": str(e)})
            yield _sse({"error": "AI service temporarily unavailable."})
        yield "data: [DONE]\n\n"

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    if not monitoring.PROMETHEUS_ENABLED:
        return PlainTextResponse("Prometheus disabled", status_code=404)
    payload, content_type = monitoring.prometheus_metrics_response()
    return Response(content=payload, media_type=content_type)

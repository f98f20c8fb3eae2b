import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse, JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from logging_utils import jlog, jerror
from config import (
    API_KEY, APP_ENV, AVAILABLE_MODELS, AVAILABLE_MODEL_IDS, CORS_ORIGINS, PORT,
    GEMINI_CLI_COMMAND, GEMINI_DEFAULT_MODEL, GEMINI_KILL_GRACE_MS,
    GEMINI_MAX_CONCURRENT_REQUESTS, GEMINI_REQUEST_TIMEOUT_MS, STREAM_KEEPALIVE_SECONDS,
)
from models import ChatRequest, ErrorKind, ModelInfo
from services import GeminiService

STARTED_AT = time.monotonic()
PUBLIC_PATHS = ("/api/health", "/api/docs", "/openapi.json", "/favicon.ico")

ERROR_STATUS = {
    ErrorKind.SPAWN_FAILURE: (500, "Failed to spawn CLI process"),
    ErrorKind.CLI_ERROR: (500, "CLI execution failed"),
    ErrorKind.TIMEOUT: (504, "Gateway Timeout: Model took too long to respond"),
}

service = GeminiService(
    GEMINI_CLI_COMMAND,
    max_concurrent=GEMINI_MAX_CONCURRENT_REQUESTS,
    timeout=GEMINI_REQUEST_TIMEOUT_MS / 1000.0,
    kill_grace=GEMINI_KILL_GRACE_MS / 1000.0,
    keepalive=STREAM_KEEPALIVE_SECONDS,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    jlog("server.start", env=APP_ENV, port=PORT, default_model=GEMINI_DEFAULT_MODEL,
         max_concurrent=GEMINI_MAX_CONCURRENT_REQUESTS, timeout_ms=GEMINI_REQUEST_TIMEOUT_MS)
    yield
    jlog("server.shutdown", live_processes=len(service.processes.live))
    await service.shutdown()


app = FastAPI(
    title="Gemini CLI Gateway",
    version="1.0",
    docs_url="/api/docs",
    lifespan=lifespan,
)

# ---- Global no-store middleware (avoid proxy/browser caching) ----
class NoStore(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        resp = await call_next(request)
        resp.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, max-age=0")
        resp.headers.setdefault("Pragma", "no-cache")
        return resp

# ---- API key check (x-api-key) for everything but public paths ----
class ApiKeyAuth(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS" or request.url.path.startswith(PUBLIC_PATHS):
            return await call_next(request)
        if not API_KEY:
            jerror("auth.misconfigured", path=request.url.path)
            return JSONResponse(
                {"status": "error", "message": "Server authentication configuration error"},
                status_code=500,
            )
        if request.headers.get("x-api-key") != API_KEY:
            jlog("auth.rejected", path=request.url.path)
            return JSONResponse(
                {"status": "error", "message": "Unauthorized: Invalid or missing API Key"},
                status_code=401,
            )
        return await call_next(request)

app.add_middleware(ApiKeyAuth)
app.add_middleware(NoStore)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,  # must be False with wildcard origins
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---- Request logging middleware ----
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.monotonic()
    jlog("http.request.start", method=request.method, path=request.url.path)
    try:
        response = await call_next(request)
        dur_ms = int((time.monotonic() - start) * 1000)
        jlog("http.request.finish", method=request.method, path=request.url.path,
             status=response.status_code, duration_ms=dur_ms)
        return response
    except Exception as e:
        dur_ms = int((time.monotonic() - start) * 1000)
        jlog("http.request.error", method=request.method, path=request.url.path,
             duration_ms=dur_ms, error=str(e))
        raise


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    message = errors[0]["msg"] if errors else "Invalid request"
    return JSONResponse({"status": "error", "message": message, "errors": errors}, status_code=400)


def _resolve_model(req: ChatRequest):
    """Return (model, None) or (None, error response)."""
    model = req.model or GEMINI_DEFAULT_MODEL
    if model not in AVAILABLE_MODEL_IDS:
        return None, JSONResponse(
            {"status": "error",
             "message": f"Invalid model ID: '{model}'. Available models: {', '.join(AVAILABLE_MODEL_IDS)}"},
            status_code=400,
        )
    return model, None

# -------- Routes --------

@app.get("/api/health")
def health():
    return {
        "status": "ok",
        "uptime": round(time.monotonic() - STARTED_AT, 3),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

@app.get("/api/health/cli")
async def health_cli():
    result = await service.check_health()
    if not result.ok:
        return JSONResponse({"status": "error", "code": result.code, "message": result.message}, status_code=503)
    return {"status": "ok", "version": result.version}

@app.get("/api/models")
def models():
    return {"default_model": GEMINI_DEFAULT_MODEL, "available_models": [ModelInfo(**m) for m in AVAILABLE_MODELS]}

@app.post("/api/chat")
async def chat(req: ChatRequest):
    model, error = _resolve_model(req)
    if error:
        return error
    conversation = req.to_conversation()
    jlog("route.chat", model=model, turns=len(conversation))
    result = await service.run_buffered(conversation, model)
    if result.ok:
        return {"status": "success", "model": model, "response": result.text}
    status, message = ERROR_STATUS[result.error_kind]
    return JSONResponse(
        {"status": "error", "code": result.error_kind.value, "message": message, "details": result.details},
        status_code=status,
    )

@app.post("/api/chat/stream")
async def chat_stream(req: ChatRequest, request: Request):
    model, error = _resolve_model(req)
    if error:
        return error
    conversation = req.to_conversation()
    jlog("route.chat_stream", model=model, turns=len(conversation))

    sse_headers = {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",  # discourage proxy buffering
    }
    frames = service.run_streaming(conversation, model, request.is_disconnected)
    return StreamingResponse(frames, media_type="text/event-stream", headers=sse_headers)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=PORT)

import time
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import config
from .api import stream_router, voice_router
from .browser import ChromeBrowserCapture
from .destinations import destination_from_env
from .encoder import FfmpegEncoderSupervisor
from .errors import StreamError
from .logging_config import log
from .orchestrator import StreamOrchestrator
from .persistence import StreamStore
from .voice import PcmVoiceBridge


REDACTED_QUERY_KEYS = ("key", "token", "remotekey", "rtmpkey")


def _sanitize_url_for_log(url: str) -> str:
    """Redact sensitive URL query values before HTTP access logging."""
    try:
        p = urlsplit(str(url or ""))
        out = []
        for k, v in parse_qsl(p.query, keep_blank_values=True):
            if str(k or "").lower() in REDACTED_QUERY_KEYS:
                out.append((k, "***"))
            else:
                sv = str(v or "")
                if len(sv) > 64:
                    sv = sv[:64] + "..."
                out.append((k, sv))
        q = urlencode(out, doseq=True)
        return p.path + (f"?{q}" if q else "")
    except ValueError:
        return str(url or "")


def _validation_message(exc: RequestValidationError) -> str:
    """Render the first validation error as `field: message`."""
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    loc = [str(x) for x in first.get("loc", ()) if x not in ("body", "query", "path")]
    field = ".".join(loc)
    msg = str(first.get("msg") or "invalid value")
    if not field:
        return f"Invalid request body: {msg}"
    return f"{field}: {msg}"


def install_error_handlers(app: FastAPI) -> None:
    """Register handlers rendering errors as `{"ok": false, "error": ...}`."""
    @app.exception_handler(StreamError)
    async def _stream_error(request: Request, exc: StreamError):
        return JSONResponse({"ok": False, "error": exc.message}, status_code=exc.status)

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError):
        return JSONResponse({"ok": False, "error": _validation_message(exc)}, status_code=400)

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        return JSONResponse({"ok": False, "error": str(exc) or exc.__class__.__name__}, status_code=500)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Tear the pipeline down when the server stops."""
    yield
    orch: Optional[StreamOrchestrator] = getattr(app.state, "orchestrator", None)
    if orch is None:
        return
    try:
        await orch.go_offline()
    except Exception:
        log.exception("[stream] Shutdown teardown failed")


def create_app(orchestrator: StreamOrchestrator) -> FastAPI:
    """Build the FastAPI app around `orchestrator`."""
    app = FastAPI(title=f"livecast {config.VERSION}", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.CORS_ORIGINS),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def http_log_middleware(request: Request, call_next):
        """Log HTTP request latency with the stream key redacted."""
        started = time.perf_counter()
        method = str(request.method or "")
        target = _sanitize_url_for_log(str(request.url or ""))
        try:
            response = await call_next(request)
        except Exception:
            if config.VERBOSE_HTTP_LOG:
                log.exception("HTTP %s %s -> 500", method, target)
            raise

        dt_ms = (time.perf_counter() - started) * 1000.0
        status = int(getattr(response, "status_code", 0) or 0)
        # Frame pushes arrive many times a second; only slow ones are worth a line.
        should_log = config.VERBOSE_HTTP_LOG and not target.endswith("/stream/frame")
        if should_log or dt_ms >= 1000.0:
            log.info("HTTP %s %s -> %s in %.1fms", method, target, status, dt_ms)
        return response

    install_error_handlers(app)
    app.include_router(stream_router, prefix=config.API_PREFIX)
    app.include_router(voice_router, prefix=config.API_PREFIX)
    return app


def build_default_orchestrator() -> StreamOrchestrator:
    """Wire the ffmpeg encoder, Chrome capture and PCM voice bridge from config."""
    return StreamOrchestrator(
        FfmpegEncoderSupervisor(),
        StreamStore(config.STREAM_DIR),
        browser=ChromeBrowserCapture(),
        destination=destination_from_env(),
        voice_bridge=PcmVoiceBridge(),
    )


def run() -> None:
    """Start the control surface with the default wiring."""
    log_level = "debug" if config.DEBUG else "info"
    access_log = config.DEBUG
    if not config.LOG_ENABLED:
        log_level = "critical"
        access_log = False

    app = create_app(build_default_orchestrator())
    log.info("livecast %s listening on %s:%s%s", config.VERSION, config.HOST, config.PORT, config.API_PREFIX)
    uvicorn.run(app, host=config.HOST, port=int(config.PORT), log_level=log_level, access_log=access_log)

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from apps.api_risk import router as risk_router
from apps.auth import token_matches
from apps.context import EngineContext, build_engine_context
from core.config import DEFAULT_CONFIG_PATH, load_config
from core.logging_utils import setup_logging
from core.worker_registry import get_workers_snapshot

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_cron_auth(request: Request, context: EngineContext) -> None:
    if not context.cron_secret:
        logger.warning("CRON_SECRET / ORDER_WORKER_SECRET not set; allowing unauthenticated order-worker trigger")
        return
    if not token_matches(request, context.cron_secret):
        raise HTTPException(status_code=401, detail="Unauthorized")


def create_app(context: EngineContext, *, start_feed: bool = True) -> FastAPI:
    app = FastAPI(title="Order Execution & Risk Engine")
    app.state.context = context
    app.include_router(risk_router, prefix="/api/risk", tags=["risk"])

    @app.on_event("startup")
    def _startup() -> None:
        if start_feed and context.config.market_data.get("enabled", True):
            context.market_data.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        context.market_data.stop()

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"status": "ok", "timestamp": _now_iso()}

    @app.api_route("/api/cron/order-worker", methods=["GET", "POST"])
    def run_order_worker(
        request: Request,
        limit: Optional[int] = Query(None),
        max_age_ms: Optional[int] = Query(None, alias="maxAgeMs"),
    ):
        _check_cron_auth(request, context)
        try:
            result = context.worker.process_pending_orders(limit=limit, max_age_ms=max_age_ms)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Order worker trigger failed")
            return JSONResponse(status_code=500, content={"success": False, "timestamp": _now_iso(), "error": str(exc)})

        if not result.success:
            return JSONResponse(
                status_code=500,
                content={"success": False, "timestamp": _now_iso(), "error": result.error, "result": result.to_dict()},
            )
        return {"success": True, "timestamp": _now_iso(), "result": result.to_dict()}

    @app.get("/api/workers")
    def workers() -> Dict[str, Any]:
        try:
            snapshot = get_workers_snapshot(context.session_factory)
        except Exception as exc:
            logger.error("Failed to build workers snapshot: %s", exc)
            raise HTTPException(status_code=500, detail=f"Failed to load workers: {exc}")
        return {"success": True, "timestamp": _now_iso(), "workers": snapshot}

    @app.get("/api/events")
    def recent_events(
        event_type: Optional[str] = Query(None, alias="type"),
        limit: int = Query(100, ge=1, le=500),
    ) -> Dict[str, Any]:
        events = context.event_bus.get_recent_events(event_type, limit=limit)
        return {"success": True, "timestamp": _now_iso(), "events": events}

    @app.get("/api/market-data/health")
    def market_data_health() -> Dict[str, Any]:
        return {"success": True, "timestamp": _now_iso(), "health": context.market_data.get_health()}

    return app


def app_factory() -> FastAPI:
    cfg = load_config(os.environ.get("ENGINE_CONFIG", str(DEFAULT_CONFIG_PATH)))
    setup_logging(cfg.logging)
    return create_app(build_engine_context(cfg))


def main() -> None:
    uvicorn.run(
        "apps.server:app_factory",
        factory=True,
        host=os.environ.get("UVICORN_HOST", "0.0.0.0"),
        port=int(os.environ.get("UVICORN_PORT", "9000")),
    )


if __name__ == "__main__":
    main()

import logging
from typing import Any, Dict

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from persona_market import app_context
from persona_market.app.routes.catalog import router as catalog_router
from persona_market.app.routes.events import router as events_router
from persona_market.app.routes.purchases import router as purchases_router
from persona_market.app.services.engine import get_engine
from persona_market.config import load_engine_config

load_dotenv()

ENGINE_CONFIG = load_engine_config()
DB_CFG = ENGINE_CONFIG.db_settings

logger = logging.getLogger("settlement")


def get_conn():
    return psycopg2.connect(**DB_CFG)


app_context.configure(get_conn=get_conn)

app = FastAPI(title="Persona Market Settlement API")

# Vite proxy origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(catalog_router)
app.include_router(purchases_router)
app.include_router(events_router)


@app.on_event("startup")
async def start_reconciliation_worker() -> None:
    engine = get_engine()
    if engine.config.reconcile_enabled:
        engine.worker.start()
    else:
        logger.info("Reconciliation worker disabled by configuration")


@app.on_event("shutdown")
async def stop_reconciliation_worker() -> None:
    engine = get_engine()
    if engine.worker.running:
        await engine.worker.stop()


@app.get("/api/metrics/reconciliation")
def read_reconciliation_metrics() -> Dict[str, Any]:
    engine = get_engine()
    metrics = engine.worker.metrics()
    metrics["degraded_mode"] = engine.degraded_mode.active
    metrics["unmerged_records"] = engine.scratch.record_count()
    metrics["in_flight_purchases"] = len(engine.orchestrator.registry)
    metrics["event_subscribers"] = engine.bus.subscriber_count
    return metrics

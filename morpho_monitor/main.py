"""Main entry point for the Morpho position monitor.

This module runs the HTTP API in front of the aggregation engine:
- GET  /positions/{address}          cached position snapshot
- POST /positions/{address}/refresh  refetch, falling back to the cached snapshot
- GET  /health-factor/{address}      aggregate health factor (optional
                                     ?warning=&danger= threshold overrides)
- GET  /diagnostics/{address}        trace of the last reconstruction
- GET  /metrics                      Prometheus metrics
- GET  /health                       liveness and position cache stats

Usage:
    python -m morpho_monitor.main
"""

import logging
import math
from dataclasses import asdict

from aiohttp import web
from pydantic import ValidationError
from web3 import AsyncWeb3

from morpho_monitor.config import HealthThresholds, get_settings
from morpho_monitor.core.engine import PositionEngine, PositionSnapshot
from morpho_monitor.core.health import HealthFactorResult
from morpho_monitor.services.metrics import get_metrics, get_content_type
from morpho_monitor.services.multicall import FatalFetchError

logger = logging.getLogger(__name__)

ENGINE_KEY = web.AppKey("engine", PositionEngine)


def _wallet_address(request: web.Request) -> str:
    address = request.match_info["address"]
    if not AsyncWeb3.is_address(address):
        raise web.HTTPBadRequest(reason="Invalid address", text=f"Invalid address: {address}")
    return address.lower()


def serialize_snapshot(snapshot: PositionSnapshot) -> dict:
    return asdict(snapshot)


def serialize_health_factor(result: HealthFactorResult) -> dict:
    infinite = math.isinf(result.value)
    return {
        # JSON has no infinity
        "value": None if infinite else result.value,
        "infinite": infinite,
        "status": result.status.value,
        "liquidation_ltv": result.liquidation_ltv,
        "collateral_usd": result.collateral_usd,
        "borrow_assets_usd": result.borrow_assets_usd,
    }


def _thresholds_from_query(request: web.Request, default: HealthThresholds) -> HealthThresholds:
    warning = request.query.get("warning")
    danger = request.query.get("danger")
    if warning is None and danger is None:
        return default

    try:
        return HealthThresholds(
            warning_threshold=float(warning) if warning is not None else default.warning_threshold,
            danger_threshold=float(danger) if danger is not None else default.danger_threshold,
        )
    except (ValueError, ValidationError) as e:
        # reason must stay on one line; pydantic errors span several
        raise web.HTTPBadRequest(reason="Invalid thresholds", text=f"Invalid thresholds: {e}")


def _unavailable(e: FatalFetchError) -> web.HTTPServiceUnavailable:
    logger.error(f"Position fetch failed with no cached fallback: {e}")
    return web.HTTPServiceUnavailable(reason="Chain data unavailable, retry later")


async def positions_handler(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    try:
        snapshot = await engine.get_positions(_wallet_address(request))
    except FatalFetchError as e:
        raise _unavailable(e)
    return web.json_response(serialize_snapshot(snapshot))


async def refresh_handler(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    try:
        snapshot = await engine.refresh(_wallet_address(request))
    except FatalFetchError as e:
        raise _unavailable(e)
    return web.json_response(serialize_snapshot(snapshot))


async def health_factor_handler(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    address = _wallet_address(request)
    thresholds = _thresholds_from_query(request, engine.thresholds)
    try:
        result = await engine.health_factor(address, thresholds)
    except FatalFetchError as e:
        raise _unavailable(e)
    return web.json_response(serialize_health_factor(result))


async def diagnostics_handler(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    trace = engine.get_trace(_wallet_address(request))
    return web.json_response({"logs": trace.lines() if trace else []})


async def metrics_handler(_request: web.Request) -> web.Response:
    """Prometheus metrics endpoint."""
    return web.Response(
        body=get_metrics(),
        headers={"Content-Type": get_content_type()},
    )


async def health_handler(request: web.Request) -> web.Response:
    """Health check endpoint."""
    engine = request.app[ENGINE_KEY]
    return web.json_response({"status": "healthy", "cache": engine.cache_stats()})


def create_app(engine: PositionEngine) -> web.Application:
    app = web.Application()
    app[ENGINE_KEY] = engine
    app.router.add_get("/positions/{address}", positions_handler)
    app.router.add_post("/positions/{address}/refresh", refresh_handler)
    app.router.add_get("/health-factor/{address}", health_factor_handler)
    app.router.add_get("/diagnostics/{address}", diagnostics_handler)
    app.router.add_get("/metrics", metrics_handler)
    app.router.add_get("/health", health_handler)
    return app


def main():
    settings = get_settings()
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=settings.log_level.upper(),
    )
    logger.info("Starting Morpho position monitor...")

    engine = PositionEngine.from_settings(settings)
    app = create_app(engine)

    logger.info(f"API running on http://{settings.api_host}:{settings.api_port}")
    web.run_app(app, host=settings.api_host, port=settings.api_port, print=None)


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Health check endpoints and system monitoring
"""
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
import psutil

from services.api.logging_config import get_logger
from services.database.kv_store import KeyValueStore

logger = get_logger("health")

# Track API startup time
API_START_TIME = time.time()

_PROBE_KEY = "__health_probe__"


async def check_store_health(store: KeyValueStore) -> Dict[str, Any]:
    """
    Round-trip a random value through the note store backend

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    try:
        start = time.time()
        probe = secrets.token_bytes(8)
        store.set(_PROBE_KEY, probe)
        ok = store.get(_PROBE_KEY) == probe
        store.delete(_PROBE_KEY)
        response_time = (time.time() - start) * 1000
        if not ok:
            return {"status": "unhealthy", "error": "read-back mismatch"}
        return {
            "status": "healthy",
            "response_time_ms": round(response_time, 2)
        }
    except Exception as e:
        logger.error(f"Store health check failed: {type(e).__name__}")
        return {
            "status": "unhealthy",
            "error": type(e).__name__
        }


async def check_rpc_health(rpc_url: str, client: Optional[httpx.AsyncClient] = None) -> Dict[str, Any]:
    """
    Check Solana RPC connectivity

    Args:
        rpc_url: Solana RPC endpoint URL
        client: optional shared client (tests pass one with a mock transport)

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    start = time.time()
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=5.0) as own:
                response = await own.post(rpc_url, json={"jsonrpc": "2.0", "id": 1, "method": "getHealth"})
        else:
            response = await client.post(rpc_url, json={"jsonrpc": "2.0", "id": 1, "method": "getHealth"})
        response.raise_for_status()
        body = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"RPC health check failed: {type(e).__name__}")
        return {
            "status": "unhealthy",
            "error": type(e).__name__,
            "rpc_url": rpc_url
        }

    if body.get("result") != "ok":
        return {"status": "unhealthy", "error": "node behind or unavailable", "rpc_url": rpc_url}
    return {
        "status": "healthy",
        "response_time_ms": round((time.time() - start) * 1000, 2),
        "rpc_url": rpc_url
    }


def get_system_metrics() -> Dict[str, Any]:
    """
    Host and process resource usage

    Returns:
        dict with host CPU/memory load and this process's footprint
    """
    try:
        proc = psutil.Process()
        with proc.oneshot():
            rss_mb = proc.memory_info().rss / 2**20
            threads = proc.num_threads()
        vm = psutil.virtual_memory()
    except (psutil.Error, OSError) as e:
        logger.error(f"Failed to read system metrics: {type(e).__name__}")
        return {"error": type(e).__name__}
    return {
        "host": {
            "cpu_percent": psutil.cpu_percent(interval=None),
            "memory_percent": vm.percent,
            "load_avg": [round(x, 2) for x in psutil.getloadavg()],
        },
        "process": {
            "rss_mb": round(rss_mb, 1),
            "threads": threads,
            "pid": proc.pid,
        },
    }


def get_uptime() -> Dict[str, Any]:
    seconds = int(time.time() - API_START_TIME)
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes = rem // 60
    return {"uptime_seconds": seconds, "uptime_formatted": f"{days}d {hours:02d}:{minutes:02d}"}


async def comprehensive_health_check(
    store: Optional[KeyValueStore] = None,
    rpc_url: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """
    Perform comprehensive health check of all services

    Returns:
        dict with overall status and component statuses
    """
    checks = {}
    checks["store"] = await check_store_health(store) if store is not None else {"status": "disabled"}
    checks["rpc"] = await check_rpc_health(rpc_url, client) if rpc_url else {"status": "not_configured"}
    checks["system"] = get_system_metrics()
    checks["uptime"] = get_uptime()

    component_statuses = [checks["store"].get("status"), checks["rpc"].get("status")]
    if all(s in ["healthy", "disabled", "not_configured"] for s in component_statuses):
        overall_status = "healthy"
    else:
        overall_status = "unhealthy"

    return {
        "status": overall_status,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "checks": checks
    }


async def readiness_check(
    store: Optional[KeyValueStore] = None,
    rpc_url: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """
    Ready when every configured dependency answers
    """
    checks = []
    if store is not None:
        checks.append((await check_store_health(store))["status"] == "healthy")
    if rpc_url:
        checks.append((await check_rpc_health(rpc_url, client))["status"] == "healthy")
    return all(checks) if checks else True


async def liveness_check() -> bool:
    return True

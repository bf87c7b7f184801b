#!/usr/bin/env python3
"""
Periodic expiry sweep: moves active incidents past expires_at to expired and
broadcasts incident_expired for each.
Usage:
  python scripts/expire_incidents.py --config configs/service.yaml --once
  python scripts/expire_incidents.py --interval 60
"""
import os, sys, asyncio, argparse

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import db
from app.fastapi_app import STATE, configure, load_cfg
from incident_core.logging_utils import setup_logger

setup_logger("incident_core", os.getenv("LOG_DIR"))
logger = setup_logger("expire_incidents", os.getenv("LOG_DIR"))

async def sweep_forever(interval: float, once: bool) -> int:
    await db.create_tables(STATE.engine)
    total = 0
    try:
        while True:
            moved = await STATE.lifecycle.expire_due()
            total += len(moved)
            logger.info("Expired %d incident(s): %s", len(moved), [i.id for i in moved])
            if once:
                break
            await asyncio.sleep(interval)
    finally:
        await STATE.engine.dispose()
    return total

def main():
    p = argparse.ArgumentParser()
    p.add_argument("--config", "-c", default=os.getenv("INCIDENT_CFG", "configs/service.yaml"))
    p.add_argument("--interval", type=float, default=None, help="seconds between sweeps")
    p.add_argument("--once", action="store_true", help="run a single sweep and exit")
    a = p.parse_args()

    cfg = load_cfg(a.config)
    url = os.getenv("DATABASE_URL") or (cfg.get("database") or {}).get("url") or db.DATABASE_URL
    configure(cfg, url)
    interval = a.interval or float((cfg.get("expiry") or {}).get("interval_sec", 60))
    total = asyncio.run(sweep_forever(interval, a.once))
    logger.info("Sweep finished, %d incident(s) expired", total)

if __name__ == "__main__":
    main()

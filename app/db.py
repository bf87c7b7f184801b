import os
from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from dotenv import load_dotenv
import yaml


# ---------- load env ----------
# Loads variables from a .env file in the project root
load_dotenv(dotenv_path=Path(".env"))


def _read_url_from_yaml() -> Optional[str]:
    """
    Fallback: read DATABASE_URL from the service config → database.url
    """
    cfg_path = Path(os.getenv("INCIDENT_CFG", str(Path("configs") / "service.yaml")))
    if not cfg_path.exists():
        return None
    with cfg_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return (data.get("database") or {}).get("url")


# ---------- resolve DATABASE_URL ----------
DATABASE_URL = os.getenv("DATABASE_URL") or _read_url_from_yaml() or "sqlite+aiosqlite:///./incidents.db"

Base = declarative_base()


# ---------- engine/session ----------
def make_engine(url: str = DATABASE_URL) -> AsyncEngine:
    connect_args = {}
    if url.startswith("sqlite"):
        # writers wait on the file lock instead of failing straight away
        connect_args = {"timeout": 30}
    return create_async_engine(
        url,
        pool_pre_ping=True,   # recycle dead connections automatically
        connect_args=connect_args,
    )


def make_sessionmaker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


async def create_tables(bind: AsyncEngine) -> None:
    # Lazy import so Base.metadata includes the models
    from app import models  # noqa: F401
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

from __future__ import annotations

from typing import Generator

from fastapi import Depends
from sqlalchemy.orm import sessionmaker

from backend.app.core.config import Settings, get_settings
from backend.app.db.session import SessionLocal
from backend.services.history_ledger import HistoryLedger
from backend.services.registry_client import RegistryClient
from backend.services.sync_queue import SyncQueue


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_app_settings() -> Settings:
    return get_settings()


def get_sync_queue(settings: Settings = Depends(get_app_settings)) -> SyncQueue:
    return SyncQueue(settings)


def get_history_ledger() -> HistoryLedger:
    return HistoryLedger()


def get_registry_client(settings: Settings = Depends(get_app_settings)) -> Generator:
    client = RegistryClient.from_settings(settings)
    try:
        yield client
    finally:
        client.close()

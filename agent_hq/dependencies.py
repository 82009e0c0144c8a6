"""FastAPI dependency providers.

Components are created once in the application lifespan and stored on
``app.state``; endpoints receive them through these providers.
"""
from __future__ import annotations

from fastapi import Request

from agent_hq.events import EventBus
from agent_hq.repositories.sessions import SessionRepository
from agent_hq.services.process_controller import ProcessController
from agent_hq.sync.tailer import SessionTailer


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.event_bus


def get_repository(request: Request) -> SessionRepository:
    return request.app.state.repository


def get_tailer(request: Request) -> SessionTailer:
    return request.app.state.tailer


def get_controller(request: Request) -> ProcessController:
    return request.app.state.controller

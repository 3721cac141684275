"""FastAPI dependency injection: repository and simulator from app state."""

from fastapi import Request

from photoflow.repository import PhotoRepository
from photoflow.simulator import ProcessingSimulator


def get_repository(request: Request) -> PhotoRepository:
    return request.app.state.repository


def get_simulator(request: Request) -> ProcessingSimulator:
    return request.app.state.simulator

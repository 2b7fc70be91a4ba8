# routes.py
from fastapi import FastAPI
from controller.claim_controller import claim_router


def register_routes(app: FastAPI) -> None:
    """Register & Access control controllers here."""
    app.include_router(claim_router)

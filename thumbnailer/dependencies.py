"""
FastAPI dependencies: per-process handles created in the app lifespan.
"""
from fastapi import Request

from thumbnailer.config import Settings
from thumbnailer.queue import QueueConnection
from thumbnailer.storage import BlobStore


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_blob_store(request: Request) -> BlobStore:
    return request.app.state.blob_store


def get_queue(request: Request) -> QueueConnection:
    return request.app.state.queue

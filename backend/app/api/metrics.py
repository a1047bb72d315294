"""Prometheus scrape endpoint for the chat relay."""

from fastapi import APIRouter, Depends, Response

from duochat.realtime.hub import ChatHub

from app.monitoring.metrics import chat_online_users
from app.monitoring.registry import registry
from app.services.chat import get_chat_hub


router = APIRouter(tags=["metrics"])

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4"


@router.get("/metrics", response_class=Response)
def export_metrics(hub: ChatHub = Depends(get_chat_hub)) -> Response:
    """Render every registered metric; the online gauge is sampled at scrape time."""

    chat_online_users.set(len(hub.online_ids()))
    return Response(content=registry.render(), media_type=PROMETHEUS_CONTENT_TYPE)

"""Abstract interfaces for DAB collaborators."""

from .human_interface import ApprovalPresenter, HumanInterface, RenderKind
from .model_client import ModelClient
from .event_transport import EventTransport, EventHandler

__all__ = [
    "ApprovalPresenter",
    "HumanInterface",
    "RenderKind",
    "ModelClient",
    "EventTransport",
    "EventHandler",
]

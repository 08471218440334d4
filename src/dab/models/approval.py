"""Approval request and decision models.

A decision is a tagged variant keyed by ``action``: ``accept`` carries the data
entered by the human, ``decline`` and ``cancel`` carry nothing. Only the
``approved`` boolean convention is assumed of the accepted data.
"""

from typing import Any, Dict, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, TypeAdapter


APPROVAL_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "approved": {
            "type": "boolean",
            "title": "Approve execution",
            "description": "Confirm to allow the command to execute",
        }
    },
    "required": ["approved"],
}


class ApprovalRequest(BaseModel):
    """A pending human decision. Lives only as long as the decision takes."""

    prompt_text: str = Field(..., description="Question shown to the human")
    parameter_schema: Dict[str, Any] = Field(default_factory=dict, description="Schema of the expected answer")
    correlation_id: str = Field(default_factory=lambda: str(uuid4()), description="Request identifier")


class Accepted(BaseModel):
    """The human accepted and supplied data shaped by the request schema."""

    action: Literal["accept"] = "accept"
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def approved(self) -> bool:
        return self.data.get("approved") is True


class Declined(BaseModel):
    """The human explicitly refused."""

    action: Literal["decline"] = "decline"

    @property
    def approved(self) -> bool:
        return False


class Cancelled(BaseModel):
    """The human dismissed the prompt without deciding."""

    action: Literal["cancel"] = "cancel"

    @property
    def approved(self) -> bool:
        return False


ApprovalDecision = Union[Accepted, Declined, Cancelled]

_decision_adapter = TypeAdapter(ApprovalDecision)


def decision_from_action(action: str, data: Optional[Dict[str, Any]] = None) -> ApprovalDecision:
    """Build a decision from an elicitation-style ``action`` string."""
    payload: Dict[str, Any] = {"action": action}
    if action == "accept":
        payload["data"] = data or {}
    return _decision_adapter.validate_python(payload)


def default_approval_payload(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Fill every schema property with a default for a plain "yes".

    Booleans become ``True``, strings ``""`` and numbers ``0``.
    """
    data: Dict[str, Any] = {}
    properties = schema.get("properties") or {}
    for key, prop in properties.items():
        prop_type = prop.get("type") if isinstance(prop, dict) else None
        if prop_type == "boolean":
            data[key] = True
        elif prop_type == "string":
            data[key] = ""
        elif prop_type in ("number", "integer"):
            data[key] = 0
    return data

"""Provider launch specs and provider-supplied catalog entries."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class ConnectionState(str, Enum):
    """Lifecycle of a tool provider handle."""

    UNINITIALIZED = "uninitialized"
    CONNECTED = "connected"
    CLOSED = "closed"


class ProviderSpec(BaseModel):
    """How to launch one tool provider process."""

    id: str = Field(..., min_length=1, description="Unique provider identifier")
    command: str = Field(..., description="Executable that starts the provider")
    args: List[str] = Field(default_factory=list, description="Command line arguments")
    env: Optional[Dict[str, str]] = Field(None, description="Environment overrides")

    @field_validator('command')
    @classmethod
    def validate_command(cls, v):
        """Command must be a non-empty string."""
        if not v or not v.strip():
            raise ValueError("Provider command cannot be empty")
        return v.strip()


class WorkflowArgument(BaseModel):
    """A typed argument of a provider-supplied workflow prompt."""

    name: str
    description: Optional[str] = None
    required: bool = False


class WorkflowDescriptor(BaseModel):
    """A named multi-step prompt offered by a provider."""

    name: str
    description: Optional[str] = None
    arguments: List[WorkflowArgument] = Field(default_factory=list)

    @classmethod
    def from_prompt(cls, prompt: Any) -> "WorkflowDescriptor":
        """Build from an MCP ``Prompt``."""
        arguments = [
            WorkflowArgument(
                name=argument.name,
                description=getattr(argument, "description", None),
                required=bool(getattr(argument, "required", False)),
            )
            for argument in (getattr(prompt, "arguments", None) or [])
        ]
        return cls(
            name=prompt.name,
            description=getattr(prompt, "description", None),
            arguments=arguments,
        )


class ResourceDescriptor(BaseModel):
    """A URI-addressed document offered by a provider."""

    name: str
    uri: str
    description: Optional[str] = None
    mime_type: Optional[str] = None

    @classmethod
    def from_resource(cls, resource: Any) -> "ResourceDescriptor":
        """Build from an MCP ``Resource``."""
        return cls(
            name=resource.name,
            uri=str(resource.uri),
            description=getattr(resource, "description", None),
            mime_type=getattr(resource, "mimeType", None),
        )

    def matches(self, identifier: str) -> bool:
        return identifier in (self.name, self.uri)

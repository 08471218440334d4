"""Tool descriptor, catalog and result models."""

import json
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ToolDescriptor(BaseModel):
    """A tool reported by a provider. Immutable once discovered."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Tool name, unique within a catalog")
    description: str = Field(default="No description", description="Human readable description")
    parameter_schema: Dict[str, Any] = Field(default_factory=dict, description="JSON schema of the arguments")
    provider_id: Optional[str] = Field(None, description="Identifier of the owning provider")
    supports_progress: bool = Field(default=False, description="Provider declares progress reporting")

    def format_for_model(self) -> str:
        """Describe the tool for the system prompt.

        Lists every argument with its description and flags the required ones.
        """
        properties = self.parameter_schema.get("properties") or {}
        required = self.parameter_schema.get("required") or []

        args_desc = []
        for param_name, param_info in properties.items():
            description = "No description"
            if isinstance(param_info, dict):
                description = param_info.get("description") or "No description"
            line = f"- {param_name}: {description}"
            if param_name in required:
                line += " (required)"
            args_desc.append(line)

        arguments = "\n".join(args_desc)
        return f"\nTool: {self.name}\nDescription: {self.description}\nArguments:\n{arguments}\n"


class ToolCatalog(BaseModel):
    """Flattened view of the tools visible across the active providers."""

    tools: List[ToolDescriptor] = Field(default_factory=list)

    @classmethod
    def from_descriptors(cls, descriptors: Iterable[ToolDescriptor]) -> "ToolCatalog":
        """Build a catalog, keeping the first descriptor seen for each name."""
        seen = set()
        tools = []
        for descriptor in descriptors:
            if descriptor.name in seen:
                continue
            seen.add(descriptor.name)
            tools.append(descriptor)
        return cls(tools=tools)

    @property
    def names(self) -> List[str]:
        return [tool.name for tool in self.tools]

    def get(self, name: str) -> Optional[ToolDescriptor]:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    def __contains__(self, name: object) -> bool:
        return any(tool.name == name for tool in self.tools)

    def __len__(self) -> int:
        return len(self.tools)

    def format_for_model(self) -> str:
        return "\n".join(tool.format_for_model() for tool in self.tools)


class ToolResult(BaseModel):
    """Normalized result of a tool execution."""

    content: List[Dict[str, Any]] = Field(default_factory=list, description="Content items reported by the tool")
    is_error: bool = Field(default=False, description="Whether the tool reported a failure")

    @classmethod
    def from_text(cls, text: str, is_error: bool = False) -> "ToolResult":
        return cls(content=[{"type": "text", "text": text}], is_error=is_error)

    @classmethod
    def from_call_result(cls, result: Any) -> "ToolResult":
        """Normalize an MCP ``CallToolResult``.

        A result without content becomes an empty, non-error result.
        """
        if result is None:
            return cls()

        content = getattr(result, "content", None)
        if not content:
            return cls()

        items = []
        for item in content:
            if hasattr(item, "model_dump"):
                items.append(item.model_dump(mode="json", exclude_none=True))
            elif isinstance(item, dict):
                items.append(item)
            else:
                items.append({"type": "text", "text": str(item)})

        return cls(content=items, is_error=bool(getattr(result, "isError", False)))

    def text(self) -> str:
        """Join the text items of the result."""
        return "\n".join(
            item.get("text", "") for item in self.content
            if item.get("type") == "text"
        )

    def to_wire(self) -> Dict[str, Any]:
        """Shape used when the result is fed back to the model."""
        return {"content": self.content, "isError": self.is_error}

    def to_json(self) -> str:
        return json.dumps(self.to_wire(), indent=2, ensure_ascii=False)

"""Tool descriptors, tool outputs and CAD import outcomes."""

from typing import Any, Literal

from pydantic import BaseModel, Field


class ToolDescriptor(BaseModel):
    """A callable tool as advertised by the tool server."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})

    class Config:
        frozen = True


class ToolOutputText(BaseModel):
    """Text item of a tool output."""

    type: Literal["text"] = "text"
    text: str


class ToolOutputImage(BaseModel):
    """Image item of a tool output."""

    type: Literal["image"] = "image"
    data: str
    mime_type: str


ToolOutputItem = ToolOutputText | ToolOutputImage


class ToolOutput(BaseModel):
    """Normalized result of invoking a tool, before it is bound to a tool-call id."""

    content: list[ToolOutputItem] = Field(default_factory=list)
    is_error: bool = False

    @classmethod
    def from_text(cls, text: str, is_error: bool = False) -> "ToolOutput":
        """Wrap a single string as a one-item output."""
        return cls(content=[ToolOutputText(text=text)], is_error=is_error)

    @property
    def text(self) -> str:
        """Concatenated text items."""
        return "\n".join(item.text for item in self.content if isinstance(item, ToolOutputText))


class ImportOutcome(BaseModel):
    """Structured status of importing a mesh into the CAD document store."""

    status: Literal["success", "failure"]
    document_name: str
    document_id: str | None = None
    url: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        """Whether the import succeeded."""
        return self.status == "success"

    def render(self) -> str:
        """Human-readable confirmation for the model and the user."""
        if self.ok:
            return (
                f"Successfully created 3D model in Onshape!\n\n"
                f"Document: {self.document_name}\n"
                f"ID: {self.document_id}\n\n"
                f"View your model: {self.url}"
            )
        return f"Failed to create 3D model '{self.document_name}' in Onshape: {self.error}"

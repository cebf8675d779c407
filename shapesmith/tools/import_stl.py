"""Import raw ASCII STL into Onshape."""

from pydantic import BaseModel, Field

from shapesmith.clients.onshape import OnshapeClient
from shapesmith.models.tools import ToolOutput
from shapesmith.tools.base import ToolDefinition
from shapesmith.tools.create_from_openscad import default_document_name


class ImportStlInput(BaseModel):
    """Input schema for the import_stl tool."""

    stl: str = Field(..., min_length=1, description="ASCII STL content to import into Onshape")
    document_name: str | None = Field(
        default=None,
        max_length=255,
        description="Name for the new Onshape document (default: 'AI Model <ISO date>')",
    )
    filename: str = Field(default="model.stl", description="Filename for the STL blob")
    create_new_part_studio: bool = Field(
        default=False, description="Create a new Part Studio for the STL import"
    )


def create_import_stl_tool(onshape: OnshapeClient) -> ToolDefinition:
    async def import_stl_handler(params: ImportStlInput) -> ToolOutput:
        outcome = await onshape.import_stl(
            params.stl,
            params.document_name or default_document_name(),
            filename=params.filename,
            create_new_part_studio=params.create_new_part_studio,
        )
        return ToolOutput.from_text(outcome.render(), is_error=not outcome.ok)

    return ToolDefinition(
        name="import_stl",
        description="Creates an Onshape document from an ASCII STL string",
        input_schema_class=ImportStlInput,
        handler=import_stl_handler,
    )

"""Create an Onshape model from OpenSCAD code."""

from datetime import UTC, datetime

from pydantic import BaseModel, Field

from shapesmith.clients.onshape import OnshapeClient
from shapesmith.errors import CompileError
from shapesmith.models.tools import ToolOutput
from shapesmith.services.geometry import OpenSCADCompiler
from shapesmith.tools.base import ToolDefinition
from shapesmith.utils.logging import get_logger

logger = get_logger(__name__)


def default_document_name() -> str:
    """Name used when the caller did not supply one."""
    return f"AI Model {datetime.now(UTC).isoformat()}"


class CreateFromOpenSCADInput(BaseModel):
    """Input schema for the create_from_openscad tool."""

    openscad_code: str = Field(
        ...,
        min_length=1,
        description="The OpenSCAD code to convert and import. Should be valid OpenSCAD syntax.",
        examples=["cube([10, 10, 10]);"],
    )
    document_name: str | None = Field(
        default=None,
        max_length=255,
        description="Name for the new Onshape document (default: 'AI Model <ISO date>')",
    )


DESCRIPTION = """Creates a 3D model in Onshape from OpenSCAD code.

This tool handles the entire workflow: converts OpenSCAD code to STL, then
imports it into a new Onshape document. Use this when you need to create 3D
CAD models.

Required Information:
- openscad_code: Raw OpenSCAD source (no markdown fences)

Optional:
- document_name: A descriptive name for the model

Success Response: Confirmation with the document name, ID and a link to view it
Failure Response: The compiler or Onshape error, so it can be explained to the user"""


def create_create_from_openscad_tool(compiler: OpenSCADCompiler, onshape: OnshapeClient) -> ToolDefinition:
    async def create_from_openscad_handler(params: CreateFromOpenSCADInput) -> ToolOutput:
        document_name = params.document_name or default_document_name()

        try:
            stl = await compiler.compile(params.openscad_code)
        except CompileError as e:
            logger.warning(f"OpenSCAD compilation failed for '{document_name}': {e}")
            return ToolOutput.from_text(f"OpenSCAD compilation failed: {e}", is_error=True)

        outcome = await onshape.import_stl(stl, document_name)
        return ToolOutput.from_text(outcome.render(), is_error=not outcome.ok)

    return ToolDefinition(
        name="create_from_openscad",
        description=DESCRIPTION,
        input_schema_class=CreateFromOpenSCADInput,
        handler=create_from_openscad_handler,
    )

"""
stackpilot/models/synthesized_stack.py

The synthesized definition handed to a stack controller: a name, the serialized
JSON document, and the directory the engine runs in.
"""

from __future__ import annotations

import os
from typing import Optional

import aiofiles
from pydantic import BaseModel, ConfigDict, ValidationError

from stackpilot.errors import StackDefinitionError
from stackpilot.models.terraform import TerraformJson

SYNTH_FILE_NAME = "cdk.tf.json"


class SynthesizedStack(BaseModel):
    """A ready-to-execute stack definition.

    Immutable: the controller references it for a whole run and never copies or
    edits it.

    Attributes:
        name: Stack name, used to tag events and log lines.
        content: The serialized JSON definition.
        working_directory: Directory holding the definition file.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    content: str
    working_directory: str = "."

    def parse(self) -> TerraformJson:
        """Parse `content`.

        Raises:
            StackDefinitionError: If the content is not a valid JSON definition.
        """
        try:
            return TerraformJson.model_validate_json(self.content)
        except ValidationError as exc:
            raise StackDefinitionError(
                f"Stack '{self.name}' has a malformed definition: {exc}"
            ) from exc


async def load_synthesized_stack(
    working_directory: str,
    name: Optional[str] = None,
    file_name: str = SYNTH_FILE_NAME,
) -> SynthesizedStack:
    """Read a synthesized stack from its output directory.

    Args:
        working_directory: The stack's synth output directory.
        name: Stack name. Defaults to the directory's base name.
        file_name: Definition file inside the directory.

    Returns:
        SynthesizedStack: The loaded stack.

    Raises:
        StackDefinitionError: If the definition file does not exist.
    """
    path = os.path.join(working_directory, file_name)
    if not os.path.isfile(path):
        raise StackDefinitionError(f"Synthesized definition not found: {path}")

    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        content = await f.read()

    stack_name = name or os.path.basename(os.path.abspath(working_directory))
    return SynthesizedStack(
        name=stack_name, content=content, working_directory=working_directory
    )

"""Code generation data models.

The generator answers with file operations plus optional shell commands.
The pipeline treats operations as opaque and hands them to the sandbox in
order; these models only guarantee each operation is well formed.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class FileAction(str, Enum):
    """What to do with a file."""

    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


class FileOperation(BaseModel):
    """One change to one file, relative to the repository root.

    Attributes:
        action: create, modify or delete.
        path: Repository-relative path.
        content: Full new file content (required for create and modify).
    """

    action: FileAction

    path: str = Field(..., min_length=1)

    content: Optional[str] = None

    @model_validator(mode="after")
    def check_content(self) -> "FileOperation":
        if self.action != FileAction.DELETE and self.content is None:
            raise ValueError(f"{self.action.value} operation on {self.path} needs content")
        return self


class CodeGeneration(BaseModel):
    """A complete change proposal for one task.

    Attributes:
        file_operations: Operations to apply, in order.
        shell_commands: Commands to run after the operations, in order.
        explanation: Prose used as the pull request body.
    """

    file_operations: List[FileOperation] = Field(default_factory=list)

    shell_commands: List[str] = Field(default_factory=list)

    explanation: str = Field(default="")

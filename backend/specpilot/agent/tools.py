import json
import logging
from typing import Any, Callable

from pydantic import BaseModel, Field, ValidationError

from specpilot.vfs import VirtualFileSystem


logger = logging.getLogger("specpilot.agent.tools")


class ReadFileArgs(BaseModel):
    path: str = Field(..., description="The file path to read")


class WriteFileArgs(BaseModel):
    path: str = Field(..., description="The file path to write")
    content: str = Field(..., description="The content to write to the file")


class ListFilesArgs(BaseModel):
    pass


class ToolSpec(BaseModel):
    name: str
    description: str
    args_model: type[BaseModel]

    def schema_for_model(self) -> dict[str, Any]:
        parameters = self.args_model.model_json_schema()
        parameters.pop("title", None)
        parameters.setdefault("properties", {})
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }


TOOL_SPECS: dict[str, ToolSpec] = {
    "readFile": ToolSpec(
        name="readFile", description="Read the contents of a file", args_model=ReadFileArgs
    ),
    "writeFile": ToolSpec(
        name="writeFile", description="Write or update a file", args_model=WriteFileArgs
    ),
    "listFiles": ToolSpec(
        name="listFiles", description="List all files in the project", args_model=ListFilesArgs
    ),
}


def filter_files_by_prefixes(files: list[str], allowed_prefixes: list[str]) -> list[str]:
    if not allowed_prefixes:
        return list(files)
    return [f for f in files if any(f.startswith(p) for p in allowed_prefixes)]


class ToolRegistry:
    """VFS operations exposed to the model as callable tools.

    Every result is a plain string that goes back to the model as tool
    output. Policy violations, missing files and malformed calls are reported
    the same way so the model can correct itself on the next step.

    Args:
        vfs: The working file system; writes mutate it in place.
        allowed_prefixes: Path prefixes the tools may touch. Empty means
            unrestricted.
    """

    def __init__(self, vfs: VirtualFileSystem, allowed_prefixes: list[str] | None = None) -> None:
        self.vfs = vfs
        self.allowed_prefixes = list(allowed_prefixes or [])
        self._handlers: dict[str, Callable[[Any], str]] = {
            "readFile": self._read_file,
            "writeFile": self._write_file,
            "listFiles": self._list_files,
        }

    def is_allowed(self, path: str) -> bool:
        if not self.allowed_prefixes:
            return True
        return any(path.startswith(prefix) for prefix in self.allowed_prefixes)

    def schemas(self) -> list[dict[str, Any]]:
        return [spec.schema_for_model() for spec in TOOL_SPECS.values()]

    def execute(self, tool_name: str, arguments: dict[str, Any] | str | None) -> str:
        """Run a tool call and return its string result."""
        spec = TOOL_SPECS.get(tool_name)
        if spec is None:
            return f"Unknown tool: {tool_name}"
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as e:
                return f"Invalid arguments for {tool_name}: {e}"
        try:
            args = spec.args_model.model_validate(arguments or {})
        except ValidationError as e:
            return f"Invalid arguments for {tool_name}: {e.errors(include_url=False)}"
        return self._handlers[tool_name](args)

    def _read_file(self, args: ReadFileArgs) -> str:
        if not self.is_allowed(args.path):
            logger.info("readFile denied path=%s", args.path)
            return f"Access denied: {args.path}"
        content = self.vfs.read_file(args.path)
        if content is None:
            return f"File not found: {args.path}"
        return content

    def _write_file(self, args: WriteFileArgs) -> str:
        if not self.is_allowed(args.path):
            logger.info("writeFile denied path=%s", args.path)
            return f"Access denied: {args.path}"
        self.vfs.write_file(args.path, args.content)
        return f"File written: {args.path}"

    def _list_files(self, args: ListFilesArgs) -> str:
        files = filter_files_by_prefixes(self.vfs.list_files(), self.allowed_prefixes)
        return "\n".join(files)

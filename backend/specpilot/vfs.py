import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError


logger = logging.getLogger("specpilot.vfs")


class VirtualFileSystem(BaseModel):
    """In-memory project file store.

    Paths are forward-slash logical paths. There are no directory entries;
    folders such as ``spec/`` and ``code/`` only exist as path prefixes.
    All mutating methods change the instance in place.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    files_contents: dict[str, str] = Field(default_factory=dict, alias="filesContents")

    @classmethod
    def empty(cls) -> "VirtualFileSystem":
        return cls()

    @classmethod
    def from_template(cls, template: dict[str, str]) -> "VirtualFileSystem":
        return cls(files_contents=dict(template))

    def read_file(self, path: str) -> str | None:
        return self.files_contents.get(path)

    def write_file(self, path: str, content: str) -> None:
        self.files_contents[path] = content

    def delete_file(self, path: str) -> None:
        self.files_contents.pop(path, None)

    def list_files(self) -> list[str]:
        return list(self.files_contents.keys())

    def list_files_under(self, dir_path: str) -> list[str]:
        normalized = dir_path if dir_path.endswith("/") else dir_path + "/"
        return [p for p in self.files_contents if p.startswith(normalized)]

    def file_exists(self, path: str) -> bool:
        return path in self.files_contents

    def rename_file(self, old_path: str, new_path: str) -> bool:
        """Move a file; returns False and changes nothing if old_path is absent."""
        if old_path not in self.files_contents:
            return False
        content = self.files_contents.pop(old_path)
        self.files_contents[new_path] = content
        return True

    def copy_file(self, source_path: str, dest_path: str) -> bool:
        content = self.files_contents.get(source_path)
        if content is None:
            return False
        self.files_contents[dest_path] = content
        return True

    def serialize(self) -> str:
        # Re-validate so a file map corrupted through direct assignment never gets persisted
        validated = VirtualFileSystem.model_validate(
            {"filesContents": self.files_contents}
        )
        return validated.model_dump_json(by_alias=True)

    @classmethod
    def deserialize(cls, data: str) -> "VirtualFileSystem | None":
        """Parse a stored blob.

        Returns None when the JSON is malformed or does not match the schema.
        Callers must treat None as fatal for the current operation.
        """
        try:
            return cls.model_validate_json(data)
        except ValidationError as e:
            logger.error("Invalid VFS data: %s", e)
            return None

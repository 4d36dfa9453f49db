import asyncio
import logging
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, Field, ValidationError, model_validator

from coding_agent.agent.registry import ToolDescriptor
from coding_agent.errors import ExternalCommandError
from coding_agent.sandbox.provisioner import SandboxSlot


logger = logging.getLogger("coding_agent.tools")

# Paths list_files refuses outright, without touching the sandbox
BLOCKED_LIST_PATHS = frozenset({".git", "node_modules"})

ArgsT = TypeVar("ArgsT", bound=BaseModel)


class WhoamiArgs(BaseModel):
    pass


class ReadFileArgs(BaseModel):
    path: str = Field(description="The relative path of a file in the working directory.")


class ListFilesArgs(BaseModel):
    path: str | None = Field(
        default=None,
        description=(
            "Optional relative path to list files from. "
            "Defaults to current directory if not provided."
        ),
    )


class EditFileArgs(BaseModel):
    path: str = Field(description="The path to the file")
    old_str: str = Field(
        description="Text to search for - must match exactly and must only have one match exactly"
    )
    new_str: str = Field(description="Text to replace old_str with")

    @model_validator(mode="after")
    def _strings_differ(self) -> "EditFileArgs":
        if self.old_str == self.new_str:
            raise ValueError("old_str and new_str must be different")
        return self


class CreateFileArgs(BaseModel):
    path: str = Field(description="The path to the file to create")
    content: str = Field(description="The content to write to the file")


def tool_schema(model: type[BaseModel]) -> dict[str, Any]:
    schema = model.model_json_schema()
    schema.pop("title", None)
    schema.setdefault("properties", {})
    return schema


def parse_args(model: type[ArgsT], args: dict[str, Any]) -> ArgsT | dict[str, Any]:
    """Validate raw tool arguments; on failure return an error payload instead."""
    try:
        return model.model_validate(args or {})
    except ValidationError as e:
        messages = "; ".join(err["msg"] for err in e.errors())
        payload: dict[str, Any] = {"error": f"Invalid arguments: {messages}"}
        if isinstance(args, dict) and "path" in args:
            payload["path"] = args["path"]
        return payload


def is_blocked_list_path(path: str | None) -> bool:
    if path is None:
        return False
    p = path.strip()
    while p.startswith("./"):
        p = p[2:]
    return p.rstrip("/") in BLOCKED_LIST_PATHS


async def run_identity_command(command: str) -> str:
    """Run the account CLI and return its stdout verbatim."""
    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ExternalCommandError(command, None, str(e)) from e
    stdout, stderr = await proc.communicate()
    out = stdout.decode("utf-8", errors="replace")
    if proc.returncode != 0:
        err = stderr.decode("utf-8", errors="replace")
        raise ExternalCommandError(command, proc.returncode, err or out)
    return out


def _write_local_file(path: str, content: str) -> None:
    target = Path(path)
    if target.parent != Path("."):
        target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")


def create_coding_tools(
    slot: SandboxSlot,
    *,
    identity_command: str = "npx checkly whoami",
) -> list[ToolDescriptor]:
    """Build the local tool set for one session.

    Every sandbox-backed executor reads the sandbox through the shared slot, so
    whichever call provisions it first makes it visible to the rest.
    """

    async def checkly_whoami(args: dict[str, Any]) -> str:
        return await run_identity_command(identity_command)

    async def read_file(args: dict[str, Any]) -> dict[str, Any]:
        parsed = parse_args(ReadFileArgs, args)
        if isinstance(parsed, dict):
            return parsed
        try:
            sandbox = await slot.ensure()
            output = await sandbox.read_file(parsed.path)
            return {"path": parsed.path, "output": output}
        except Exception as e:
            logger.error("Error reading file at %s: %s", parsed.path, e)
            return {"path": parsed.path, "error": str(e)}

    async def list_files(args: dict[str, Any]) -> dict[str, Any]:
        parsed = parse_args(ListFilesArgs, args)
        if isinstance(parsed, dict):
            return parsed
        if is_blocked_list_path(parsed.path):
            return {"error": "You cannot read the path: ", "path": parsed.path}
        try:
            sandbox = await slot.ensure()
            output = await sandbox.list_files(parsed.path)
            return {"path": parsed.path, "output": output}
        except Exception as e:
            logger.error("Error listing files at %s: %s", parsed.path, e)
            return {"path": parsed.path, "error": str(e)}

    async def edit_file(args: dict[str, Any]) -> dict[str, Any]:
        parsed = parse_args(EditFileArgs, args)
        if isinstance(parsed, dict):
            return parsed
        try:
            sandbox = await slot.ensure()
            await sandbox.edit_file(parsed.path, parsed.old_str, parsed.new_str)
            return {"success": True}
        except Exception as e:
            logger.error("Error editing file %s: %s", parsed.path, e)
            return {"path": parsed.path, "error": str(e)}

    async def create_file(args: dict[str, Any]) -> dict[str, Any]:
        parsed = parse_args(CreateFileArgs, args)
        if isinstance(parsed, dict):
            return parsed
        try:
            await asyncio.to_thread(_write_local_file, parsed.path, parsed.content)
            return {"success": True, "path": parsed.path}
        except Exception as e:
            logger.error("Error creating file %s: %s", parsed.path, e)
            return {"path": parsed.path, "error": str(e)}

    return [
        ToolDescriptor(
            name="checkly_whoami",
            description=(
                "Figure out which accountid and accountname you are logged in with in Checkly. "
                "The response might contain unneeded details, be sure to extract only accountid and name."
            ),
            input_schema=tool_schema(WhoamiArgs),
            executor=checkly_whoami,
        ),
        ToolDescriptor(
            name="read_file",
            description=(
                "Read the contents of a given relative file path. Use this when you want to see "
                "what's inside a file. Do not use this with directory names."
            ),
            input_schema=tool_schema(ReadFileArgs),
            executor=read_file,
            needs_sandbox=True,
        ),
        ToolDescriptor(
            name="list_files",
            description=(
                "List files and directories at a given path. If no path is provided, "
                "lists files in the current directory."
            ),
            input_schema=tool_schema(ListFilesArgs),
            executor=list_files,
            needs_sandbox=True,
        ),
        ToolDescriptor(
            name="edit_file",
            description=(
                "Make edits to a text file. Replaces 'old_str' with 'new_str' in the given file. "
                "'old_str' and 'new_str' MUST be different from each other. If the file specified "
                "with path doesn't exist, it will be created."
            ),
            input_schema=tool_schema(EditFileArgs),
            executor=edit_file,
            needs_sandbox=True,
        ),
        ToolDescriptor(
            name="create_file",
            description=(
                "Create a new file with the specified content. "
                "If the file already exists, it will be overwritten."
            ),
            input_schema=tool_schema(CreateFileArgs),
            executor=create_file,
        ),
    ]

import logging
from typing import Any

from vercel.sandbox import AsyncSandbox as Sandbox

from coding_agent.errors import (
    EditConflictError,
    SandboxCommandError,
    SandboxProvisionError,
)


logger = logging.getLogger("coding_agent.sandbox")


def normalize_sandbox_path(path: str | None) -> str:
    """Resolve a tool-supplied path to one relative to the sandbox cwd.

    None and blank paths mean the working directory itself.
    """
    p = (path or "").strip()
    if not p:
        return "."
    while p.startswith("./"):
        p = p[2:]
    return p or "."


class SandboxHandle:
    """One provisioned Vercel sandbox, exposing the file operations tools need.

    Every operation shells out with an argument vector (never a shell string),
    so paths are passed through untouched.
    """

    def __init__(self, sandbox: Any, repo_url: str | None = None) -> None:
        self.sandbox = sandbox
        self.repo_url = repo_url

    @property
    def sandbox_id(self) -> str | None:
        return getattr(self.sandbox, "sandbox_id", None)

    async def _run(self, cmd: str, args: list[str]) -> str:
        finished = await self.sandbox.run_command(cmd, args)
        if finished.exit_code != 0:
            stderr = await finished.stderr()
            raise SandboxCommandError(" ".join([cmd, *args]), finished.exit_code, stderr or "")
        return await finished.stdout() or ""

    async def exists(self, path: str) -> bool:
        finished = await self.sandbox.run_command("test", ["-e", normalize_sandbox_path(path)])
        return finished.exit_code == 0

    async def read_file(self, path: str) -> str:
        return await self._run("cat", ["--", normalize_sandbox_path(path)])

    async def list_files(self, path: str | None = None) -> str:
        """List entries one per line; directories carry a trailing slash."""
        return await self._run("ls", ["-1Ap", "--", normalize_sandbox_path(path)])

    async def write_file(self, path: str, content: str) -> None:
        await self.sandbox.write_files(
            [{"path": normalize_sandbox_path(path), "content": content.encode("utf-8")}]
        )

    async def edit_file(self, path: str, old_str: str, new_str: str) -> None:
        """Replace the single occurrence of old_str with new_str.

        A missing file is created with new_str as its content, whatever
        old_str is. Zero or several matches raise EditConflictError.
        """
        if not await self.exists(path):
            await self.write_file(path, new_str)
            return

        content = await self.read_file(path)
        matches = content.count(old_str) if old_str else 0
        if matches != 1:
            raise EditConflictError(path, matches)
        await self.write_file(path, content.replace(old_str, new_str, 1))

    async def stop(self) -> None:
        try:
            await self.sandbox.stop()
        finally:
            try:
                await self.sandbox.client.aclose()
            except Exception:
                logger.debug("sandbox client close failed", exc_info=True)


async def create_sandbox(
    repo_url: str | None,
    *,
    timeout_ms: int = 600_000,
    runtime: str | None = None,
) -> SandboxHandle:
    """Provision a sandbox, cloning repo_url into its working directory when given."""
    kwargs: dict[str, Any] = {"timeout": timeout_ms, "runtime": runtime}
    if repo_url:
        kwargs["source"] = {"type": "git", "url": repo_url}
    try:
        sandbox = await Sandbox.create(**kwargs)
    except Exception as e:
        raise SandboxProvisionError(f"Could not create sandbox: {e}") from e
    logger.info("sandbox %s created repo=%s", getattr(sandbox, "sandbox_id", None), repo_url)
    return SandboxHandle(sandbox, repo_url)

"""Editor remote control over command URIs.

The editor extension listens for URIs of the form

    vscode://<publisher>.<extension>?cmd=<command>&args=<json>&request_id=<id>&nonce=<nonce>

and, when a request id is present, posts the command's outcome back to the
relay endpoint authenticated with the nonce.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote, urlencode

from shared.config import EditorSettings
from shared.errors import EditorError
from shared.logging import get_logger

logger = get_logger(__name__)

# The extension assumes this port when the URI carries none
DEFAULT_RELAY_PORT = 3000


def default_opener() -> list[str]:
    """Platform command that hands a URI to its registered handler."""
    if sys.platform == "darwin":
        return ["open"]
    if sys.platform.startswith("linux"):
        return ["xdg-open"]
    if sys.platform == "win32":
        return ["cmd", "/c", "start", ""]
    raise EditorError(f"Unsupported platform for editor control: {sys.platform}")


class EditorBridge:
    """
    Launches editor commands and reads the editor's allow-list.

    The bridge never waits for the command's outcome; correlating the reply
    is the caller's job.
    """

    def __init__(self, settings: EditorSettings, workspace_dir: str | Path = ".") -> None:
        self.settings = settings
        self.workspace_dir = Path(workspace_dir)

    @property
    def authority(self) -> str:
        return f"{self.settings.publisher}.{self.settings.extension}"

    def build_uri(
        self,
        command: str,
        args: Optional[list[Any]] = None,
        request_id: Optional[str] = None,
        nonce: Optional[str] = None,
        port: int = DEFAULT_RELAY_PORT
    ) -> str:
        """
        Build the command URI for the editor extension.

        Args:
            command: Editor command id
            args: Command arguments, sent JSON-encoded
            request_id: Correlation id the extension echoes back
            nonce: Single-use credential for the relay reply
            port: Port of the relay endpoint

        Returns:
            The URL-encoded command URI
        """
        query: list[tuple[str, str]] = [("cmd", command)]
        if args:
            query.append(("args", json.dumps(args)))
        if request_id is not None:
            query.append(("request_id", request_id))
        if port and port != DEFAULT_RELAY_PORT:
            query.append(("mcp_port", str(port)))
        if nonce is not None:
            query.append(("nonce", nonce))

        return f"{self.settings.uri_scheme}://{self.authority}?{urlencode(query, quote_via=quote)}"

    def opener_command(self) -> list[str]:
        if self.settings.opener:
            return self.settings.opener.split()
        return default_opener()

    async def trigger(self, uri: str) -> None:
        """
        Hand a URI to the platform opener.

        Raises:
            EditorError: If the opener is missing or exits with an error
        """
        argv = [*self.opener_command(), uri]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EditorError(f"Could not launch {argv[0]}: {e}") from e

        _, stderr = await process.communicate()
        if process.returncode != 0:
            detail = stderr.decode(errors="replace").strip() if stderr else ""
            raise EditorError(
                f"{argv[0]} exited with status {process.returncode}"
                + (f": {detail}" if detail else "")
            )

        logger.debug("Editor URI triggered", opener=argv[0])

    def read_settings(self) -> dict[str, Any]:
        """Read the editor's workspace settings file. Missing file means no settings."""
        path = self.workspace_dir / self.settings.settings_file
        if not path.is_file():
            return {}
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise EditorError(f"Failed to read editor settings from {path}: {e}") from e
        return data if isinstance(data, dict) else {}

    def allowed_commands(self) -> list[str]:
        """Commands the extension is configured to execute, sorted."""
        commands = self.read_settings().get(self.settings.allowed_commands_key) or []
        return sorted(str(c) for c in commands)

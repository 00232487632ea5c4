"""Workspace security configuration.

The policy lives in `.replbridge/security.json` inside the workspace. When
the server runs as a named agent or as the supervisor of several agents,
the policy comes from the matching entry in `.replbridge/agents.json`
instead. No file means no policy, i.e. the server is open.
"""

import json
import os
import secrets
import sys
import time
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from shared.errors import SecurityConfigError
from shared.logging import get_logger
from shared.models import SecurityMode, SecurityPolicy

logger = get_logger(__name__)

CONFIG_DIR = ".replbridge"
SECURITY_FILE = "security.json"
AGENTS_FILE = "agents.json"
API_KEY_PREFIX = "replbridge_"
LOOPBACK = ("127.0.0.1", "::1", "localhost")


def generate_api_key() -> str:
    """Generate an API key: `replbridge_` followed by 40 hex characters."""
    return API_KEY_PREFIX + secrets.token_hex(20)


def mask_key(key: str) -> str:
    """Shorten a key for display."""
    if len(key) <= 19:
        return key[:4] + "..."
    return f"{key[:15]}...{key[-4:]}"


def get_security_config_path(workspace_dir: str | Path = ".") -> Path:
    return Path(workspace_dir) / CONFIG_DIR / SECURITY_FILE


def get_agents_config_path(workspace_dir: str | Path = ".") -> Path:
    return Path(workspace_dir) / CONFIG_DIR / AGENTS_FILE


def _policy_from_entry(entry: dict[str, Any], default_mode: SecurityMode) -> SecurityPolicy:
    return SecurityPolicy(
        mode=entry.get("mode", default_mode),
        api_keys=entry.get("api_keys", []),
        allowed_ips=entry.get("allowed_ips", list(LOOPBACK)),
        port=entry.get("port", 0),
    )


def _load_agents_config(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise SecurityConfigError(f"Failed to load agents config from {path}: {e}") from e


def load_agent_policy(workspace_dir: str | Path, agent_name: str) -> SecurityPolicy:
    """
    Load the policy for a named agent from agents.json.

    An unknown agent or a missing file falls back to a lax policy on a
    dynamic port.
    """
    path = get_agents_config_path(workspace_dir)
    if not path.is_file():
        logger.warning(
            "Agents config file not found for agent",
            agent=agent_name,
            path=str(path),
            fallback="lax mode with dynamic port"
        )
        return SecurityPolicy(mode=SecurityMode.LAX, allowed_ips=list(LOOPBACK))

    config = _load_agents_config(path)
    agents = config.get("agents", {})
    if agent_name not in agents:
        logger.warning(
            "Agent not found in agents.json",
            agent=agent_name,
            available=sorted(agents),
            fallback="lax mode with dynamic port"
        )
        return SecurityPolicy(mode=SecurityMode.LAX, allowed_ips=list(LOOPBACK))

    policy = _policy_from_entry(agents[agent_name], SecurityMode.LAX)
    logger.info("Loaded agent security config", agent=agent_name, mode=policy.mode.value, port=policy.port)
    return policy


def load_supervisor_policy(workspace_dir: str | Path) -> SecurityPolicy:
    """Load the supervisor policy from agents.json. Raises if absent."""
    path = get_agents_config_path(workspace_dir)
    if not path.is_file():
        raise SecurityConfigError(f"Agents config file not found for supervisor at {path}")

    config = _load_agents_config(path)
    if "supervisor" not in config:
        raise SecurityConfigError(f"Supervisor config not found in agents.json at {path}")

    policy = _policy_from_entry(config["supervisor"], SecurityMode.LAX)
    logger.info("Loaded supervisor security config", mode=policy.mode.value, port=policy.port)
    return policy


def load_security_config(
    workspace_dir: str | Path = ".",
    agent_name: str = "",
    supervisor: bool = False
) -> Optional[SecurityPolicy]:
    """
    Load the security policy for a workspace.

    Args:
        workspace_dir: Directory holding `.replbridge/`
        agent_name: Load the named agent's policy from agents.json
        supervisor: Load the supervisor policy from agents.json

    Returns:
        The policy, or None when no security.json exists or it is unreadable
    """
    if agent_name:
        return load_agent_policy(workspace_dir, agent_name)
    if supervisor:
        return load_supervisor_policy(workspace_dir)

    path = get_security_config_path(workspace_dir)
    if not path.is_file():
        return None

    try:
        with open(path) as f:
            data = json.load(f)
        return SecurityPolicy.model_validate(data)
    except (OSError, ValueError, ValidationError) as e:
        logger.error(
            "Failed to load security config; serving without a policy",
            path=str(path),
            error=str(e)
        )
        return None


def _ensure_gitignored(workspace_dir: Path) -> None:
    gitignore = workspace_dir / ".gitignore"
    entry = f"{CONFIG_DIR}/"
    if gitignore.is_file():
        content = gitignore.read_text()
        if CONFIG_DIR in content:
            return
        with open(gitignore, "a") as f:
            f.write(f"\n# replbridge security configuration (contains API keys)\n{entry}\n")
    else:
        gitignore.write_text(f"# replbridge security configuration (contains API keys)\n{entry}\n")


def save_security_config(policy: SecurityPolicy, workspace_dir: str | Path = ".") -> Path:
    """
    Save the policy to `.replbridge/security.json`.

    The file is written owner-only and the config directory is added to
    the workspace .gitignore.

    Returns:
        Path of the written file
    """
    workspace_dir = Path(workspace_dir)
    path = get_security_config_path(workspace_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    _ensure_gitignored(workspace_dir)

    path.write_text(json.dumps(policy.model_dump(mode="json"), indent=2))
    if sys.platform != "win32":
        os.chmod(path, 0o600)

    logger.info("Security config saved", path=str(path), mode=policy.mode.value)
    return path


def _require_config(workspace_dir: str | Path) -> SecurityPolicy:
    policy = load_security_config(workspace_dir)
    if policy is None:
        raise SecurityConfigError(
            "No security configuration found. Run `replbridge security init` first."
        )
    return policy


def init_security_config(
    workspace_dir: str | Path = ".",
    mode: SecurityMode = SecurityMode.STRICT,
    force: bool = False
) -> tuple[SecurityPolicy, str]:
    """
    Create a new policy with one freshly generated API key.

    Returns:
        Tuple of (policy, generated key)
    """
    if not force and get_security_config_path(workspace_dir).is_file():
        raise SecurityConfigError("Security configuration already exists (use force to overwrite)")

    key = generate_api_key()
    policy = SecurityPolicy(mode=mode, api_keys=[key], created_at=int(time.time()))
    save_security_config(policy, workspace_dir)
    return policy, key


def add_api_key(workspace_dir: str | Path = ".") -> str:
    """Generate a new API key and add it to the policy. Returns the key."""
    policy = _require_config(workspace_dir)
    key = generate_api_key()
    save_security_config(
        policy.model_copy(update={"api_keys": [*policy.api_keys, key]}), workspace_dir
    )
    return key


def remove_api_key(key: str, workspace_dir: str | Path = ".") -> bool:
    """Revoke an API key. Returns False if the key was not configured."""
    policy = _require_config(workspace_dir)
    if key not in policy.api_keys:
        logger.warning("API key not found in configuration")
        return False
    save_security_config(
        policy.model_copy(update={"api_keys": [k for k in policy.api_keys if k != key]}),
        workspace_dir
    )
    return True


def add_allowed_ip(ip: str, workspace_dir: str | Path = ".") -> bool:
    """Add an address or pattern to the allow-list."""
    policy = _require_config(workspace_dir)
    if ip in policy.allowed_ips:
        logger.warning("IP address already in allowlist", ip=ip)
        return False
    save_security_config(
        policy.model_copy(update={"allowed_ips": [*policy.allowed_ips, ip]}), workspace_dir
    )
    return True


def remove_allowed_ip(ip: str, workspace_dir: str | Path = ".") -> bool:
    """Remove an address or pattern from the allow-list."""
    policy = _require_config(workspace_dir)
    if ip not in policy.allowed_ips:
        logger.warning("IP address not found in allowlist", ip=ip)
        return False
    save_security_config(
        policy.model_copy(update={"allowed_ips": [i for i in policy.allowed_ips if i != ip]}),
        workspace_dir
    )
    return True


def change_security_mode(mode: SecurityMode | str, workspace_dir: str | Path = ".") -> SecurityPolicy:
    """Change the policy mode (strict, relaxed or lax)."""
    try:
        mode = SecurityMode(mode)
    except ValueError:
        raise SecurityConfigError(
            "Invalid security mode. Must be strict, relaxed, or lax"
        ) from None

    policy = _require_config(workspace_dir).model_copy(update={"mode": mode})
    save_security_config(policy, workspace_dir)
    return policy

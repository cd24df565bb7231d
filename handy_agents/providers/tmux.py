"""
Terminal session provider backed by tmux.

This module handles:
- Creating and killing sessions on a dedicated tmux server (-L handy)
- Storing AgentMetadata in the session environment so it survives the
  orchestrator process
- Listing managed sessions and detecting whether an agent is still running
- Capturing pane output and sending input
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from handy_agents.allocation import MANAGED_SESSION_PREFIX
from handy_agents.errors import CollisionError, TmuxError
from handy_agents.models import (
    ENV_AGENT_TYPE,
    ENV_MACHINE_ID,
    ENV_STARTED_AT,
    AgentMetadata,
    get_machine_id,
    utc_now_iso,
)
from handy_agents.providers.base import CliProvider

if TYPE_CHECKING:
    from handy_agents.config import TmuxConfig
    from handy_agents.logger import HandyLogger

# Pane commands that mean "the agent has exited and only the shell is left"
SHELL_COMMANDS = frozenset({"bash", "zsh", "sh", "fish"})

# stderr fragments tmux prints when there is simply nothing to list
_EMPTY_SERVER_MARKERS = ("no server running", "no sessions", "error connecting to")

SESSION_FORMAT = "#{session_name}\t#{session_attached}\t#{session_windows}\t#{session_created}"


@dataclass
class TmuxSession:
    """A managed tmux session."""
    name: str
    attached: bool
    windows: int
    created: int
    alive: bool = False
    metadata: Optional[AgentMetadata] = None


class TmuxProvider(CliProvider):
    """Session provider over the tmux CLI."""

    component = "tmux"
    error_class = TmuxError

    def __init__(
        self,
        config: TmuxConfig,
        logger: Optional[HandyLogger] = None,
    ) -> None:
        super().__init__(config.binary, config.timeout_seconds, logger)
        self.config = config

    def _base_args(self) -> list[str]:
        return ["-L", self.config.socket]

    # =========================================================================
    # Listing
    # =========================================================================

    def list_sessions(self, with_metadata: bool = True) -> list[TmuxSession]:
        """
        List managed sessions (names starting with "handy-").

        A stopped server is an empty list, not an error.

        Raises:
            TmuxError: For any other tmux failure.
        """
        result = self._run(["list-sessions", "-F", SESSION_FORMAT])
        if not result.ok:
            stderr = result.stderr.lower()
            if any(marker in stderr for marker in _EMPTY_SERVER_MARKERS):
                return []
            raise TmuxError(f"tmux list-sessions failed: {result.stderr.strip()}",
                            ["list-sessions"], result.returncode, result.stderr)

        sessions = []
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) < 4 or not parts[0].startswith(MANAGED_SESSION_PREFIX):
                continue
            name = parts[0]
            session = TmuxSession(
                name=name,
                attached=parts[1] not in ("", "0"),
                windows=int(parts[2]) if parts[2].isdigit() else 1,
                created=int(parts[3]) if parts[3].isdigit() else 0,
            )
            if with_metadata:
                session.alive = self.has_active_process(name)
                session.metadata = self.get_metadata(name, missing_ok=True)
            sessions.append(session)

        return sessions

    def session_exists(self, name: str) -> bool:
        """True if a session with exactly this name exists."""
        return self._run(["has-session", "-t", f"={name}"]).ok

    def has_active_process(self, name: str) -> bool:
        """
        True if the session's pane runs something other than a bare shell.

        A missing session counts as not alive.
        """
        result = self._run(["list-panes", "-t", name, "-F", "#{pane_current_command}"])
        if not result.ok:
            return False
        lines = result.stdout.strip().splitlines()
        command = lines[0].strip() if lines else ""
        return bool(command) and command not in SHELL_COMMANDS

    # =========================================================================
    # Metadata
    # =========================================================================

    def show_environment(self, name: str) -> dict[str, str]:
        """
        Session environment as a dict.

        Raises:
            TmuxError: If the session does not exist.
        """
        result = self._run_checked(["show-environment", "-t", name],
                                   what=f"read environment of {name}")
        env = {}
        for line in result.stdout.splitlines():
            # "-KEY" marks a variable removed from the session
            if line.startswith("-") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            env[key] = value
        return env

    def set_environment(self, name: str, key: str, value: str) -> None:
        """Set one variable in the session environment."""
        self._run_checked(["set-environment", "-t", name, key, value],
                          what=f"set {key} on {name}")

    def get_metadata(self, name: str, missing_ok: bool = False) -> Optional[AgentMetadata]:
        """
        Read AgentMetadata from a session.

        Fields that were never written stay None.

        Args:
            missing_ok: Return None instead of raising when the session is gone.

        Raises:
            TmuxError: If the session does not exist and missing_ok is False.
        """
        try:
            env = self.show_environment(name)
        except TmuxError:
            if missing_ok:
                return None
            raise
        return AgentMetadata.from_env(name, env)

    def write_metadata(self, name: str, metadata: AgentMetadata) -> None:
        """Write every present metadata field into the session environment."""
        for key, value in metadata.to_env().items():
            self.set_environment(name, key, value)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create_session(self, name: str, working_dir: Optional[str] = None) -> None:
        """
        Create a detached session.

        Raises:
            ValueError: If the name lacks the managed prefix.
            CollisionError: If the session already exists.
            TmuxError: If tmux fails.
        """
        if not name.startswith(MANAGED_SESSION_PREFIX):
            raise ValueError(f"Session name must start with '{MANAGED_SESSION_PREFIX}'")
        if self.session_exists(name):
            raise CollisionError(f"Session '{name}' already exists")

        args = ["new-session", "-d", "-s", name]
        if working_dir:
            args.extend(["-c", working_dir])
        self._run_checked(args, what=f"create session {name}")
        self._log("session_created", {"session": name, "cwd": working_dir})

    def kill_session(self, name: str) -> None:
        """
        Kill a session.

        Raises:
            TmuxError: If the session does not exist or tmux fails.
        """
        self._run_checked(["kill-session", "-t", name], what=f"kill session {name}")
        self._log("session_killed", {"session": name})

    def capture_output(self, name: str, lines: Optional[int] = None) -> str:
        """Last lines of the session's pane."""
        count = lines or self.config.output_lines
        result = self._run_checked(
            ["capture-pane", "-t", name, "-p", "-S", f"-{count}"],
            what=f"capture output of {name}",
        )
        return result.stdout

    def send_command(self, name: str, command: str) -> None:
        """Type a command into the session followed by Enter. Empty sends just Enter."""
        args = ["send-keys", "-t", name]
        if command:
            args.append(command)
        args.append("Enter")
        self._run_checked(args, what=f"send command to {name}")

    def send_keys(self, name: str, keys: str) -> None:
        """Send raw keys (Escape, Tab, partial input) without Enter."""
        self._run_checked(["send-keys", "-t", name, keys], what=f"send keys to {name}")

    def ensure_master_session(self) -> bool:
        """
        Create the management session if it does not exist.

        Returns:
            True if created, False if it was already there.
        """
        master = self.config.master_session
        if self.session_exists(master):
            return False

        self._run_checked(["new-session", "-d", "-s", master], what="create master session")
        self.set_environment(master, ENV_AGENT_TYPE, "master")
        self.set_environment(master, ENV_MACHINE_ID, get_machine_id())
        self.set_environment(master, ENV_STARTED_AT, utc_now_iso())
        self._log("master_session_created", {"session": master})
        return True

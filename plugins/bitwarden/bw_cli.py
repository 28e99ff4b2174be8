"""
Bitwarden CLI invoker.

Every call spawns one `bw` process. Credentials and the session token travel
through environment variables; the master password is written to stdin.
Failures surface as BitwardenError subclasses so callers never see a raw
OSError or a half-parsed payload.
"""

import asyncio
import json
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30

VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")

# Node.js noise the CLI prints on some installs
NOISE_MARKERS = (
    "DeprecationWarning",
    "ExperimentalWarning",
    "--trace-deprecation",
    "Support for loading ES Module",
)


class BitwardenError(Exception):
    """Base class for everything the vault layer raises."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ConfigurationMissing(BitwardenError):
    """CLI path is not configured."""


# Name used by the sync engine's taxonomy
NeedsConfiguration = ConfigurationMissing


class ProcessError(BitwardenError):
    """The CLI exited non-zero or could not finish."""

    def __init__(self, message: str = "", returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


class ProcessSpawnFailure(ProcessError):
    """The executable is missing or not runnable."""


class ProcessOutputUnparseable(BitwardenError):
    """Output was not the JSON the command promises."""


class VaultLocked(BitwardenError):
    """The vault needs to be unlocked before it can be listed."""

    def __init__(self, message: str = "Vault is locked", status: str = "locked"):
        super().__init__(message)
        self.status = status


class SessionExpired(VaultLocked):
    """A saved session stopped working and has been discarded."""

    def __init__(self, message: str = "Session expired, unlock again"):
        super().__init__(message, status="locked")


class UnlockRejected(BitwardenError):
    """Unlock failed or returned an implausible session key."""


class Fatal(BitwardenError):
    """Any other failure, carrying the CLI's own message."""


@dataclass
class ConnectionSettings:
    cli_path: str = ""
    client_id: str = ""
    client_secret: str = ""

    def to_dict(self) -> dict:
        return {
            "cliPath": self.cli_path,
            "clientId": self.client_id,
            "clientSecret": self.client_secret,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConnectionSettings":
        return cls(
            cli_path=data.get("cliPath") or "",
            client_id=data.get("clientId") or "",
            client_secret=data.get("clientSecret") or "",
        )

    @property
    def configured(self) -> bool:
        return bool(self.cli_path.strip())


@dataclass
class CLIResult:
    stdout: str
    stderr: str
    returncode: int

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0


def find_bw() -> str | None:
    """Find bw executable, checking common user paths"""
    bw_path = shutil.which("bw")
    if bw_path:
        return bw_path

    home = Path.home()
    common_paths = [
        home / ".local" / "share" / "pnpm" / "bw",
        home / ".local" / "bin" / "bw",
        home / ".npm-global" / "bin" / "bw",
        home / "bin" / "bw",
        Path("/usr/local/bin/bw"),
    ]

    nvm_dir = home / ".nvm" / "versions" / "node"
    if nvm_dir.exists():
        for node_version in nvm_dir.iterdir():
            bw_in_nvm = node_version / "bin" / "bw"
            if bw_in_nvm.exists() and os.access(bw_in_nvm, os.X_OK):
                return str(bw_in_nvm)

    for path in common_paths:
        if path.exists() and os.access(path, os.X_OK):
            return str(path)

    return None


def strip_noise(text: str) -> str:
    """Drop Node.js warning lines from CLI output."""
    return "\n".join(
        line
        for line in text.split("\n")
        if not any(marker in line for marker in NOISE_MARKERS)
    ).strip()


def build_env(
    settings: ConnectionSettings, session: str | None = None
) -> dict[str, str]:
    """Environment for one invocation; the session is a snapshot taken now."""
    env = os.environ.copy()
    if settings.client_id:
        env["BW_CLIENTID"] = settings.client_id
    if settings.client_secret:
        env["BW_CLIENTSECRET"] = settings.client_secret
    if session:
        env["BW_SESSION"] = session
    env["NODE_NO_WARNINGS"] = "1"
    return env


def parse_json(text: str, command: str):
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ProcessOutputUnparseable(f"Unexpected output from bw {command}") from e


class BitwardenCLI:
    """One-shot invocations against a configured `bw` executable."""

    def __init__(self, settings: ConnectionSettings, timeout: float = DEFAULT_TIMEOUT):
        self.settings = settings
        self.timeout = timeout

    async def run(
        self,
        args: list[str],
        session: str | None = None,
        input_text: str | None = None,
        check: bool = True,
    ) -> CLIResult:
        """Run bw with args.

        Raises ProcessError when the process cannot run, times out, or (with
        check) exits non-zero. The exit code decides success; stderr text on a
        zero exit is informational only.
        """
        if not self.settings.configured:
            raise ConfigurationMissing("Bitwarden CLI path is not configured")

        command = args[0] if args else ""
        logger.debug("bw %s", command)

        try:
            process = await asyncio.create_subprocess_exec(
                self.settings.cli_path,
                *args,
                stdin=asyncio.subprocess.PIPE if input_text is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=build_env(self.settings, session),
            )
        except OSError as e:
            raise ProcessSpawnFailure(
                f"Cannot run {self.settings.cli_path}: {e.strerror or e}"
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(
                    input_text.encode("utf-8") if input_text is not None else None
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ProcessError("Command timed out")

        result = CLIResult(
            stdout=strip_noise(stdout.decode("utf-8", errors="replace")),
            stderr=strip_noise(stderr.decode("utf-8", errors="replace")),
            returncode=process.returncode if process.returncode is not None else -1,
        )

        if check and not result.succeeded:
            logger.debug("bw %s exited with %s", command, result.returncode)
            raise ProcessError(
                result.stderr or result.stdout or f"bw {command} failed",
                returncode=result.returncode,
            )
        if result.stderr:
            logger.debug("bw %s stderr: %s", command, result.stderr)
        return result

    async def run_json(self, args: list[str], session: str | None = None):
        result = await self.run(args, session=session)
        return parse_json(result.stdout, " ".join(args[:2]))

    async def version(self) -> str:
        result = await self.run(["--version"])
        version = result.stdout.strip()
        if not VERSION_PATTERN.match(version):
            raise ProcessOutputUnparseable(
                f"Unrecognized Bitwarden CLI version: {version or '(empty)'}"
            )
        return version

    async def status(self, session: str | None = None) -> dict:
        # bw may exit non-zero yet still print a usable status object
        result = await self.run(["status"], session=session, check=False)
        if not result.succeeded and not result.stdout:
            raise ProcessError(
                result.stderr or "bw status failed", returncode=result.returncode
            )
        return parse_json(result.stdout, "status")

    async def list_items(self, session: str | None = None) -> list[dict]:
        return await self.run_json(["list", "items", "--pretty"], session=session)

    async def list_folders(self, session: str | None = None) -> list[dict]:
        return await self.run_json(["list", "folders", "--pretty"], session=session)

    async def unlock(self, password: str) -> str:
        result = await self.run(["unlock", "--raw"], input_text=password + "\n")
        return result.stdout.strip()

    async def get_totp(self, item_id: str, session: str | None = None) -> str:
        result = await self.run(["get", "totp", item_id], session=session)
        return result.stdout.strip()

    async def lock(self) -> None:
        await self.run(["lock"])

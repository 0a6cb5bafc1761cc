from __future__ import annotations

import asyncio
import logging
import os
import shutil
import stat
import sys
from typing import Dict, List, Optional, Sequence

from toolbridge.constants import (
    INTERPRETER_ALIASES,
    TRUSTED_LAUNCHERS,
    VALIDATION_TIMEOUT_SECONDS,
)

from .config_loader import interpolate_env
from .types import CommandProbe, FixResult, ServerConfig, ValidationResult

logger = logging.getLogger(__name__)

# Tools we know how to point the user at a package manager for.
KNOWN_TOOLS = ("uv", "node", "npm", "python3", "pip3")


class CommandRunner:
    """Runs a short helper process and reports a typed result.

    Never raises for process-level problems: a refused spawn is reported in
    ``CommandProbe.spawn_error`` and a hung process is killed and reported as
    ``timed_out``.
    """

    def __init__(self, timeout_seconds: float = VALIDATION_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = timeout_seconds

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandProbe:
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            return CommandProbe(exit_code=None, spawn_error=f"{type(e).__name__}: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=timeout or self.timeout_seconds
            )
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            return CommandProbe(exit_code=None, timed_out=True)

        return CommandProbe(
            exit_code=proc.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )


def _dedupe(entries: List[str]) -> List[str]:
    seen = set()
    result = []
    for entry in entries:
        if entry and entry not in seen:
            seen.add(entry)
            result.append(entry)
    return result


class PlatformStrategy:
    """OS-specific behaviour behind the resolver.

    ``validate`` is read-only; ``repair`` is the only method allowed to touch
    the filesystem. Only macOS adds a missing execute bit; other platforms
    suggest the ``chmod`` command instead.
    """

    label = "Linux"
    locator = "which"
    path_separator = ":"
    python_launcher = "python3"
    repairs_permissions = False
    package_managers: Sequence[tuple] = (
        ("apt-get", "sudo apt-get install -y {tool}"),
        ("dnf", "sudo dnf install -y {tool}"),
        ("pacman", "sudo pacman -S {tool}"),
    )

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def extra_paths(self) -> List[str]:
        home = os.path.expanduser("~")
        return [
            "/usr/local/bin",
            "/usr/bin",
            "/bin",
            os.path.join(home, ".local", "bin"),
            os.path.join(home, "bin"),
            os.path.join(home, ".npm-global", "bin"),
            "/usr/local/share/npm/bin",
        ]

    def default_env(self) -> Dict[str, str]:
        return {}

    def environment(self, overrides: Dict[str, str]) -> Dict[str, str]:
        resolved = interpolate_env(overrides)
        env = dict(os.environ)
        for key, value in self.default_env().items():
            env.setdefault(key, value)
        base_path = resolved.get("PATH") or env.get("PATH", "")
        env.update(resolved)
        env["PATH"] = self.path_separator.join(
            _dedupe(base_path.split(self.path_separator) + self.extra_paths())
        )
        return env

    async def locate(self, command: str, env: Dict[str, str]) -> Optional[str]:
        if os.path.isabs(command):
            return command if os.path.exists(command) else None

        probe = await self.runner.run(self.locator, [command], env=env)
        if probe.ok and probe.stdout.strip():
            return probe.stdout.strip().splitlines()[0].strip()
        if not probe.spawned:
            # The locator itself is unavailable (minimal containers).
            return shutil.which(command, path=env.get("PATH"))
        return None

    def permission_error(self, path: str) -> Optional[str]:
        try:
            mode = os.stat(path).st_mode
        except OSError as e:
            return f"Cannot stat {path}: {e}"
        if stat.S_ISREG(mode) and not mode & 0o111:
            return f"Executable is missing execute permission: {path}"
        return None

    async def validate(self, server: ServerConfig, command: str) -> ValidationResult:
        env = self.environment(server.env)
        resolved = await self.locate(command, env)
        if resolved is None:
            return ValidationResult(
                valid=False,
                fixed_command=command,
                error=f"Command not found in {self.label} PATH: {command}",
            )

        perm_error = self.permission_error(resolved)
        if perm_error:
            return ValidationResult(valid=False, fixed_command=resolved, error=perm_error)

        # Any exit status is fine here; only a refused spawn is a failure.
        probe = await self.runner.run(resolved, ["--help"], env=env)
        if not probe.spawned:
            return ValidationResult(
                valid=False,
                fixed_command=resolved,
                error=f"{self.label} command execution failed: {probe.spawn_error}",
            )
        return ValidationResult(valid=True, fixed_command=resolved)

    def fix_permissions(self, path: str) -> bool:
        if not self.repairs_permissions or not os.path.isfile(path):
            return False
        mode = os.stat(path).st_mode
        if mode & 0o111:
            return False
        os.chmod(path, mode | 0o755)
        logger.info("Added execute permissions to %s", path)
        return True

    async def install_hint(self, tool: str, env: Dict[str, str]) -> str:
        for manager, template in self.package_managers:
            if await self.locate(manager, env):
                return f"Try installing with {manager}: {template.format(tool=tool)}"
        manager, template = self.package_managers[0]
        return f"No supported package manager found; install {tool} manually (e.g. {template.format(tool=tool)})"

    async def repair(self, server: ServerConfig, command: str) -> FixResult:
        env = self.environment(server.env)
        applied: List[str] = []

        if "python" in command or "pip" in command:
            probe = await self.runner.run(self.python_launcher, ["--version"], env=env)
            if not probe.ok:
                hint = await self.install_hint("python3", env)
                return FixResult(success=False, message=f"Python 3 not found. {hint}")

        target = await self.locate(command, env) or command
        if os.path.isabs(target):
            try:
                if self.fix_permissions(target):
                    applied.append(f"Added execute permissions to {target}")
                elif os.path.isfile(target) and self.permission_error(target):
                    return FixResult(
                        success=False,
                        message=f"{target} is not executable. Try: chmod +x {target}",
                    )
            except OSError as e:
                logger.warning("Could not fix permissions for %s: %s", target, e)

        if applied:
            return FixResult(success=True, message="; ".join(applied), applied=applied)

        tool = os.path.splitext(os.path.basename(command))[0]
        if tool in KNOWN_TOOLS:
            return FixResult(success=False, message=await self.install_hint(tool, env))

        if "npx" in command or "node_modules" in command:
            return FixResult(
                success=False,
                message="Try installing globally: npm install -g <package-name>",
            )

        return FixResult(success=False, message=f"No automatic fix available for {command}")


class MacOSStrategy(PlatformStrategy):
    label = "macOS"
    repairs_permissions = True
    package_managers = (("brew", "brew install {tool}"),)

    def extra_paths(self) -> List[str]:
        home = os.path.expanduser("~")
        return [
            "/usr/local/bin",
            "/opt/homebrew/bin",
            "/usr/bin",
            "/bin",
            "/usr/sbin",
            "/sbin",
            "/opt/local/bin",
            "/usr/local/opt/python/bin",
            "/Library/Frameworks/Python.framework/Versions/3.11/bin",
            "/Library/Frameworks/Python.framework/Versions/3.12/bin",
            "/Library/Frameworks/Python.framework/Versions/3.13/bin",
            os.path.join(home, ".local", "bin"),
            os.path.join(home, "bin"),
            os.path.join(home, ".cargo", "bin"),
            os.path.join(home, ".npm-global", "bin"),
            "/usr/local/share/npm/bin",
        ]

    def default_env(self) -> Dict[str, str]:
        return {
            "PYTHONUNBUFFERED": "1",
            "PYTHONDONTWRITEBYTECODE": "1",
            "OBJC_DISABLE_INITIALIZE_FORK_SAFETY": "YES",
            "LC_ALL": "en_US.UTF-8",
            "LANG": "en_US.UTF-8",
        }


class WindowsStrategy(PlatformStrategy):
    label = "Windows"
    locator = "where"
    path_separator = ";"
    python_launcher = "python"
    package_managers = (
        ("winget", "winget install {tool}"),
        ("choco", "choco install {tool}"),
    )

    def extra_paths(self) -> List[str]:
        profile = os.environ.get("USERPROFILE", "")
        appdata = os.environ.get("APPDATA", "")
        local_appdata = os.environ.get("LOCALAPPDATA", "")
        return [
            "C:\\Program Files\\nodejs",
            "C:\\Program Files (x86)\\nodejs",
            os.path.join(appdata, "npm") if appdata else "",
            os.path.join(profile, "AppData", "Roaming", "npm") if profile else "",
            os.path.join(profile, ".npm-global") if profile else "",
            os.path.join(local_appdata, "npm") if local_appdata else "",
        ]

    def permission_error(self, path: str) -> Optional[str]:
        return None


def strategy_for(platform: str, runner: CommandRunner) -> PlatformStrategy:
    if platform == "darwin":
        return MacOSStrategy(runner)
    if platform.startswith("win"):
        return WindowsStrategy(runner)
    return PlatformStrategy(runner)


class PlatformCommandResolver:
    """Resolves and, when asked, repairs a server's launch executable."""

    def __init__(
        self,
        platform: Optional[str] = None,
        runner: Optional[CommandRunner] = None,
        *,
        trusted_launchers: Sequence[str] = TRUSTED_LAUNCHERS,
        prefer_current_interpreter: bool = True,
    ) -> None:
        self.platform = platform or sys.platform
        self.runner = runner or CommandRunner()
        self.strategy = strategy_for(self.platform, self.runner)
        self.trusted_launchers = tuple(trusted_launchers)
        self.prefer_current_interpreter = prefer_current_interpreter

    def normalize(self, command: str) -> str:
        # Run python servers inside the same environment as the host.
        if self.prefer_current_interpreter and command in INTERPRETER_ALIASES:
            return sys.executable
        return command

    def is_trusted(self, command: str) -> bool:
        return command in self.trusted_launchers

    def environment(self, server: ServerConfig) -> Dict[str, str]:
        return self.strategy.environment(server.env)

    async def validate(self, server: ServerConfig) -> ValidationResult:
        command = self.normalize(server.command)
        if self.is_trusted(command):
            logger.info("Skipping validation for trusted launcher %s", command)
            return ValidationResult(valid=True, fixed_command=command)
        logger.info("Validating server command %s on %s", command, self.platform)
        try:
            return await self.strategy.validate(server, command)
        except Exception as e:
            logger.exception("Validation of %s raised", command)
            return ValidationResult(
                valid=False, fixed_command=command, error=f"Validation error: {e}"
            )

    async def attempt_fix(self, server: ServerConfig) -> FixResult:
        command = self.normalize(server.command)
        logger.info("Attempting %s fixes for %s", self.strategy.label, command)
        try:
            return await self.strategy.repair(server, command)
        except Exception as e:
            logger.exception("Fix attempt for %s raised", command)
            return FixResult(success=False, message=f"Fix attempt failed: {e}")

    async def resolve(self, server: ServerConfig) -> ValidationResult:
        """Validate, and on failure run one repair pass and re-validate once."""
        validation = await self.validate(server)
        if validation.valid:
            return validation

        logger.warning("Initial validation of %s failed: %s", server.id, validation.error)
        fix = await self.attempt_fix(server)
        if not fix.success:
            return ValidationResult(
                valid=False,
                fixed_command=validation.fixed_command,
                error=f"{validation.error}. Suggestion: {fix.message}",
            )

        logger.info("Applied fixes for %s: %s", server.id, fix.message)
        revalidation = await self.validate(server)
        if not revalidation.valid:
            return ValidationResult(
                valid=False,
                fixed_command=revalidation.fixed_command,
                error=f"Server still invalid after fixes: {revalidation.error}",
            )
        return revalidation

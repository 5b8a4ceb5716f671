"""
Tools — subprocess execution and ranked capability chains.

Every external program (patch, make, perf, dracut, dkms, grub-mkconfig …)
is reached through ``ToolRunner`` so tests can substitute a scripted
runner.  A tool that is not installed yields exit code 127 instead of
an exception.

``CapabilityChain`` is the single ranked-provider abstraction shared by
the profile converter, loader-image generator and auxiliary module
rebuild: probe each provider in order, the first successful run wins,
and exhaustion is the only failure.
"""
import logging
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

NOT_FOUND = 127
NOT_EXECUTABLE = 126


@dataclass
class CommandResult:
    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def tail(self, lines: int = 20) -> str:
        """Last *lines* of stderr (or stdout when stderr is empty)."""
        text = self.stderr.strip() or self.stdout.strip()
        return "\n".join(text.splitlines()[-lines:])


class ToolRunner:
    """Thin wrapper over ``subprocess.run`` with captured output."""

    def available(self, name: str) -> bool:
        return shutil.which(name) is not None

    def run(
        self,
        args: Sequence[str],
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        capture: bool = True,
    ) -> CommandResult:
        """
        Execute *args* and return its result.

        ``capture=False`` streams output to the terminal (used for the
        long-running compile so progress stays visible).
        """
        argv = [str(a) for a in args]
        logger.debug("EXEC: %s (cwd=%s)", " ".join(argv), cwd)
        t0 = time.monotonic()
        try:
            proc = subprocess.run(
                argv,
                cwd=str(cwd) if cwd else None,
                capture_output=capture,
                text=True,
                timeout=timeout,
                env=env,
            )
        except FileNotFoundError:
            return CommandResult(argv, NOT_FOUND, stderr=f"{argv[0]}: command not found")
        except PermissionError:
            return CommandResult(argv, NOT_EXECUTABLE, stderr=f"{argv[0]}: permission denied")
        except subprocess.TimeoutExpired:
            duration = int((time.monotonic() - t0) * 1000)
            return CommandResult(argv, -1, stderr=f"TIMEOUT after {timeout}s", duration_ms=duration)

        duration = int((time.monotonic() - t0) * 1000)
        return CommandResult(
            argv,
            proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            duration_ms=duration,
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Ranked capability chain
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Provider:
    """
    One interchangeable implementation of a capability.

    ``binary`` is probed with ``ToolRunner.available``; ``enabled`` lets a
    caller rule a provider out for reasons other than a missing binary
    (e.g. the managed-module command needs a known module version).
    """
    name: str
    binary: str
    enabled: bool = True


@dataclass
class Attempt:
    provider: str
    available: bool
    returncode: Optional[int] = None
    error: str = ""


@dataclass
class ChainOutcome:
    provider: Provider
    result: CommandResult
    attempts: List[Attempt] = field(default_factory=list)


class ChainExhausted(RuntimeError):
    """No provider in the chain was available and succeeded."""

    def __init__(self, capability: str, attempts: List[Attempt]):
        self.capability = capability
        self.attempts = attempts
        tried = ", ".join(
            f"{a.provider}({'rc=' + str(a.returncode) if a.available else 'missing'})"
            for a in attempts
        ) or "none"
        super().__init__(f"No working provider for {capability}: tried {tried}")

    @property
    def any_available(self) -> bool:
        return any(a.available for a in self.attempts)


class CapabilityChain:
    """Ordered providers for one capability; first success wins."""

    def __init__(self, capability: str, providers: Sequence[Provider], runner: ToolRunner):
        self.capability = capability
        self.providers = list(providers)
        self.runner = runner

    def available(self) -> List[Provider]:
        return [
            p for p in self.providers
            if p.enabled and self.runner.available(p.binary)
        ]

    def run(self, invoke: Callable[[Provider], CommandResult]) -> ChainOutcome:
        """
        Call *invoke* for each usable provider until one returns ok.

        Raises ChainExhausted when every provider is missing or failed.
        """
        attempts: List[Attempt] = []
        for provider in self.providers:
            if not provider.enabled or not self.runner.available(provider.binary):
                logger.debug("%s: %s not available", self.capability, provider.name)
                attempts.append(Attempt(provider.name, available=False))
                continue

            logger.info("%s: trying %s", self.capability, provider.name)
            result = invoke(provider)
            attempts.append(Attempt(
                provider.name,
                available=True,
                returncode=result.returncode,
                error=result.tail(5),
            ))
            if result.ok:
                return ChainOutcome(provider, result, attempts)
            logger.warning(
                "%s: %s failed (rc=%d), trying next provider",
                self.capability, provider.name, result.returncode,
            )

        raise ChainExhausted(self.capability, attempts)

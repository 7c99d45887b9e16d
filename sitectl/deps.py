"""
Dependency checks for external toolchains.

Probes each required executable once per run and classifies it as available,
unavailable or present-but-unusable. Missing tools are reported together so
the user gets the whole remediation list in one go.
"""

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .config import Config, config as default_config
from .errors import DependencyMissing

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"(\d+(?:\.\d+)+)")


class Capability(Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    VERSION_MISMATCH = "version_mismatch"


@dataclass
class Probe:
    """One way of invoking a tool: the command prefix plus the args that print its version."""

    command: list[str]
    version_args: list[str] = field(default_factory=lambda: ["--version"])
    cwd: Optional[str] = None


@dataclass
class Requirement:
    """A named external tool; candidates are tried in order until one works."""

    name: str
    candidates: list[Probe]
    min_version: Optional[str] = None

    @classmethod
    def executable(cls, name: str, label: str = None, version_args: list[str] = None):
        probe = Probe([name]) if version_args is None else Probe([name], version_args)
        return cls(name=label or name, candidates=[probe])


@dataclass
class ProbeResult:
    name: str
    capability: Capability
    command: Optional[list[str]] = None
    version: Optional[str] = None
    detail: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.capability == Capability.AVAILABLE


def parse_version(text: str) -> Optional[tuple[int, ...]]:
    """Extract the first dotted version number from tool output."""
    match = _VERSION_RE.search(text or "")
    if not match:
        return None
    return tuple(int(part) for part in match.group(1).split("."))


class DependencyChecker:
    """Read-only capability probes for the tools a workflow needs."""

    def __init__(self, cfg: Config = None):
        self.config = cfg or default_config
        self._cache: dict[str, ProbeResult] = {}

    def probe(self, requirement: Requirement) -> ProbeResult:
        """Probe a requirement, trying each candidate invocation in order."""
        if requirement.name in self._cache:
            return self._cache[requirement.name]

        result = ProbeResult(name=requirement.name, capability=Capability.UNAVAILABLE)
        for candidate in requirement.candidates:
            attempt = self._probe_candidate(requirement, candidate)
            if attempt.capability == Capability.AVAILABLE:
                result = attempt
                break
            # Prefer the more informative "present but broken" outcome
            if attempt.capability == Capability.VERSION_MISMATCH:
                result = attempt

        logger.debug(
            f"Probe {requirement.name}: {result.capability.value}"
            + (f" ({result.detail})" if result.detail else "")
        )
        self._cache[requirement.name] = result
        return result

    def _probe_candidate(self, requirement: Requirement, candidate: Probe) -> ProbeResult:
        executable = candidate.command[0]
        if shutil.which(executable) is None:
            return ProbeResult(
                name=requirement.name,
                capability=Capability.UNAVAILABLE,
                detail=f"{executable} not found on PATH",
            )

        argv = candidate.command + candidate.version_args
        try:
            proc = subprocess.run(
                argv,
                cwd=candidate.cwd,
                capture_output=True,
                text=True,
                timeout=self.config.probe_timeout,
            )
        except subprocess.TimeoutExpired:
            return ProbeResult(
                name=requirement.name,
                capability=Capability.VERSION_MISMATCH,
                command=candidate.command,
                detail=f"'{' '.join(argv)}' timed out after {self.config.probe_timeout}s",
            )
        except OSError as e:
            return ProbeResult(
                name=requirement.name,
                capability=Capability.UNAVAILABLE,
                detail=str(e),
            )

        output = (proc.stdout or "") + (proc.stderr or "")
        if proc.returncode != 0:
            return ProbeResult(
                name=requirement.name,
                capability=Capability.VERSION_MISMATCH,
                command=candidate.command,
                detail=f"'{' '.join(argv)}' exited with {proc.returncode}",
            )

        version = parse_version(output)
        version_text = ".".join(str(part) for part in version) if version else None
        if requirement.min_version:
            wanted = parse_version(requirement.min_version)
            if version is None or version < wanted:
                return ProbeResult(
                    name=requirement.name,
                    capability=Capability.VERSION_MISMATCH,
                    command=candidate.command,
                    version=version_text,
                    detail=f"version {version_text or 'unknown'} < {requirement.min_version}",
                )

        return ProbeResult(
            name=requirement.name,
            capability=Capability.AVAILABLE,
            command=candidate.command,
            version=version_text,
        )

    def missing(self, requirements: list[Requirement]) -> list[ProbeResult]:
        """Return the probe results of every requirement that is not available."""
        return [r for r in (self.probe(req) for req in requirements) if not r.available]

    def require(self, requirements: list[Requirement]) -> dict[str, ProbeResult]:
        """Probe everything and raise DependencyMissing listing all failures at once."""
        logger.info("Checking dependencies...")
        results = {req.name: self.probe(req) for req in requirements}
        missing = [r for r in results.values() if not r.available]
        if missing:
            for result in missing:
                logger.error(f"Missing dependency {result.name}: {result.detail or result.capability.value}")
            raise DependencyMissing([r.name for r in missing])

        logger.info("All dependencies are installed")
        return results
